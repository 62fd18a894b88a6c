from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    DateTime,
    Boolean,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from roastme.core.database import Base


class User(Base):
    """Anonymous (cookie/header keyed) or linked account"""

    __tablename__ = "users"

    id = Column(String(80), primary_key=True)
    is_anonymous = Column(Boolean, nullable=False, default=True)
    email = Column(String(255), nullable=True, unique=True)
    google_id = Column(String(120), nullable=True, unique=True)
    display_name = Column(String(120), nullable=True)
    credits = Column(Integer, nullable=False, default=3)
    images_created = Column(Integer, nullable=False, default=0)
    plan = Column(String(20), nullable=False, default="free")  # free, pro, unlimited
    polar_customer_id = Column(String(120), nullable=True)
    stripe_customer_id = Column(String(120), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    characters = relationship("Character", back_populates="user")


class ImageUpload(Base):
    __tablename__ = "image_uploads"

    id = Column(String(60), primary_key=True)
    user_id = Column(String(80), ForeignKey("users.id"), nullable=False, index=True)
    file_url = Column(String(500), nullable=False)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    mime_type = Column(String(60), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Character(Base):
    """One roast figurine generation request and its result"""

    __tablename__ = "characters"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_character_idempotency"),
    )

    id = Column(String(60), primary_key=True)
    user_id = Column(String(80), ForeignKey("users.id"), nullable=False, index=True)
    upload_id = Column(String(60), ForeignKey("image_uploads.id"), nullable=True)
    original_image_url = Column(String(500), nullable=False)
    model_url = Column(String(500), nullable=True)  # generated image
    thumbnail_url = Column(String(500), nullable=True)
    medium_url = Column(String(500), nullable=True)
    og_image_url = Column(Text, nullable=True)
    seo_slug = Column(String(160), nullable=True, unique=True, index=True)
    og_title = Column(String(200), nullable=True)
    og_description = Column(String(500), nullable=True)
    og_image_alt = Column(String(300), nullable=True)
    ai_features_json = Column(JSON, nullable=True)
    # status, attempt, error, style, roast_content, prompt_variant, updated_at
    generation_params = Column(JSON, nullable=False, default=dict)
    # Mirror of generation_params["status"] for conditional updates and scans
    status = Column(String(20), nullable=False, default="pending", index=True)
    idempotency_key = Column(String(80), nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)
    view_count = Column(Integer, nullable=False, default=0)
    like_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="characters")


class CreditTransaction(Base):
    """Credit ledger"""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("provider", "reference_id", name="uq_credit_tx_provider_ref"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(80), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # positive: top-up, negative: spend
    balance_after = Column(Integer, nullable=False)
    transaction_type = Column(
        String(30), nullable=False
    )  # purchase, usage, bonus, refund, failed
    provider = Column(String(20), nullable=True)  # stripe, polar
    description = Column(String(200), nullable=True)
    reference_id = Column(String(120), nullable=True)  # checkout / order / character id
    created_at = Column(DateTime, default=datetime.utcnow)


class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    source = Column(String(20), nullable=False, default="web")  # web, mobile, social
    created_at = Column(DateTime, default=datetime.utcnow)
