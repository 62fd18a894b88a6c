from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from roastme.core.error_messages import ToastPayload


class GenerationStatus(str, Enum):
    pending = "pending"
    generating = "generating"
    retrying = "retrying"
    completed = "completed"
    failed = "failed"
    retry_failed = "retry_failed"


class Gender(str, Enum):
    male = "male"
    female = "female"
    non_binary = "non-binary"
    unknown = "unknown"


class AgeRange(str, Enum):
    child = "child"
    teen = "teen"
    young_adult = "young_adult"
    adult = "adult"
    middle_aged = "middle_aged"
    senior = "senior"
    unknown = "unknown"


class Plan(str, Enum):
    free = "free"
    pro = "pro"
    unlimited = "unlimited"


class WaitlistSource(str, Enum):
    web = "web"
    mobile = "mobile"
    social = "social"


# ==================== AI Models ====================


class AIFeature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    feature_name: str = Field(..., min_length=1, max_length=60)
    feature_value: str = Field(..., min_length=1, max_length=300)
    confidence: float = Field(..., ge=1, le=10)
    exaggeration_factor: float = Field(..., ge=1, le=9)


class FeatureAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    features: List[AIFeature] = Field(..., min_length=1, max_length=8)
    character_style: str = "cartoon"
    dominant_color: str = "blue"
    personality_traits: List[str] = Field(default_factory=lambda: ["friendly"])
    gender: Gender = Gender.unknown
    age_range: AgeRange = AgeRange.adult


class RoastContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(..., min_length=1, max_length=80)
    roast_text: str = Field(..., min_length=1, max_length=1000)
    punchline: str = Field(..., min_length=1, max_length=300)
    figurine_name: str = Field(..., min_length=1, max_length=80)


class GeneratedImages(BaseModel):
    model_config = ConfigDict(extra="forbid")

    original: str
    thumbnail: str
    medium: str


class OGMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    description: str
    image_alt: str


# ==================== API Models ====================


class CreateCharacterResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: GenerationStatus
    credits_remaining: int
    show_signup_prompt: bool = False


class CharacterStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: GenerationStatus
    attempt: int = 0
    error: Optional[str] = None
    toast: Optional[ToastPayload] = None
    seo_slug: Optional[str] = None
    model_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    medium_url: Optional[str] = None
    og_image_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class CharacterResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: GenerationStatus
    seo_slug: Optional[str] = None
    original_image_url: str
    model_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    medium_url: Optional[str] = None
    og_image_url: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image_alt: Optional[str] = None
    analysis: Optional[FeatureAnalysis] = None
    roast: Optional[RoastContent] = None
    is_public: bool
    view_count: int
    like_count: int
    created_at: datetime


class CharacterSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: GenerationStatus
    seo_slug: Optional[str] = None
    thumbnail_url: Optional[str] = None
    model_url: Optional[str] = None
    title: Optional[str] = None
    view_count: int = 0
    like_count: int = 0
    created_at: datetime


class CharacterListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    characters: List[CharacterSummary]
    total: int
    limit: int
    offset: int


class RetryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: GenerationStatus
    attempt: int


class LikeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    like_count: int


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    is_anonymous: bool
    email: Optional[str] = None
    display_name: Optional[str] = None
    credits: int
    images_created: int
    plan: Plan


class LinkAccountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., min_length=3, max_length=255)
    # Signed by the OAuth callback; proves the caller owns `email`
    identity_token: Optional[str] = Field(default=None, max_length=2048)
    display_name: Optional[str] = Field(default=None, max_length=120)


class LinkAccountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: UserResponse
    migrated_characters: int
    migrated_credits: int


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email or ""))


class WaitlistRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=255)
    source: WaitlistSource = WaitlistSource.web

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class WaitlistResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = True
    id: int
    message: str = "You're on the list!"


class WaitlistCountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    count: int


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    details: Optional[Any] = None
    toast: Optional[ToastPayload] = None
