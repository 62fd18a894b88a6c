"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(80), primary_key=True),
        sa.Column('is_anonymous', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('google_id', sa.String(120), nullable=True, unique=True),
        sa.Column('display_name', sa.String(120), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('images_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('polar_customer_id', sa.String(120), nullable=True),
        sa.Column('stripe_customer_id', sa.String(120), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Image uploads table
    op.create_table(
        'image_uploads',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('user_id', sa.String(80), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('file_url', sa.String(500), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('mime_type', sa.String(60), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_image_uploads_user_id', 'image_uploads', ['user_id'])

    # Characters table
    op.create_table(
        'characters',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('user_id', sa.String(80), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('upload_id', sa.String(60), sa.ForeignKey('image_uploads.id'), nullable=True),
        sa.Column('original_image_url', sa.String(500), nullable=False),
        sa.Column('model_url', sa.String(500), nullable=True),
        sa.Column('thumbnail_url', sa.String(500), nullable=True),
        sa.Column('medium_url', sa.String(500), nullable=True),
        sa.Column('og_image_url', sa.Text(), nullable=True),
        sa.Column('seo_slug', sa.String(160), nullable=True),
        sa.Column('og_title', sa.String(200), nullable=True),
        sa.Column('og_description', sa.String(500), nullable=True),
        sa.Column('og_image_alt', sa.String(300), nullable=True),
        sa.Column('ai_features_json', sa.JSON(), nullable=True),
        sa.Column('generation_params', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('idempotency_key', sa.String(80), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('view_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('like_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_character_idempotency'),
    )
    op.create_index('ix_characters_user_id', 'characters', ['user_id'])
    op.create_index('ix_characters_seo_slug', 'characters', ['seo_slug'], unique=True)
    op.create_index('ix_characters_status', 'characters', ['status'])
    op.create_index('ix_characters_created_at', 'characters', ['created_at'])

    # Credit ledger
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(80), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(30), nullable=False),
        sa.Column('provider', sa.String(20), nullable=True),
        sa.Column('description', sa.String(200), nullable=True),
        sa.Column('reference_id', sa.String(120), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'reference_id', name='uq_credit_tx_provider_ref'),
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])

    # Waitlist
    op.create_table(
        'waitlist',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='web'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('waitlist')
    op.drop_index('ix_credit_transactions_user_id', 'credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index('ix_characters_created_at', 'characters')
    op.drop_index('ix_characters_status', 'characters')
    op.drop_index('ix_characters_seo_slug', 'characters')
    op.drop_index('ix_characters_user_id', 'characters')
    op.drop_table('characters')
    op.drop_index('ix_image_uploads_user_id', 'image_uploads')
    op.drop_table('image_uploads')
    op.drop_table('users')
