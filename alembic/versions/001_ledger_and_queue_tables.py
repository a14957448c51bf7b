"""Token ledger, referral grants, usage log and generation queue

Revision ID: 001_ledger_queue
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_ledger_queue"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="user"),
        sa.Column("subscription_plan", sa.String(32), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(16), nullable=False, server_default="free"),
        sa.Column("subscription_expires_at", sa.DateTime, nullable=True),
        sa.Column("tokens_remaining", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(16), nullable=True, unique=True),
        sa.Column("referred_by_user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("referred_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "referral_rewards",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("referrer_user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("referred_user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("tokens_awarded", sa.Numeric(10, 2), nullable=False),
        sa.Column("tokens_remaining", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("referred_user_id", name="uq_referral_rewards_referred"),
    )
    op.create_index("ix_referral_rewards_referrer_user_id", "referral_rewards", ["referrer_user_id"])
    op.create_index("ix_referral_rewards_expires_at", "referral_rewards", ["expires_at"])

    op.create_table(
        "token_usage",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tokens_used", sa.Numeric(10, 2), nullable=False),
        sa.Column("service_type", sa.String(64), nullable=False),
        sa.Column("model_used", sa.String(128), nullable=True),
        sa.Column("prompt", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "idx_token_usage_user_service_created", "token_usage", ["user_id", "service_type", "created_at"]
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_id", sa.String(36), nullable=False),
        sa.Column("batch_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False, server_default="image"),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("mode", sa.String(16), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False, server_default="gemini"),
        sa.Column("model", sa.String(128), nullable=False),
        sa.Column("aspect_ratio", sa.String(16), nullable=True),
        sa.Column("label", sa.String(128), nullable=True),
        sa.Column("base_prompt", sa.Text, nullable=True),
        sa.Column("prompt", sa.Text, nullable=False),
        sa.Column("product_images", _JSON, nullable=False),
        sa.Column("style_images", _JSON, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("result_url", sa.Text, nullable=True),
        sa.Column("error_text", sa.Text, nullable=True),
        sa.Column("billing_mode", sa.String(16), nullable=False, server_default="per_batch"),
        sa.Column("service_type", sa.String(64), nullable=False),
        sa.Column("tokens_reserved", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("tokens_refunded", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("usage_recorded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("debit_receipt", _JSON, nullable=True),
        sa.Column("worker_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("batch_id", "batch_index", name="uq_generation_jobs_batch_index"),
    )
    op.create_index("ix_generation_jobs_batch_id", "generation_jobs", ["batch_id"])
    op.create_index("idx_generation_jobs_claim", "generation_jobs", ["plan", "status", "priority", "created_at"])
    op.create_index("idx_generation_jobs_user_created", "generation_jobs", ["user_id", "kind", "created_at"])
    op.create_index("idx_generation_jobs_status_updated", "generation_jobs", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_table("generation_jobs")
    op.drop_table("token_usage")
    op.drop_table("referral_rewards")
    op.drop_table("users")
