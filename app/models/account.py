"""
Account Models
==============

SQLModel tables for the per-user balance:
- UserAccount: subscription state and the subscription token balance.
- ReferralReward: time-boxed token grant awarded to a referrer when a
  referred user buys a paid plan. Never deleted; drained to 0 or expired.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, DateTime, Numeric, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.database import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class UserAccount(SQLModel, table=True):
    """User row as seen by billing. Mutated only by the ledger and subscription lifecycle."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid, primary_key=True, max_length=36)
    email: str = Field(unique=True, index=True, max_length=255)
    role: str = Field(default="user", max_length=16)
    subscription_plan: str = Field(default="free", max_length=32)
    subscription_status: str = Field(default="free", max_length=16)
    subscription_expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    tokens_remaining: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(10, 2), nullable=False, server_default="0"),
    )
    referral_code: Optional[str] = Field(default=None, unique=True, nullable=True, max_length=16)
    referred_by_user_id: Optional[str] = Field(default=None, foreign_key="users.id", nullable=True, max_length=36)
    referred_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))


class ReferralReward(SQLModel, table=True):
    """One grant per referred user; 0 <= tokens_remaining <= tokens_awarded."""

    __tablename__ = "referral_rewards"
    __table_args__ = (UniqueConstraint("referred_user_id", name="uq_referral_rewards_referred"),)

    id: str = Field(default_factory=_uuid, primary_key=True, max_length=36)
    referrer_user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    referred_user_id: str = Field(foreign_key="users.id", max_length=36)
    plan: str = Field(max_length=32)
    tokens_awarded: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    tokens_remaining: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
