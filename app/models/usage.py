"""Append-only usage log: one row per charged request (or per charged output, legacy)."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Numeric, Text
from sqlmodel import Field, SQLModel

from app.core.database import utcnow


class TokenUsage(SQLModel, table=True):
    __tablename__ = "token_usage"
    __table_args__ = (Index("idx_token_usage_user_service_created", "user_id", "service_type", "created_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", max_length=36)
    tokens_used: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    service_type: str = Field(max_length=64)
    model_used: Optional[str] = Field(default=None, nullable=True, max_length=128)
    prompt: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
