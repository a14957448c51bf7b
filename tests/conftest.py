"""
Pytest configuration for studio-billing tests.
Every test gets its own SQLite database; helpers insert accounts and grants directly.
"""

import os
import tempfile

# Must be set before any app imports (settings are read at import time)
_test_data_dir = tempfile.mkdtemp(prefix="studio_test_")
os.environ.setdefault("STUDIO_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("STUDIO_GENERATED_DIRECTORY", os.path.join(_test_data_dir, "generated"))
os.environ.setdefault("STUDIO_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("STUDIO_CRON_SECRET", "test-cron-secret")
os.environ.setdefault("STUDIO_PROVIDER_KIND", "mock")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlmodel import SQLModel

from app.core.database import init_engine, transaction, utcnow

# Import all models so their tables are registered on SQLModel.metadata
from app.models.account import ReferralReward, UserAccount  # noqa: F401
from app.models.usage import TokenUsage  # noqa: F401
from app.models.generation import GenerationJob  # noqa: F401

# Load error registry so BillingError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()

users_table = UserAccount.__table__
grants_table = ReferralReward.__table__
jobs_table = GenerationJob.__table__


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    """Fresh database per test."""
    url = f"sqlite:///{tmp_path}/studio.db"
    monkeypatch.setenv("DATABASE_URL", url)
    engine = init_engine(url)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user():
    """Insert a user row. ``expires_in`` is a timedelta from now (negative = already past)."""

    def _make(
        plan="starter",
        tokens="0",
        status=None,
        expires_in=timedelta(days=20),
        role="user",
        email=None,
        referred_by=None,
        referral_code=None,
    ) -> str:
        user_id = str(uuid.uuid4())
        now = utcnow()
        if status is None:
            status = "free" if plan == "free" else "active"
        with transaction() as conn:
            conn.execute(
                users_table.insert().values(
                    id=user_id,
                    email=email or f"{user_id[:8]}@example.com",
                    role=role,
                    subscription_plan=plan,
                    subscription_status=status,
                    subscription_expires_at=(now + expires_in) if status != "free" and expires_in is not None else None,
                    tokens_remaining=Decimal(tokens),
                    referral_code=referral_code,
                    referred_by_user_id=referred_by,
                    referred_at=now if referred_by else None,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    return _make


@pytest.fixture
def make_grant():
    """Insert a referral grant owned by ``referrer_id`` (a fresh referred user is created)."""

    def _make(referrer_id, tokens="50", remaining=None, expires_in=timedelta(days=30), created_ago=timedelta(0)) -> str:
        now = utcnow()
        referred_id = str(uuid.uuid4())
        grant_id = str(uuid.uuid4())
        with transaction() as conn:
            conn.execute(
                users_table.insert().values(
                    id=referred_id,
                    email=f"{referred_id[:8]}@referred.example.com",
                    role="user",
                    subscription_plan="pro",
                    subscription_status="active",
                    subscription_expires_at=now + timedelta(days=30),
                    tokens_remaining=Decimal("0"),
                    referred_by_user_id=referrer_id,
                    referred_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.execute(
                grants_table.insert().values(
                    id=grant_id,
                    referrer_user_id=referrer_id,
                    referred_user_id=referred_id,
                    plan="pro",
                    tokens_awarded=Decimal(tokens),
                    tokens_remaining=Decimal(remaining if remaining is not None else tokens),
                    created_at=now - created_ago,
                    expires_at=now + expires_in,
                )
            )
        return grant_id

    return _make


def user_tokens(user_id) -> Decimal:
    with transaction() as conn:
        value = conn.execute(
            sa.select(users_table.c.tokens_remaining).where(users_table.c.id == user_id)
        ).scalar_one()
    return Decimal(value).quantize(Decimal("0.01"))


def grant_tokens(grant_id) -> Decimal:
    with transaction() as conn:
        value = conn.execute(
            sa.select(grants_table.c.tokens_remaining).where(grants_table.c.id == grant_id)
        ).scalar_one()
    return Decimal(value).quantize(Decimal("0.01"))


def job_rows(batch_id):
    with transaction() as conn:
        return conn.execute(
            sa.select(jobs_table).where(jobs_table.c.batch_id == batch_id).order_by(jobs_table.c.batch_index)
        ).fetchall()


def set_job_fields(batch_id, **values):
    """Direct update of every job of a batch (back-dating created_at, priority, ...)."""
    with transaction() as conn:
        conn.execute(jobs_table.update().where(jobs_table.c.batch_id == batch_id).values(**values))
