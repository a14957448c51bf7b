"""
Referral Program
================

PURPOSE:
    Referral codes, referral attribution at signup, and reward grants.

    When a referred user buys a paid plan, the referrer receives a
    ReferralReward grant (starter 30, pro 50, business_plus 100 tokens)
    that expires 30 days later. One grant per referred user, enforced by
    the unique index on referred_user_id (insert ... on conflict do nothing).
    Grants are spent by the ledger after the subscription balance.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from app.core.database import run_in_transaction, utcnow
from app.models.account import _uuid
from app.services.ledger import grants_table, users_table
from app.services.plan_policy import PLANS, as_tokens, is_paid_plan, normalize_plan

logger = logging.getLogger(__name__)

REFERRAL_CODE_RE = re.compile(r"^[A-Z0-9]{6,16}$")
REFERRAL_CODE_LENGTH = 10
REFERRAL_CODE_ATTEMPTS = 12
GRANT_TTL = timedelta(days=30)
INVITED_USERS_LIMIT = 200
_ALPHABET = string.ascii_uppercase + string.digits


def sanitize_referral_code(value) -> Optional[str]:
    if not value:
        return None
    code = str(value).strip().upper()
    return code if REFERRAL_CODE_RE.match(code) else None


def generate_referral_code() -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def reward_tokens_for_plan(plan: str) -> Decimal:
    return PLANS[normalize_plan(plan)].referral_reward_tokens


def mask_email(email: str) -> str:
    name, at, domain = email.partition("@")
    if not at or len(name) <= 1:
        return email
    masked = f"{name[0]}*" if len(name) <= 2 else f"{name[:2]}***"
    return f"{masked}@{domain}"


@dataclass(frozen=True)
class InvitedUser:
    id: str
    email_masked: str
    referred_at: Optional[datetime]
    subscription_plan: str
    reward_tokens: Optional[Decimal]
    rewarded_plan: Optional[str]


@dataclass(frozen=True)
class ReferralSummary:
    referral_code: str
    invited_count: int
    rewards_count: int
    tokens_earned: Decimal
    active_referral_tokens: Decimal
    invited_users: List[InvitedUser] = field(default_factory=list)


class ReferralService:

    def ensure_referral_code(self, user_id: str) -> str:
        return run_in_transaction(self.ensure_referral_code_in, user_id)

    def ensure_referral_code_in(self, conn: Connection, user_id: str) -> str:
        current = conn.execute(
            sa.select(users_table.c.referral_code)
            .where(users_table.c.id == user_id)
            .with_for_update()
        ).scalar_one()
        if current and REFERRAL_CODE_RE.match(current):
            return current

        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            try:
                with conn.begin_nested():
                    conn.execute(
                        users_table.update()
                        .where(users_table.c.id == user_id)
                        .values(referral_code=code, updated_at=utcnow())
                    )
                return code
            except IntegrityError:
                logger.info("Referral code collision for user=%s, retrying", user_id)
        raise RuntimeError("Failed to generate a unique referral code")

    def attach_referral(self, user_id: str, code) -> Optional[str]:
        """Attribute ``user_id`` to the owner of ``code``. Returns the referrer id when attached."""
        return run_in_transaction(self.attach_referral_in, user_id, code)

    def attach_referral_in(self, conn: Connection, user_id: str, code) -> Optional[str]:
        code = sanitize_referral_code(code)
        if code is None:
            return None
        referrer_id = conn.execute(
            sa.select(users_table.c.id).where(users_table.c.referral_code == code)
        ).scalar()
        if referrer_id is None or referrer_id == user_id:
            return None

        # Only users who never bought a plan and were not referred before
        result = conn.execute(
            users_table.update()
            .where(users_table.c.id == user_id)
            .where(users_table.c.referred_by_user_id.is_(None))
            .where(users_table.c.subscription_plan == "free")
            .where(users_table.c.subscription_status == "free")
            .values(referred_by_user_id=referrer_id, referred_at=utcnow(), updated_at=utcnow())
        )
        if not result.rowcount:
            return None
        logger.info("Referral attached: user=%s referrer=%s", user_id, referrer_id)
        return referrer_id

    def apply_referral_reward_in(self, conn: Connection, referred_user_id: str, plan: str) -> Optional[str]:
        """Create the referrer's grant for this purchase. Returns the grant id, or None."""
        if not is_paid_plan(plan):
            return None
        referrer_id = conn.execute(
            sa.select(users_table.c.referred_by_user_id)
            .where(users_table.c.id == referred_user_id)
            .with_for_update()
        ).scalar()
        if not referrer_id or referrer_id == referred_user_id:
            return None

        tokens = reward_tokens_for_plan(plan)
        now = utcnow()
        grant_id = _uuid()
        dialect = postgresql if conn.dialect.name == "postgresql" else sqlite
        stmt = (
            dialect.insert(grants_table)
            .values(
                id=grant_id,
                referrer_user_id=referrer_id,
                referred_user_id=referred_user_id,
                plan=normalize_plan(plan),
                tokens_awarded=tokens,
                tokens_remaining=tokens,
                created_at=now,
                expires_at=now + GRANT_TTL,
            )
            .on_conflict_do_nothing(index_elements=["referred_user_id"])
        )
        if not conn.execute(stmt).rowcount:
            return None
        logger.info(
            "Referral reward granted: referrer=%s referred=%s plan=%s tokens=%s",
            referrer_id, referred_user_id, plan, tokens,
        )
        return grant_id

    def get_summary(self, user_id: str) -> ReferralSummary:
        return run_in_transaction(self._summary_in, user_id)

    def _summary_in(self, conn: Connection, user_id: str) -> ReferralSummary:
        code = self.ensure_referral_code_in(conn, user_id)
        now = utcnow()
        grants = conn.execute(
            sa.select(grants_table).where(grants_table.c.referrer_user_id == user_id)
        ).fetchall()
        invited = conn.execute(
            sa.select(
                users_table.c.id,
                users_table.c.email,
                users_table.c.referred_at,
                users_table.c.subscription_plan,
                grants_table.c.tokens_awarded,
                grants_table.c.plan.label("rewarded_plan"),
            )
            .select_from(
                users_table.outerjoin(grants_table, grants_table.c.referred_user_id == users_table.c.id)
            )
            .where(users_table.c.referred_by_user_id == user_id)
            .order_by(users_table.c.created_at.desc())
            .limit(INVITED_USERS_LIMIT)
        ).fetchall()
        invited_count = conn.execute(
            sa.select(sa.func.count()).select_from(users_table).where(users_table.c.referred_by_user_id == user_id)
        ).scalar_one()

        return ReferralSummary(
            referral_code=code,
            invited_count=invited_count,
            rewards_count=len(grants),
            tokens_earned=as_tokens(sum((as_tokens(g.tokens_awarded) for g in grants), Decimal(0))),
            active_referral_tokens=as_tokens(
                sum(
                    (as_tokens(g.tokens_remaining) for g in grants if g.expires_at > now),
                    Decimal(0),
                )
            ),
            invited_users=[
                InvitedUser(
                    id=row.id,
                    email_masked=mask_email(row.email),
                    referred_at=row.referred_at,
                    subscription_plan=normalize_plan(row.subscription_plan),
                    reward_tokens=as_tokens(row.tokens_awarded) if row.tokens_awarded is not None else None,
                    rewarded_plan=row.rewarded_plan,
                )
                for row in invited
            ],
        )


referral_service = ReferralService()
