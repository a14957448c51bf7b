"""
Subscription Lifecycle
======================

PURPOSE:
    Account registration, plan activation/renewal, bonus token grants and
    the expiry sweep.

    Activation always restarts the period at now and REPLACES the
    subscription balance with the plan's monthly tokens (no rollover).
    The first paid activation of a referred user rewards the referrer in the
    same transaction.

    expire_due_subscriptions() is the cron counterpart of the ledger's
    on-demand expiry; the ledger never relies on it having run.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from app.core.database import run_in_transaction, utcnow
from app.core.errors import BillingError
from app.models.account import _uuid
from app.services.billing_period import add_months
from app.services.ledger import users_table
from app.services.plan_policy import PLANS, as_tokens, is_paid_plan, normalize_plan
from app.services.referral_service import referral_service

logger = logging.getLogger(__name__)

MAX_BONUS_TOKENS = Decimal("1000000")


@dataclass(frozen=True)
class ActivationResult:
    user_id: str
    plan: str
    expires_at: datetime
    tokens_remaining: Decimal
    referral_grant_id: Optional[str] = None


class SubscriptionService:

    def register_account(
        self,
        email: str,
        role: str = "user",
        referral_code: Optional[str] = None,
    ) -> str:
        """Create a free account with its own referral code; optionally attribute a referrer."""
        return run_in_transaction(self._register_in, email, role, referral_code)

    def _register_in(self, conn: Connection, email: str, role: str, referral_code: Optional[str]) -> str:
        email = email.strip().lower()
        if not email or "@" not in email:
            raise BillingError("BAD_REQUEST", "A valid email is required.")
        user_id = _uuid()
        now = utcnow()
        try:
            with conn.begin_nested():
                conn.execute(
                    users_table.insert().values(
                        id=user_id,
                        email=email,
                        role=role,
                        subscription_plan="free",
                        subscription_status="free",
                        tokens_remaining=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            raise BillingError("CONFLICT", "An account with this email already exists.")
        referral_service.ensure_referral_code_in(conn, user_id)
        if referral_code:
            referral_service.attach_referral_in(conn, user_id, referral_code)
        logger.info("Account registered: user=%s", user_id)
        return user_id

    def activate_subscription(self, user_id: str, plan: str, admin_id: Optional[str] = None) -> ActivationResult:
        plan = normalize_plan(plan)
        if not is_paid_plan(plan):
            raise BillingError("BAD_REQUEST", "A paid plan is required.")
        return run_in_transaction(self._activate_in, user_id, plan, admin_id, serializable=True)

    def _activate_in(self, conn: Connection, user_id: str, plan: str, admin_id: Optional[str]) -> ActivationResult:
        exists = conn.execute(
            sa.select(users_table.c.id).where(users_table.c.id == user_id).with_for_update()
        ).scalar()
        if exists is None:
            raise BillingError("NOT_FOUND", "User not found.")

        now = utcnow()
        expires_at = add_months(now, 1)
        tokens = PLANS[plan].monthly_tokens
        conn.execute(
            users_table.update()
            .where(users_table.c.id == user_id)
            .values(
                subscription_status="active",
                subscription_plan=plan,
                subscription_expires_at=expires_at,
                tokens_remaining=tokens,
                updated_at=now,
            )
        )
        grant_id = referral_service.apply_referral_reward_in(conn, user_id, plan)
        logger.info(
            "Subscription activated: user=%s plan=%s expires_at=%s by=%s",
            user_id, plan, expires_at, admin_id or "system",
        )
        return ActivationResult(
            user_id=user_id,
            plan=plan,
            expires_at=expires_at,
            tokens_remaining=tokens,
            referral_grant_id=grant_id,
        )

    def add_bonus_tokens(self, user_id: str, tokens) -> Decimal:
        """Admin top-up of the subscription balance. Returns the new balance."""
        tokens = as_tokens(tokens)
        if tokens <= 0 or tokens > MAX_BONUS_TOKENS:
            raise BillingError("BAD_REQUEST", f"Tokens must be between 0 and {MAX_BONUS_TOKENS}.")
        return run_in_transaction(self._add_bonus_in, user_id, tokens, serializable=True)

    def _add_bonus_in(self, conn: Connection, user_id: str, tokens: Decimal) -> Decimal:
        row = conn.execute(
            sa.select(users_table.c.role, users_table.c.tokens_remaining)
            .where(users_table.c.id == user_id)
            .with_for_update()
        ).first()
        if row is None:
            raise BillingError("NOT_FOUND", "User not found.")
        if row.role == "admin":
            raise BillingError("BAD_REQUEST", "Admin accounts are not billed.")
        balance = as_tokens(row.tokens_remaining) + tokens
        conn.execute(
            users_table.update()
            .where(users_table.c.id == user_id)
            .values(tokens_remaining=balance, updated_at=utcnow())
        )
        logger.info("Bonus tokens added: user=%s tokens=%s balance=%s", user_id, tokens, balance)
        return balance

    def expire_due_subscriptions(self) -> int:
        return run_in_transaction(self._expire_due_in)

    def _expire_due_in(self, conn: Connection) -> int:
        now = utcnow()
        result = conn.execute(
            users_table.update()
            .where(users_table.c.subscription_status == "active")
            .where(users_table.c.subscription_expires_at.is_not(None))
            .where(users_table.c.subscription_expires_at <= now)
            .values(subscription_status="expired", tokens_remaining=0, updated_at=now)
        )
        if result.rowcount:
            logger.info("Expired %d subscriptions", result.rowcount)
        return result.rowcount


subscription_service = SubscriptionService()
