"""
Account Ledger
==============

PURPOSE:
    Per-user hybrid balance: subscription tokens plus time-boxed referral
    reward grants. Atomic reserve / refund, append-only usage log.

DEBIT ORDER (owned by EffectiveBalance.plan_debit, nowhere else):
    1. subscription balance, down to 0
    2. active grants, soonest expiry first, then oldest created first,
       each capped at its own remaining tokens

CONCURRENCY:
    Every mutation runs in one transaction (SERIALIZABLE on PostgreSQL)
    holding FOR UPDATE locks on the user row and the touched grant rows.
    Transient serialization failures are retried by run_in_transaction.

EXPIRY:
    Subscriptions expire on demand: every reserve/read first flips an
    active subscription past its expiry to ``expired`` and zeroes its
    balance, so correctness never depends on the cron sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from app.core.database import run_in_transaction, utcnow
from app.core.errors import BillingError
from app.models.account import ReferralReward, UserAccount
from app.models.usage import TokenUsage
from app.services.plan_policy import (
    ADMIN_PLAN,
    UNLIMITED_BALANCE,
    as_tokens,
    next_plan,
    normalize_plan,
)

logger = logging.getLogger(__name__)

users_table = UserAccount.__table__
grants_table = ReferralReward.__table__
usage_table = TokenUsage.__table__

MAX_PROMPT_LOG_CHARS = 1000
ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReferralDebit:
    grant_id: str
    tokens: Decimal


@dataclass(frozen=True)
class DebitReceipt:
    """Exactly which balances a reservation touched; the unit of refund."""

    subscription: Decimal = ZERO
    referral_debits: Tuple[ReferralDebit, ...] = ()

    @property
    def referral(self) -> Decimal:
        return as_tokens(sum((d.tokens for d in self.referral_debits), ZERO))

    @property
    def total(self) -> Decimal:
        return as_tokens(self.subscription + self.referral)

    def split(self, amounts: Sequence[Decimal]) -> List["DebitReceipt"]:
        """Cut the receipt into consecutive parts of the given amounts (per-output billing)."""
        sources: List[Tuple[Optional[str], Decimal]] = [(None, self.subscription)]
        sources += [(d.grant_id, d.tokens) for d in self.referral_debits]
        parts: List[DebitReceipt] = []
        for amount in amounts:
            need = as_tokens(amount)
            subscription = ZERO
            debits: List[ReferralDebit] = []
            while need > 0 and sources:
                grant_id, available = sources[0]
                take = min(available, need)
                if grant_id is None:
                    subscription += take
                else:
                    debits.append(ReferralDebit(grant_id, take))
                need -= take
                if take == available:
                    sources.pop(0)
                else:
                    sources[0] = (grant_id, available - take)
            parts.append(DebitReceipt(as_tokens(subscription), tuple(debits)))
        return parts

    def to_dict(self) -> dict:
        return {
            "subscription": str(self.subscription),
            "referral_debits": [
                {"grant_id": d.grant_id, "tokens": str(d.tokens)} for d in self.referral_debits
            ],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["DebitReceipt"]:
        if not data:
            return None
        return cls(
            subscription=as_tokens(data.get("subscription", 0)),
            referral_debits=tuple(
                ReferralDebit(str(d["grant_id"]), as_tokens(d["tokens"]))
                for d in data.get("referral_debits", [])
            ),
        )


@dataclass(frozen=True)
class GrantBalance:
    grant_id: str
    tokens_remaining: Decimal
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class EffectiveBalance:
    """Subscription balance plus active grants, in debit order."""

    subscription: Decimal
    grants: Tuple[GrantBalance, ...] = ()

    @classmethod
    def compute(
        cls, subscription, grant_rows: Iterable, now: Optional[datetime] = None
    ) -> "EffectiveBalance":
        now = now or utcnow()
        active = [
            GrantBalance(
                grant_id=str(row.id),
                tokens_remaining=as_tokens(row.tokens_remaining),
                expires_at=row.expires_at,
                created_at=row.created_at,
            )
            for row in grant_rows
            if as_tokens(row.tokens_remaining) > 0 and row.expires_at > now
        ]
        active.sort(key=lambda g: (g.expires_at, g.created_at, g.grant_id))
        return cls(subscription=max(as_tokens(subscription), ZERO), grants=tuple(active))

    @property
    def referral(self) -> Decimal:
        return as_tokens(sum((g.tokens_remaining for g in self.grants), ZERO))

    @property
    def total(self) -> Decimal:
        return as_tokens(self.subscription + self.referral)

    def plan_debit(self, tokens: Decimal) -> DebitReceipt:
        """Split ``tokens`` across the balance. Caller checks ``total`` first."""
        tokens = as_tokens(tokens)
        if tokens > self.total:
            raise ValueError(f"cannot debit {tokens} from balance {self.total}")

        from_subscription = min(self.subscription, tokens)
        remaining = tokens - from_subscription
        debits: List[ReferralDebit] = []
        for grant in self.grants:
            if remaining <= 0:
                break
            take = min(grant.tokens_remaining, remaining)
            debits.append(ReferralDebit(grant.grant_id, as_tokens(take)))
            remaining -= take
        return DebitReceipt(subscription=as_tokens(from_subscription), referral_debits=tuple(debits))

    def as_dict(self) -> dict:
        return {
            "subscription": float(self.subscription),
            "referral": float(self.referral),
            "total": float(self.total),
            "grants": [
                {
                    "id": g.grant_id,
                    "tokens_remaining": float(g.tokens_remaining),
                    "expires_at": g.expires_at.isoformat(),
                }
                for g in self.grants
            ],
        }


@dataclass(frozen=True)
class ReserveResult:
    tokens_remaining: Decimal
    receipt: DebitReceipt = field(default_factory=DebitReceipt)
    unlimited: bool = False

    @property
    def debited(self) -> dict:
        return {"subscription": self.receipt.subscription, "referral": self.receipt.referral}

    @property
    def referral_debits(self) -> Tuple[ReferralDebit, ...]:
        return self.receipt.referral_debits


@dataclass(frozen=True)
class AccountSnapshot:
    """Billing view of a user after on-demand expiry."""

    id: str
    email: str
    role: str
    plan: str
    status: str
    expires_at: Optional[datetime]
    balance: EffectiveBalance

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def effective_plan(self) -> str:
        """Admins are billed (not at all) but scheduled as the top plan."""
        return ADMIN_PLAN if self.is_admin else self.plan

    @property
    def tokens_remaining(self) -> Decimal:
        return UNLIMITED_BALANCE if self.is_admin else self.balance.total


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class AccountLedger:
    """
    Reserve/refund/usage operations. Each public method owns its transaction;
    the ``*_in`` variants run inside a caller's transaction (batch settlement).
    """

    # -- reads --------------------------------------------------------------

    def get_account(self, user_id: str) -> AccountSnapshot:
        return run_in_transaction(self._load_account, user_id)

    def get_effective_balance(self, user_id: str) -> EffectiveBalance:
        return self.get_account(user_id).balance

    def _load_account(self, conn: Connection, user_id: str) -> AccountSnapshot:
        now = utcnow()
        self._expire_if_due(conn, user_id, now)
        user = self._select_user(conn, user_id, lock=False)
        balance = EffectiveBalance.compute(
            user.tokens_remaining, self._select_grants(conn, user_id, lock=False), now
        )
        return _snapshot(user, balance)

    # -- reserve ------------------------------------------------------------

    def reserve(self, user_id: str, tokens) -> ReserveResult:
        """Atomically debit ``tokens`` or raise a BillingError."""
        tokens = as_tokens(tokens)
        if tokens <= 0:
            raise BillingError("BAD_REQUEST", "Token amount must be positive.")
        return run_in_transaction(self.reserve_in, user_id, tokens, serializable=True)

    def reserve_in(self, conn: Connection, user_id: str, tokens: Decimal) -> ReserveResult:
        now = utcnow()
        self._expire_if_due(conn, user_id, now)
        user = self._select_user(conn, user_id, lock=True)

        if user.role == "admin":
            return ReserveResult(tokens_remaining=UNLIMITED_BALANCE, unlimited=True)

        plan = normalize_plan(user.subscription_plan)
        status = user.subscription_status or "free"
        balance = EffectiveBalance.compute(
            user.tokens_remaining, self._select_grants(conn, user_id, lock=True), now
        )

        lapsed = status == "expired" or (
            status == "active"
            and (user.subscription_expires_at is None or user.subscription_expires_at <= now)
        )
        unfunded_free = status == "free" and balance.subscription <= 0
        if (lapsed or unfunded_free) and balance.referral <= 0:
            raise BillingError(
                "SUBSCRIPTION_EXPIRED",
                "Your subscription has expired. Renew it to keep generating.",
                recommended_plan="starter" if plan == "free" else plan,
            )
        if lapsed:
            # Only referral tokens remain spendable on a lapsed subscription
            balance = EffectiveBalance(subscription=ZERO, grants=balance.grants)

        if balance.total < tokens:
            raise BillingError(
                "INSUFFICIENT_TOKENS",
                "Not enough tokens. Renew or upgrade your plan.",
                recommended_plan=next_plan(plan),
                context={"tokens_required": float(tokens), "tokens_remaining": float(balance.total)},
            )

        receipt = balance.plan_debit(tokens)
        if receipt.subscription > 0:
            conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(
                    tokens_remaining=users_table.c.tokens_remaining - receipt.subscription,
                    updated_at=now,
                )
            )
        for debit in receipt.referral_debits:
            conn.execute(
                grants_table.update()
                .where(grants_table.c.id == debit.grant_id)
                .values(tokens_remaining=grants_table.c.tokens_remaining - debit.tokens)
            )

        remaining = as_tokens(balance.total - tokens)
        logger.info(
            "Reserved %s tokens: user=%s subscription=%s referral=%s remaining=%s",
            tokens, user_id, receipt.subscription, receipt.referral, remaining,
        )
        return ReserveResult(tokens_remaining=remaining, receipt=receipt)

    # -- refund -------------------------------------------------------------

    def refund(self, user_id: str, tokens, receipt: Optional[DebitReceipt] = None) -> Decimal:
        """Return tokens to the balances a reservation came from. Returns the amount refunded."""
        tokens = as_tokens(tokens)
        if tokens <= 0:
            return ZERO
        return run_in_transaction(self.refund_in, user_id, tokens, receipt, serializable=True)

    def refund_in(
        self,
        conn: Connection,
        user_id: str,
        tokens: Decimal,
        receipt: Optional[DebitReceipt] = None,
    ) -> Decimal:
        user = self._select_user(conn, user_id, lock=True)
        if user.role == "admin":
            return ZERO
        now = utcnow()

        to_subscription = tokens
        if receipt is not None and receipt.total == tokens:
            to_subscription = receipt.subscription
            for debit in receipt.referral_debits:
                self._refund_grant(conn, debit)
        elif receipt is not None:
            logger.warning(
                "Refund amount %s does not match receipt total %s for user=%s, crediting subscription",
                tokens, receipt.total, user_id,
            )

        if to_subscription > 0:
            conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(
                    tokens_remaining=users_table.c.tokens_remaining + to_subscription,
                    updated_at=now,
                )
            )
        logger.info("Refunded %s tokens: user=%s", tokens, user_id)
        return tokens

    def _refund_grant(self, conn: Connection, debit: ReferralDebit) -> None:
        row = conn.execute(
            sa.select(grants_table.c.tokens_awarded, grants_table.c.tokens_remaining)
            .where(grants_table.c.id == debit.grant_id)
            .with_for_update()
        ).first()
        if row is None:
            logger.error("Refund skipped: referral grant %s no longer exists", debit.grant_id)
            return
        restored = min(as_tokens(row.tokens_awarded), as_tokens(row.tokens_remaining) + debit.tokens)
        conn.execute(
            grants_table.update()
            .where(grants_table.c.id == debit.grant_id)
            .values(tokens_remaining=restored)
        )

    # -- usage log ----------------------------------------------------------

    def record_usage(
        self,
        user_id: str,
        tokens_used,
        service_type: str,
        model_used: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> None:
        run_in_transaction(
            self.record_usage_in, user_id, as_tokens(tokens_used), service_type, model_used, prompt
        )

    def record_usage_in(
        self,
        conn: Connection,
        user_id: str,
        tokens_used: Decimal,
        service_type: str,
        model_used: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> None:
        if tokens_used <= 0:
            return
        conn.execute(
            usage_table.insert().values(
                user_id=user_id,
                tokens_used=tokens_used,
                service_type=service_type,
                model_used=model_used,
                prompt=truncate_prompt(prompt),
                created_at=utcnow(),
            )
        )

    # -- helpers ------------------------------------------------------------

    def _expire_if_due(self, conn: Connection, user_id: str, now: datetime) -> None:
        result = conn.execute(
            users_table.update()
            .where(users_table.c.id == user_id)
            .where(users_table.c.subscription_status == "active")
            .where(users_table.c.subscription_expires_at.is_not(None))
            .where(users_table.c.subscription_expires_at <= now)
            .values(subscription_status="expired", tokens_remaining=0, updated_at=now)
        )
        if result.rowcount:
            logger.info("Subscription expired on demand: user=%s", user_id)

    def _select_user(self, conn: Connection, user_id: str, lock: bool):
        stmt = sa.select(users_table).where(users_table.c.id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        user = conn.execute(stmt).first()
        if user is None:
            raise BillingError("UNAUTHORIZED", "User not found.")
        return user

    def _select_grants(self, conn: Connection, user_id: str, lock: bool) -> Sequence:
        stmt = (
            sa.select(grants_table)
            .where(grants_table.c.referrer_user_id == user_id)
            .where(grants_table.c.tokens_remaining > 0)
            .order_by(grants_table.c.expires_at.asc(), grants_table.c.created_at.asc())
        )
        if lock:
            stmt = stmt.with_for_update()
        return conn.execute(stmt).fetchall()


def truncate_prompt(prompt: Optional[str]) -> Optional[str]:
    if prompt is None:
        return None
    if len(prompt) > MAX_PROMPT_LOG_CHARS:
        return prompt[:MAX_PROMPT_LOG_CHARS] + "..."
    return prompt


def _snapshot(user, balance: EffectiveBalance) -> AccountSnapshot:
    return AccountSnapshot(
        id=user.id,
        email=user.email,
        role=user.role,
        plan=normalize_plan(user.subscription_plan),
        status=user.subscription_status or "free",
        expires_at=user.subscription_expires_at,
        balance=balance,
    )


ledger = AccountLedger()
