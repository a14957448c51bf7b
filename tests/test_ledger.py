"""
Tests for the account ledger: reserve/refund, debit order, lazy expiry, admin bypass
and the naive-UTC timestamp columns.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlmodel import Session

from app.core.database import transaction
from app.core.errors import BillingError
from app.models.account import ReferralReward, UserAccount
from app.models.generation import GenerationJob
from app.models.usage import TokenUsage
from app.services.ledger import (
    DebitReceipt,
    EffectiveBalance,
    ReferralDebit,
    ledger,
    truncate_prompt,
    usage_table,
)
from app.services.plan_policy import UNLIMITED_BALANCE

from conftest import grant_tokens, user_tokens


class TestReserve:
    def test_reserve_then_refund_restores_balance(self, make_user):
        user_id = make_user(plan="starter", tokens="10")

        result = ledger.reserve(user_id, 7)
        assert result.tokens_remaining == Decimal("3.00")
        assert result.debited == {"subscription": Decimal("7.00"), "referral": Decimal("0.00")}
        assert user_tokens(user_id) == Decimal("3.00")

        ledger.refund(user_id, 7, result.receipt)
        assert user_tokens(user_id) == Decimal("10.00")

    def test_subscription_first_then_grant(self, make_user, make_grant):
        user_id = make_user(plan="starter", tokens="2")
        grant_id = make_grant(user_id, tokens="50")

        result = ledger.reserve(user_id, 15)
        assert result.receipt.subscription == Decimal("2.00")
        assert result.referral_debits == (ReferralDebit(grant_id, Decimal("13.00")),)
        assert user_tokens(user_id) == Decimal("0.00")
        assert grant_tokens(grant_id) == Decimal("37.00")

        ledger.refund(user_id, 15, result.receipt)
        assert user_tokens(user_id) == Decimal("2.00")
        assert grant_tokens(grant_id) == Decimal("50.00")

    def test_grants_spent_soonest_expiry_first(self, make_user, make_grant):
        user_id = make_user(plan="pro", tokens="0")
        later = make_grant(user_id, tokens="30", expires_in=timedelta(days=20))
        sooner = make_grant(user_id, tokens="10", expires_in=timedelta(days=3))

        result = ledger.reserve(user_id, 25)
        assert [d.grant_id for d in result.referral_debits] == [sooner, later]
        assert grant_tokens(sooner) == Decimal("0.00")
        assert grant_tokens(later) == Decimal("15.00")

    def test_expired_grants_are_ignored(self, make_user, make_grant):
        user_id = make_user(plan="pro", tokens="5")
        make_grant(user_id, tokens="50", expires_in=timedelta(seconds=-1))

        with pytest.raises(BillingError) as exc_info:
            ledger.reserve(user_id, 10)
        assert exc_info.value.code == "INSUFFICIENT_TOKENS"
        assert exc_info.value.recommended_plan == "business_plus"
        assert user_tokens(user_id) == Decimal("5.00")

    def test_insufficient_leaves_balance_untouched(self, make_user, make_grant):
        user_id = make_user(plan="starter", tokens="3")
        grant_id = make_grant(user_id, tokens="4")

        with pytest.raises(BillingError) as exc_info:
            ledger.reserve(user_id, 8)
        assert exc_info.value.code == "INSUFFICIENT_TOKENS"
        assert exc_info.value.context["tokens_remaining"] == 7.0
        assert user_tokens(user_id) == Decimal("3.00")
        assert grant_tokens(grant_id) == Decimal("4.00")

    @pytest.mark.parametrize("amount", [0, -1, "0.001"])
    def test_non_positive_amount_rejected(self, make_user, amount):
        user_id = make_user(tokens="10")
        with pytest.raises(BillingError) as exc_info:
            ledger.reserve(user_id, amount)
        assert exc_info.value.code == "BAD_REQUEST"

    def test_unknown_user(self):
        with pytest.raises(BillingError) as exc_info:
            ledger.reserve("missing", 1)
        assert exc_info.value.code == "UNAUTHORIZED"


class TestExpiry:
    def test_lazy_expiry_on_reserve(self, make_user):
        user_id = make_user(plan="pro", tokens="100", expires_in=timedelta(minutes=-5))

        with pytest.raises(BillingError) as exc_info:
            ledger.reserve(user_id, 1)
        assert exc_info.value.code == "SUBSCRIPTION_EXPIRED"
        assert exc_info.value.recommended_plan == "pro"

        account = ledger.get_account(user_id)
        assert account.status == "expired"
        assert user_tokens(user_id) == Decimal("0.00")

    def test_lazy_expiry_on_read(self, make_user):
        user_id = make_user(plan="starter", tokens="40", expires_in=timedelta(seconds=-1))
        account = ledger.get_account(user_id)
        assert account.status == "expired"
        assert account.tokens_remaining == Decimal("0.00")

    def test_expired_user_can_spend_grants_only(self, make_user, make_grant):
        user_id = make_user(plan="pro", status="expired", tokens="0", expires_in=timedelta(days=-2))
        grant_id = make_grant(user_id, tokens="20")

        result = ledger.reserve(user_id, 6)
        assert result.receipt.subscription == Decimal("0.00")
        assert result.tokens_remaining == Decimal("14.00")
        assert grant_tokens(grant_id) == Decimal("14.00")

    def test_free_without_tokens_is_expired(self, make_user):
        user_id = make_user(plan="free", tokens="0")
        with pytest.raises(BillingError) as exc_info:
            ledger.reserve(user_id, 2)
        assert exc_info.value.code == "SUBSCRIPTION_EXPIRED"
        assert exc_info.value.recommended_plan == "starter"

    def test_free_with_bonus_tokens_can_spend(self, make_user):
        user_id = make_user(plan="free", tokens="5")
        assert ledger.reserve(user_id, 2).tokens_remaining == Decimal("3.00")


class TestAdmin:
    def test_admin_is_never_debited(self, make_user):
        admin_id = make_user(plan="free", tokens="0", role="admin")

        result = ledger.reserve(admin_id, 500)
        assert result.unlimited is True
        assert result.tokens_remaining == UNLIMITED_BALANCE
        assert result.receipt.total == Decimal("0.00")
        assert user_tokens(admin_id) == Decimal("0.00")

    def test_admin_snapshot(self, make_user):
        admin_id = make_user(plan="starter", role="admin")
        account = ledger.get_account(admin_id)
        assert account.is_admin
        assert account.effective_plan == "business_plus"
        assert account.tokens_remaining == UNLIMITED_BALANCE

    def test_refund_to_admin_is_noop(self, make_user):
        admin_id = make_user(role="admin", tokens="0")
        assert ledger.refund(admin_id, 5) == Decimal("0.00")
        assert user_tokens(admin_id) == Decimal("0.00")


class TestRefund:
    def test_refund_without_receipt_credits_subscription(self, make_user):
        user_id = make_user(tokens="1")
        ledger.refund(user_id, "4.5")
        assert user_tokens(user_id) == Decimal("5.50")

    def test_refund_never_exceeds_grant_award(self, make_user, make_grant):
        user_id = make_user(tokens="0")
        grant_id = make_grant(user_id, tokens="10", remaining="9")
        receipt = DebitReceipt(referral_debits=(ReferralDebit(grant_id, Decimal("5")),))

        ledger.refund(user_id, 5, receipt)
        assert grant_tokens(grant_id) == Decimal("10.00")

    def test_refund_zero_is_noop(self, make_user):
        user_id = make_user(tokens="1")
        assert ledger.refund(user_id, 0) == Decimal("0.00")


class TestDebitReceipt:
    def test_split_follows_debit_order(self):
        receipt = DebitReceipt(
            subscription=Decimal("3.00"),
            referral_debits=(ReferralDebit("g1", Decimal("4.00")), ReferralDebit("g2", Decimal("2.00"))),
        )
        parts = receipt.split([Decimal("2.25"), Decimal("2.25"), Decimal("4.50")])
        assert parts[0] == DebitReceipt(Decimal("2.25"), ())
        assert parts[1] == DebitReceipt(Decimal("0.75"), (ReferralDebit("g1", Decimal("1.50")),))
        assert parts[2].subscription == Decimal("0.00")
        assert parts[2].referral_debits == (
            ReferralDebit("g1", Decimal("2.50")),
            ReferralDebit("g2", Decimal("2.00")),
        )
        assert sum(p.total for p in parts) == receipt.total

    def test_dict_roundtrip(self):
        receipt = DebitReceipt(Decimal("1.00"), (ReferralDebit("g1", Decimal("0.50")),))
        assert DebitReceipt.from_dict(receipt.to_dict()) == receipt
        assert DebitReceipt.from_dict(None) is None


class TestEffectiveBalance:
    def test_plan_debit_overdraw_raises(self):
        balance = EffectiveBalance(subscription=Decimal("1.00"))
        with pytest.raises(ValueError):
            balance.plan_debit(Decimal("2"))


class TestUsageLog:
    def test_record_usage_truncates_prompt(self, make_user):
        user_id = make_user(tokens="0")
        ledger.record_usage(user_id, 6, "image_generate_pro", "gemini-3-pro-image-preview", "x" * 1500)

        with transaction() as conn:
            row = conn.execute(sa.select(usage_table).where(usage_table.c.user_id == user_id)).one()
        assert Decimal(row.tokens_used) == Decimal("6.00")
        assert len(row.prompt) == 1003

    def test_zero_usage_not_recorded(self, make_user):
        user_id = make_user(tokens="0")
        ledger.record_usage(user_id, 0, "image_generate_basic")
        with transaction() as conn:
            count = conn.execute(sa.select(sa.func.count()).select_from(usage_table)).scalar_one()
        assert count == 0

    def test_truncate_prompt(self):
        assert truncate_prompt(None) is None
        assert truncate_prompt("short") == "short"


class TestTimestampColumns:
    @pytest.mark.parametrize("model", [UserAccount, ReferralReward, TokenUsage, GenerationJob])
    def test_naive_utc_columns(self, model):
        columns = [c for c in model.__table__.columns if isinstance(c.type, sa.DateTime)]
        assert columns
        assert all(c.type.timezone is False for c in columns)

    def test_orm_insert_with_default_timestamps(self, db):
        with Session(db) as session:
            account = UserAccount(email="orm@example.com", tokens_remaining=Decimal("5"))
            session.add(account)
            session.commit()
            session.refresh(account)
            assert account.created_at.tzinfo is None
            assert account.subscription_expires_at is None

        snapshot = ledger.get_account(account.id)
        assert (snapshot.plan, snapshot.status) == ("free", "free")
        assert user_tokens(account.id) == Decimal("5.00")
