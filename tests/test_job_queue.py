"""
Tests for JobQueue: claim order, exactly-once settlement, stale sweep,
cancellation, per-output billing and concurrent claim/settle.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa

from app.core.database import transaction, utcnow
from app.core.errors import BillingError
from app.models.generation import BillingMode
from app.services.billing_strategy import finalize_job, strategy_for, PerBatchBilling
from app.services.job_queue import (
    BatchRequest,
    JobQueue,
    JobSpec,
    SettlementOutcome,
    derive_batch_status,
    job_queue,
    split_evenly,
)
from app.services.ledger import ledger, usage_table

from conftest import job_rows, set_job_fields, user_tokens

WORKER = "worker-a"


def _usage_rows(user_id):
    with transaction() as conn:
        return conn.execute(sa.select(usage_table).where(usage_table.c.user_id == user_id)).fetchall()


def _enqueue(user_id, plan="pro", jobs=3, cost=None, billing_mode=BillingMode.PER_BATCH, prompts=None):
    receipt = None
    reserved = Decimal("0")
    if cost is not None:
        reservation = ledger.reserve(user_id, cost)
        receipt = reservation.receipt
        reserved = Decimal(str(cost))
    prompts = prompts or [f"sneaker shot {i}" for i in range(jobs)]
    return job_queue.enqueue(
        BatchRequest(
            user_id=user_id,
            plan=plan,
            kind="image",
            mode="pro",
            model="gemini-3-pro-image-preview",
            service_type="image_generate_pro",
            jobs=[JobSpec(prompt=p, label=f"Shot {i}") for i, p in enumerate(prompts)],
            tokens_reserved=reserved,
            receipt=receipt,
            billing_mode=billing_mode,
            base_prompt="sneaker",
        )
    )


def _drain(plan="pro", worker_id=WORKER):
    jobs = []
    while True:
        job = job_queue.claim_next_job(plan, worker_id)
        if job is None:
            return jobs
        jobs.append(job)


# ---------------------------------------------------------------------------
# Enqueue and claim
# ---------------------------------------------------------------------------

class TestEnqueue:
    def test_anchor_carries_whole_reservation(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6)

        rows = job_rows(batch.batch_id)
        assert [r.batch_index for r in rows] == [0, 1, 2]
        assert [Decimal(r.tokens_reserved) for r in rows] == [Decimal("6.00"), Decimal("0.00"), Decimal("0.00")]
        assert rows[0].debit_receipt["subscription"] == "6.00"
        assert rows[1].debit_receipt is None
        assert all(r.status == "queued" for r in rows)
        assert batch.job_ids == [r.id for r in rows]

    def test_plan_priority_applied(self, make_user):
        user_id = make_user(plan="business_plus", tokens="20")
        batch = _enqueue(user_id, plan="business_plus", jobs=1)
        assert job_rows(batch.batch_id)[0].priority == 30

    def test_empty_batch_rejected(self, make_user):
        user_id = make_user()
        with pytest.raises(BillingError) as exc_info:
            job_queue.enqueue(
                BatchRequest(user_id, "pro", "image", "pro", "m", "image_generate_pro", jobs=[])
            )
        assert exc_info.value.code == "BAD_REQUEST"


class TestClaim:
    def test_priority_then_fifo(self, make_user):
        user_id = make_user(plan="pro")
        now = utcnow()
        batches = [_enqueue(user_id, jobs=1) for _ in range(4)]
        for offset, (batch, priority) in enumerate(zip(batches, [5, 1, 5, 3])):
            set_job_fields(batch.batch_id, priority=priority, created_at=now - timedelta(minutes=10 - offset))

        claimed = [job.batch_id for job in _drain()]
        expected = [batches[0], batches[2], batches[3], batches[1]]
        assert claimed == [b.batch_id for b in expected]

    def test_batch_jobs_claimed_in_index_order(self, make_user):
        user_id = make_user(plan="pro")
        batch = _enqueue(user_id, jobs=3)
        assert [job.batch_index for job in _drain()] == [0, 1, 2]
        assert all(r.status == "processing" and r.worker_id == WORKER for r in job_rows(batch.batch_id))

    def test_plans_are_partitioned(self, make_user):
        user_id = make_user(plan="pro")
        _enqueue(user_id, plan="pro", jobs=1)
        assert job_queue.claim_next_job("starter", WORKER) is None
        assert job_queue.claim_next_job("pro", WORKER) is not None

    def test_empty_queue(self):
        assert job_queue.claim_next_job("pro", WORKER) is None

    def test_claimed_job_carries_inputs(self, make_user):
        user_id = make_user(plan="pro")
        _enqueue(user_id, jobs=1, prompts=["red sneaker"])
        job = job_queue.claim_next_job("pro", WORKER)
        assert job.prompt == "red sneaker"
        assert job.model == "gemini-3-pro-image-preview"
        assert job.billing_mode == "per_batch"
        assert job.worker_id == WORKER


class TestCompletion:
    def test_only_owner_can_finish(self, make_user):
        user_id = make_user(plan="pro")
        _enqueue(user_id, jobs=1)
        job = job_queue.claim_next_job("pro", WORKER)

        assert job_queue.mark_succeeded(job.id, "someone-else", "/generated/x.png") is False
        assert job_queue.mark_succeeded(job.id, WORKER, "/generated/x.png") is True
        assert job_queue.mark_failed(job.id, WORKER, "late") is False

    def test_error_text_truncated(self, make_user):
        user_id = make_user(plan="pro")
        batch = _enqueue(user_id, jobs=1)
        job = job_queue.claim_next_job("pro", WORKER)
        job_queue.mark_failed(job.id, WORKER, "e" * 6000)
        assert len(job_rows(batch.batch_id)[0].error_text) == 5000


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class TestSettlement:
    def test_pending_until_all_terminal(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6)
        first, second, third = _drain()

        job_queue.mark_succeeded(first.id, WORKER, "/generated/1.png")
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.PENDING
        assert _usage_rows(user_id) == []

        job_queue.mark_succeeded(second.id, WORKER, "/generated/2.png")
        job_queue.mark_succeeded(third.id, WORKER, "/generated/3.png")
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.CHARGED

        usage = _usage_rows(user_id)
        assert len(usage) == 1
        assert Decimal(usage[0].tokens_used) == Decimal("6.00")
        assert usage[0].service_type == "image_generate_pro"
        assert usage[0].prompt == "sneaker"
        assert user_tokens(user_id) == Decimal("14.00")

    def test_settles_exactly_once(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=1)
        (job,) = _drain()
        job_queue.mark_succeeded(job.id, WORKER, "/generated/1.png")

        outcomes = [job_queue.settle_batch(batch.batch_id) for _ in range(3)]
        assert outcomes == [
            SettlementOutcome.CHARGED,
            SettlementOutcome.ALREADY_SETTLED,
            SettlementOutcome.ALREADY_SETTLED,
        ]
        assert len(_usage_rows(user_id)) == 1

    def test_partial_success_charges_full_price(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6)
        first, second, third = _drain()
        job_queue.mark_failed(first.id, WORKER, "boom")
        job_queue.mark_succeeded(second.id, WORKER, "/generated/2.png")
        job_queue.mark_failed(third.id, WORKER, "boom")

        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.CHARGED
        assert Decimal(_usage_rows(user_id)[0].tokens_used) == Decimal("6.00")
        assert job_queue.get_batch(batch.batch_id).status == "partial"

    def test_all_failed_refunds_once(self, make_user, make_grant):
        user_id = make_user(plan="pro", tokens="2")
        grant_id = make_grant(user_id, tokens="10")
        batch = _enqueue(user_id, cost=6)
        assert user_tokens(user_id) == Decimal("0.00")

        for job in _drain():
            job_queue.mark_failed(job.id, WORKER, "provider down")
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.REFUNDED
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.ALREADY_SETTLED

        assert user_tokens(user_id) == Decimal("2.00")
        account = ledger.get_account(user_id)
        assert account.balance.referral == Decimal("10.00")
        assert _usage_rows(user_id) == []
        assert Decimal(job_rows(batch.batch_id)[0].tokens_refunded) == Decimal("6.00")
        assert grant_id in [g.grant_id for g in account.balance.grants]

    def test_zero_reservation_marks_settled(self, make_user):
        admin_id = make_user(role="admin")
        batch = _enqueue(admin_id, plan="business_plus", jobs=2)
        for job in _drain("business_plus"):
            job_queue.mark_succeeded(job.id, WORKER, "/generated/a.png")

        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.NO_CHARGE
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.ALREADY_SETTLED
        assert _usage_rows(admin_id) == []

    def test_missing_batch(self):
        assert job_queue.settle_batch("nope") == SettlementOutcome.MISSING


# ---------------------------------------------------------------------------
# Finalize (mark + billing in one transaction)
# ---------------------------------------------------------------------------

class TestFinalizeJob:
    def test_last_job_triggers_settlement(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=2)
        first, second = _drain()

        assert finalize_job(first, WORKER, error_text="bad prompt") == SettlementOutcome.PENDING
        assert finalize_job(second, WORKER, result_url="/generated/2.png") == SettlementOutcome.CHARGED
        view = job_queue.get_batch(batch.batch_id)
        assert view.status == "partial"
        assert view.jobs[1].result_url == "/generated/2.png"
        assert view.jobs[0].error == "bad prompt"

    def test_lost_ownership_writes_nothing(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=1)
        (job,) = _drain()
        set_job_fields(batch.batch_id, updated_at=utcnow() - timedelta(minutes=30))
        assert job_queue.requeue_stale_jobs(20) == 1

        assert finalize_job(job, WORKER, result_url="/generated/late.png") is None
        row = job_rows(batch.batch_id)[0]
        assert row.status == "queued"
        assert row.result_url is None

    def test_unknown_billing_mode_falls_back(self):
        assert isinstance(strategy_for("per_moon"), PerBatchBilling)


class TestPerOutputBilling:
    def test_cost_split_with_remainder_on_last(self):
        assert split_evenly(Decimal("10.00"), 3) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]
        assert split_evenly(Decimal("7.00"), 1) == [Decimal("7.00")]

    def test_each_output_charged_or_refunded(self, make_user):
        user_id = make_user(plan="pro", tokens="10")
        batch = _enqueue(user_id, cost=7, jobs=2, billing_mode=BillingMode.PER_OUTPUT)
        rows = job_rows(batch.batch_id)
        assert [Decimal(r.tokens_reserved) for r in rows] == [Decimal("3.50"), Decimal("3.50")]

        first, second = _drain()
        assert finalize_job(first, WORKER, result_url="/generated/1.png") == SettlementOutcome.CHARGED
        assert finalize_job(second, WORKER, error_text="nope") == SettlementOutcome.REFUNDED

        usage = _usage_rows(user_id)
        assert [Decimal(u.tokens_used) for u in usage] == [Decimal("3.50")]
        assert user_tokens(user_id) == Decimal("6.50")
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.NO_CHARGE

    def test_job_billed_once(self, make_user):
        user_id = make_user(plan="pro", tokens="10")
        batch = _enqueue(user_id, cost=4, jobs=2, billing_mode=BillingMode.PER_OUTPUT)
        first, _ = _drain()
        job_queue.mark_succeeded(first.id, WORKER, "/generated/1.png")

        with transaction() as conn:
            assert job_queue.charge_job_in(conn, first.id) == SettlementOutcome.CHARGED
            assert job_queue.charge_job_in(conn, first.id) == SettlementOutcome.ALREADY_SETTLED
            assert job_queue.refund_job_in(conn, first.id) == SettlementOutcome.ALREADY_SETTLED
        assert len(_usage_rows(user_id)) == 1
        assert batch.batch_id == first.batch_id


# ---------------------------------------------------------------------------
# Stale sweep
# ---------------------------------------------------------------------------

class TestStaleSweep:
    def test_requeues_stuck_processing_jobs(self, make_user):
        user_id = make_user(plan="pro")
        batch = _enqueue(user_id, jobs=2)
        _drain()
        set_job_fields(batch.batch_id, updated_at=utcnow() - timedelta(minutes=25))

        assert job_queue.requeue_stale_jobs(20) == 2
        rows = job_rows(batch.batch_id)
        assert all(r.status == "queued" and r.worker_id is None for r in rows)
        assert len(_drain(worker_id="worker-b")) == 2

    def test_fresh_jobs_untouched(self, make_user):
        user_id = make_user(plan="pro")
        _enqueue(user_id, jobs=1)
        _drain()
        assert job_queue.requeue_stale_jobs(20) == 0

    def test_minimum_threshold_enforced(self, make_user):
        user_id = make_user(plan="pro")
        batch = _enqueue(user_id, jobs=1)
        _drain()
        set_job_fields(batch.batch_id, updated_at=utcnow() - timedelta(minutes=3))
        assert job_queue.requeue_stale_jobs(1) == 0


# ---------------------------------------------------------------------------
# Cancel and read model
# ---------------------------------------------------------------------------

class TestCancel:
    def test_cancel_queued_batch_refunds(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=2)
        assert user_tokens(user_id) == Decimal("14.00")

        assert job_queue.cancel_batch(batch.batch_id, user_id) == 2
        assert user_tokens(user_id) == Decimal("20.00")
        view = job_queue.get_batch(batch.batch_id, user_id)
        assert view.status == "canceled"
        assert view.tokens_charged == Decimal("0.00")

        assert job_queue.cancel_batch(batch.batch_id, user_id) == 0

    def test_cancel_after_partial_progress_still_charges(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=3)
        first = job_queue.claim_next_job("pro", WORKER)

        assert job_queue.cancel_batch(batch.batch_id, user_id) == 2
        assert job_queue.settle_batch(batch.batch_id) == SettlementOutcome.PENDING

        assert finalize_job(first, WORKER, result_url="/generated/1.png") == SettlementOutcome.CHARGED
        assert user_tokens(user_id) == Decimal("14.00")
        assert job_queue.get_batch(batch.batch_id).status == "partial"

    def test_cancel_per_output_refunds_queued_shares(self, make_user):
        user_id = make_user(plan="pro", tokens="10")
        batch = _enqueue(user_id, cost=6, jobs=3, billing_mode=BillingMode.PER_OUTPUT)
        job_queue.claim_next_job("pro", WORKER)

        assert job_queue.cancel_batch(batch.batch_id, user_id) == 2
        assert user_tokens(user_id) == Decimal("8.00")

    def test_other_users_batch_not_found(self, make_user):
        owner = make_user(plan="pro")
        stranger = make_user(plan="pro")
        batch = _enqueue(owner, jobs=1)
        with pytest.raises(BillingError) as exc_info:
            job_queue.cancel_batch(batch.batch_id, stranger)
        assert exc_info.value.code == "NOT_FOUND"


class TestBatchView:
    def test_progress_fields(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batch = _enqueue(user_id, cost=6, jobs=4)
        first = job_queue.claim_next_job("pro", WORKER)
        job_queue.mark_succeeded(first.id, WORKER, "/generated/1.png")
        job_queue.claim_next_job("pro", WORKER)

        view = job_queue.get_batch(batch.batch_id, user_id)
        assert view.status == "processing"
        assert (view.total, view.done, view.remaining, view.percent) == (4, 1, 3, 25)
        assert view.counts == {"succeeded": 1, "processing": 1, "queued": 2}
        assert view.tokens_reserved == Decimal("6.00")
        assert view.first_queued_at is not None
        assert [j.label for j in view.jobs] == ["Shot 0", "Shot 1", "Shot 2", "Shot 3"]

    def test_missing_batch(self, make_user):
        with pytest.raises(BillingError) as exc_info:
            job_queue.get_batch("missing")
        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.parametrize(
        "counts,total,expected",
        [
            ({"queued": 2}, 2, "queued"),
            ({"queued": 1, "processing": 1}, 2, "processing"),
            ({"succeeded": 2}, 2, "succeeded"),
            ({"succeeded": 1, "failed": 1}, 2, "partial"),
            ({"failed": 1, "canceled": 1}, 2, "failed"),
            ({"canceled": 2}, 2, "canceled"),
        ],
    )
    def test_derive_batch_status(self, counts, total, expected):
        assert derive_batch_status(counts, total) == expected


class TestQueueInstances:
    def test_instances_share_storage(self, make_user):
        user_id = make_user(plan="pro")
        _enqueue(user_id, jobs=1)
        assert JobQueue().claim_next_job("pro", WORKER) is not None


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    def _claim_all(self, worker_id, claimed, errors):
        try:
            while True:
                job = job_queue.claim_next_job("pro", worker_id)
                if job is None:
                    return
                claimed.append(job)
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    def test_concurrent_claimers_take_each_job_once(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batches = [_enqueue(user_id, cost=1, jobs=3) for _ in range(10)]
        claimed, errors = [], []

        with ThreadPoolExecutor(max_workers=8) as pool:
            for i in range(8):
                pool.submit(self._claim_all, f"worker-{i}", claimed, errors)

        assert errors == []
        ids = [job.id for job in claimed]
        assert len(ids) == 30
        assert set(ids) == {job_id for b in batches for job_id in b.job_ids}
        for job in claimed:
            (row,) = [r for r in job_rows(job.batch_id) if r.id == job.id]
            assert row.status == "processing"
            assert row.worker_id == job.worker_id

    def test_concurrent_settlement_charges_once(self, make_user):
        user_id = make_user(plan="pro", tokens="20")
        batches = [_enqueue(user_id, cost=1, jobs=3) for _ in range(10)]
        for job in _drain():
            job_queue.mark_succeeded(job.id, WORKER, f"/generated/{job.id}.png")

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(job_queue.settle_batch, b.batch_id) for b in batches for _ in range(4)]
            outcomes = [f.result() for f in futures]

        assert outcomes.count(SettlementOutcome.CHARGED) == 10
        assert outcomes.count(SettlementOutcome.ALREADY_SETTLED) == 30
        usage = _usage_rows(user_id)
        assert len(usage) == 10
        assert sum(Decimal(row.tokens_used) for row in usage) == Decimal("10.00")
        assert user_tokens(user_id) == Decimal("10.00")
