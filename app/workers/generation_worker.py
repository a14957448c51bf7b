"""
Generation Worker Pool
======================

PURPOSE:
    Long-lived process draining the generation queue.

    One cooperative asyncio loop per (plan, slot), slot counts from
    settings.plan_slots. Each loop first takes the slot lock for its key,
    so running several worker processes never exceeds the configured
    parallelism of a plan:

        free 100000 + slot, starter 200000 + slot,
        pro 300000 + slot, business_plus 400000 + slot

    PostgreSQL: pg_try_advisory_lock on a dedicated connection held for
    the loop's lifetime. SQLite (single host): a process-local registry
    keyed the same way.

    Loop: claim -> provider (inside the ProviderGate) -> finalize through
    the batch's billing strategy. A failing job never stops the loop or
    its sibling jobs. A sweep loop re-queues stale processing jobs at
    startup and every stale_sweep_interval_seconds.

Usage:
    python -m app.workers.generation_worker [--plans pro,business_plus] [--provider mock]
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import threading
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text

from app.config import PLANS, settings
from app.core.async_utils import run_sync
from app.core.database import close_db, get_engine, init_db, is_postgres
from app.core.errors import BillingError
from app.core.structured_logging import job_context, setup_logging, worker_id_var
from app.services.billing_strategy import finalize_job
from app.services.job_queue import QueuedJob, job_queue
from app.services.plan_policy import get_video_policy
from app.services.providers import ProviderError, ProviderGate, ProviderRequest, build_provider
from app.services.providers.base import GenerationProvider

logger = logging.getLogger(__name__)

SLOT_LOCK_BASE: Dict[str, int] = {
    "free": 100000,
    "starter": 200000,
    "pro": 300000,
    "business_plus": 400000,
}


def slot_lock_key(plan: str, slot: int) -> int:
    return SLOT_LOCK_BASE[plan] + slot


def default_worker_id() -> str:
    return settings.worker_id or f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Slot locks
# ---------------------------------------------------------------------------

_local_locks = set()
_local_locks_guard = threading.Lock()


class SlotLock:
    """Exclusive right to run one (plan, slot) loop."""

    def __init__(self, plan: str, slot: int):
        self.plan = plan
        self.slot = slot
        self.key = slot_lock_key(plan, slot)
        self._conn = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return True
        if is_postgres():
            conn = get_engine().connect()
            acquired = conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key}).scalar()
            conn.commit()
            if not acquired:
                conn.close()
                return False
            self._conn = conn
        else:
            with _local_locks_guard:
                if self.key in _local_locks:
                    return False
                _local_locks.add(self.key)
        self._held = True
        return True

    def release(self) -> None:
        if not self._held:
            return
        if self._conn is not None:
            try:
                self._conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.key})
                self._conn.commit()
            finally:
                self._conn.close()
                self._conn = None
        else:
            with _local_locks_guard:
                _local_locks.discard(self.key)
        self._held = False


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class WorkerPool:
    """Slot loops for the configured plans plus the stale sweep."""

    def __init__(
        self,
        plans: Optional[Sequence[str]] = None,
        provider: Optional[GenerationProvider] = None,
        worker_id: Optional[str] = None,
        idle_poll_ms: Optional[int] = None,
    ):
        self.plans = list(plans or PLANS)
        self.worker_id = worker_id or default_worker_id()
        self.provider = provider or build_provider()
        self.gate = ProviderGate(self.provider, settings.provider_max_in_flight)
        self.idle_s = (idle_poll_ms if idle_poll_ms is not None else settings.worker_idle_poll_ms) / 1000
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._locks: List[SlotLock] = []

    # -- lifecycle ----------------------------------------------------------

    def start(self, wrapper=None) -> List[asyncio.Task]:
        """Create one task per (plan, slot) plus the sweep task.

        Args:
            wrapper: Optional async wrapper(name, coro) for error isolation.
        """
        worker_id_var.set(self.worker_id)
        specs = [("sweep", self.sweep_loop())]
        for plan in self.plans:
            for slot in range(settings.slots_for(plan)):
                specs.append((f"slot_{plan}_{slot}", self.slot_loop(plan, slot)))
        for name, coro in specs:
            if wrapper:
                coro = wrapper(name, coro)
            self._tasks.append(asyncio.create_task(coro, name=name))
        logger.info(
            "Worker %s started: plans=%s slots=%d max_in_flight=%d",
            self.worker_id, ",".join(self.plans), len(specs) - 1, self.gate.max_in_flight,
        )
        return self._tasks

    def stop(self) -> None:
        self._stopping.set()

    async def wait_stopped(self) -> None:
        await self._stopping.wait()

    async def shutdown(self) -> None:
        """Cancel all loops, release slot locks, close the provider."""
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        for lock in self._locks:
            lock.release()
        self._locks = []
        await self.provider.aclose()
        logger.info("Worker %s stopped", self.worker_id)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # -- loops --------------------------------------------------------------

    async def sweep_loop(self) -> None:
        interval = settings.min_sweep_interval_seconds
        while not self._stopping.is_set():
            try:
                await run_sync(job_queue.requeue_stale_jobs, settings.min_stale_job_minutes)
            except Exception:
                logger.exception("Stale job sweep failed")
            await self._sleep(interval)

    async def slot_loop(self, plan: str, slot: int) -> None:
        lock = SlotLock(plan, slot)
        self._locks.append(lock)
        while not self._stopping.is_set():
            try:
                if await run_sync(lock.try_acquire):
                    break
            except Exception:
                logger.exception("Slot lock %s/%d unavailable", plan, slot)
            await self._sleep(max(self.idle_s, 1.0))
        if not lock.held:
            return

        logger.info("Slot %s/%d acquired (lock key %d)", plan, slot, lock.key)
        try:
            while not self._stopping.is_set():
                processed = await self.run_once(plan)
                if not processed:
                    await self._sleep(self.idle_s)
        finally:
            await run_sync(lock.release)

    async def run_once(self, plan: str) -> bool:
        """Claim and process one job of ``plan``. Returns False when the queue was empty."""
        try:
            job = await run_sync(job_queue.claim_next_job, plan, self.worker_id)
        except Exception:
            logger.exception("Claim failed for plan=%s", plan)
            return False
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: QueuedJob) -> None:
        with job_context(job.id, job.batch_id, job.user_id, job.plan):
            result_url: Optional[str] = None
            error_text: Optional[str] = None
            try:
                result_url = await self.gate.generate(self._provider_request(job))
            except ProviderError as exc:
                error_text = str(exc)
                logger.warning("Job %s failed: %s", job.id, error_text)
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                logger.exception("Job %s crashed in provider call", job.id)

            try:
                await run_sync(finalize_job, job, self.worker_id, result_url, error_text)
            except Exception:
                # Left in processing; the stale sweep hands it to another slot
                logger.exception("Finalize failed for job %s (batch %s)", job.id, job.batch_id)

    def _provider_request(self, job: QueuedJob) -> ProviderRequest:
        upsampler = None
        if job.kind == "video":
            try:
                upsampler = get_video_policy(job.plan, job.mode).upsampler_model
            except BillingError:
                upsampler = None
        return ProviderRequest(
            job_id=job.id,
            kind=job.kind,
            mode=job.mode,
            model=job.model,
            prompt=job.prompt,
            product_images=job.product_images,
            style_images=job.style_images,
            aspect_ratio=job.aspect_ratio,
            upsampler_model=upsampler,
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generation queue worker")
    parser.add_argument(
        "--plans",
        default=",".join(PLANS),
        help="Comma-separated plan queues to serve (default: all)",
    )
    parser.add_argument("--worker-id", default=None, help="Worker id stamped on claimed jobs")
    parser.add_argument("--provider", choices=["http", "mock"], default=None, help="Override STUDIO_PROVIDER_KIND")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    plans = [p.strip() for p in args.plans.split(",") if p.strip()]
    unknown = [p for p in plans if p not in SLOT_LOCK_BASE]
    if unknown:
        raise SystemExit(f"Unknown plan(s): {', '.join(unknown)}")

    await run_sync(init_db, timeout=120)
    pool = WorkerPool(plans=plans, provider=build_provider(args.provider), worker_id=args.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.stop)

    pool.start()
    try:
        await pool.wait_stopped()
    finally:
        logger.info("Shutdown signal received, stopping worker")
        await pool.shutdown()
        close_db()


def main(argv=None) -> None:
    args = _parse_args(argv)
    setup_logging(log_dir=settings.log_dir, log_file="studio-worker.jsonl", log_level=settings.log_level)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
