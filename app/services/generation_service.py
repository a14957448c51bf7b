"""
Generation Service
==================

PURPOSE:
    Request-path orchestration for image and video generation:

        policy -> model -> quota guard -> reserve -> enqueue -> estimate

    Every check that can reject a request runs before tokens are reserved.
    If enqueue fails after a successful reservation, the reservation is
    refunded with its receipt before the error propagates.

    New batches are always billed per batch. Per-output billing is only
    honoured for rows that were already stored that way.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from app.core.errors import BillingError
from app.models.generation import BillingMode
from app.services.job_queue import BatchRequest, EnqueuedBatch, JobSpec, job_queue
from app.services.ledger import AccountSnapshot, ReserveResult, ledger
from app.services.plan_policy import (
    IMAGE_MODES,
    VIDEO_MODES,
    as_tokens,
    get_image_policy,
    get_video_policy,
    image_service_type,
    resolve_model,
    video_service_type,
)
from app.services.quota_guard import quota_guard
from app.services.queue_estimator import QueueEstimate, queue_estimator

logger = logging.getLogger(__name__)

IMAGE_ASPECT_RATIO = "3:4"
VIDEO_ASPECT_RATIOS = ("16:9", "9:16")

# Shot variations by output count: (label, prompt suffix)
_SHOTS = {
    "hero": ("Hero", " (Hero shot, premium advertising look, clean background, studio lighting)"),
    "close": ("Close-up", " (Close-up shot, detailed texture focus, shallow depth of field)"),
    "wide": ("Wide", " (Wide angle full body shot, environmental context, showing entire product)"),
    "detail": ("Detail", " (Detail shot, macro focus on materials and texture, premium lighting)"),
    "lifestyle": ("Lifestyle", " (Lifestyle shot, real-world context, dynamic composition)"),
}
_SHOT_SETS = {
    1: ("hero",),
    2: ("close", "wide"),
    3: ("hero", "close", "detail"),
    4: ("hero", "close", "detail", "lifestyle"),
}


@dataclass(frozen=True)
class GenerationResult:
    batch: EnqueuedBatch
    reservation: ReserveResult
    tokens_reserved: Decimal
    estimate: QueueEstimate

    def as_dict(self) -> dict:
        return {
            "batch_id": self.batch.batch_id,
            "job_ids": self.batch.job_ids,
            "status": "queued",
            "queue_position": self.estimate.queue_position,
            "eta_seconds": self.estimate.eta_seconds,
            "tokens_reserved": float(self.tokens_reserved),
            "tokens_remaining": float(self.reservation.tokens_remaining),
        }


def infer_image_mode(mode: Optional[str], model: Optional[str]) -> str:
    raw = (mode or "").strip().lower()
    if raw in IMAGE_MODES:
        return raw
    if raw:
        raise BillingError("BAD_REQUEST", f"Unknown image mode {raw!r}")
    requested = (model or "").strip().lower()
    if requested and "flash-image" not in requested:
        return "pro"
    return "basic"


def infer_video_mode(mode: Optional[str], model: Optional[str]) -> str:
    raw = (mode or "").strip().lower()
    if raw in VIDEO_MODES:
        return raw
    if raw:
        raise BillingError("BAD_REQUEST", f"Unknown video mode {raw!r}")
    requested = (model or "").lower()
    if "veo-3.1" in requested:
        return "premium"
    if "veo-3.0" in requested:
        return "pro"
    return "basic"


def image_variations(prompt: str, output_count: int, product_images: Sequence[str],
                     style_images: Sequence[str]) -> List[JobSpec]:
    shots = _SHOT_SETS.get(output_count) or _SHOT_SETS[4]
    return [
        JobSpec(
            prompt=prompt + _SHOTS[shot][1],
            label=_SHOTS[shot][0],
            product_images=tuple(product_images),
            style_images=tuple(style_images),
        )
        for shot in shots[:output_count]
    ]


def _clean_images(images: Optional[Sequence[str]]) -> List[str]:
    return [image for image in (images or []) if image]


class GenerationService:

    def __init__(self, queue=job_queue, account_ledger=ledger, guard=quota_guard, estimator=queue_estimator):
        self.queue = queue
        self.ledger = account_ledger
        self.guard = guard
        self.estimator = estimator

    def request_images(
        self,
        account: AccountSnapshot,
        prompt: str,
        mode: Optional[str] = None,
        model: Optional[str] = None,
        product_images: Optional[Sequence[str]] = None,
        style_images: Optional[Sequence[str]] = None,
    ) -> GenerationResult:
        prompt = (prompt or "").strip()
        products = _clean_images(product_images)
        styles = _clean_images(style_images)
        if not prompt and not products:
            raise BillingError("BAD_REQUEST", "A prompt or a product image is required.")

        mode = infer_image_mode(mode, model)
        plan = account.effective_plan
        policy = get_image_policy(plan, mode)
        selected_model = resolve_model(policy.allowed_models, model)

        safe_prompt = prompt[: policy.max_prompt_chars]
        jobs = image_variations(
            safe_prompt,
            policy.output_count,
            products[: policy.max_product_images],
            styles[: policy.max_style_images],
        )
        return self._submit(
            account,
            kind="image",
            mode=mode,
            model=selected_model,
            cost=policy.cost_per_request,
            service_type=image_service_type(mode),
            jobs=jobs,
            aspect_ratio=IMAGE_ASPECT_RATIO,
            base_prompt=safe_prompt,
        )

    def request_video(
        self,
        account: AccountSnapshot,
        prompt: str,
        mode: Optional[str] = None,
        model: Optional[str] = None,
        images: Optional[Sequence[str]] = None,
        aspect_ratio: Optional[str] = None,
    ) -> GenerationResult:
        prompt = (prompt or "").strip()
        images = _clean_images(images)
        if not prompt and not images:
            raise BillingError("BAD_REQUEST", "A prompt or an image is required for video.")

        mode = infer_video_mode(mode, model)
        plan = account.effective_plan
        policy = get_video_policy(plan, mode)
        selected_model = resolve_model(policy.allowed_models, model)

        safe_prompt = prompt[: policy.max_prompt_chars]
        jobs = [
            JobSpec(prompt=safe_prompt, label="Video", product_images=tuple(images[: policy.max_images]))
            for _ in range(policy.output_count)
        ]
        return self._submit(
            account,
            kind="video",
            mode=mode,
            model=selected_model,
            cost=policy.cost_per_video * policy.output_count,
            service_type=video_service_type(mode),
            jobs=jobs,
            aspect_ratio=aspect_ratio if aspect_ratio in VIDEO_ASPECT_RATIOS else VIDEO_ASPECT_RATIOS[0],
            base_prompt=safe_prompt,
        )

    def _submit(
        self,
        account: AccountSnapshot,
        kind: str,
        mode: str,
        model: str,
        cost: Decimal,
        service_type: str,
        jobs: List[JobSpec],
        aspect_ratio: Optional[str],
        base_prompt: str,
    ) -> GenerationResult:
        self.guard.enforce(account, kind, mode)

        cost = as_tokens(cost)
        reservation = self.ledger.reserve(account.id, cost)
        reserved = Decimal("0.00") if reservation.unlimited else cost

        try:
            batch = self.queue.enqueue(
                BatchRequest(
                    user_id=account.id,
                    plan=account.effective_plan,
                    kind=kind,
                    mode=mode,
                    model=model,
                    service_type=service_type,
                    jobs=jobs,
                    tokens_reserved=reserved,
                    receipt=reservation.receipt if reserved > 0 else None,
                    billing_mode=BillingMode.PER_BATCH,
                    aspect_ratio=aspect_ratio,
                    base_prompt=base_prompt,
                )
            )
        except Exception:
            if reserved > 0:
                logger.error("Enqueue failed for user=%s, refunding %s tokens", account.id, reserved)
                self.ledger.refund(account.id, reserved, reservation.receipt)
            raise

        estimate = self.estimator.estimate(
            batch.plan, kind, mode, batch.anchor_created_at, len(jobs)
        )
        logger.info(
            "Generation requested: user=%s kind=%s mode=%s model=%s outputs=%d reserved=%s batch=%s",
            account.id, kind, mode, model, len(jobs), reserved, batch.batch_id,
        )
        return GenerationResult(batch=batch, reservation=reservation, tokens_reserved=reserved, estimate=estimate)


generation_service = GenerationService()
