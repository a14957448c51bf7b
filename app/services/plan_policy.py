"""
Plan Policy Resolver
====================

PURPOSE:
    Pure mapping (plan, mode) -> cost, output count, allowed models and
    input limits for images, videos and copywriting, plus the plan catalog
    (monthly tokens, prices, video quotas, upgrade path).

    Nothing here touches the database. Restricted combinations raise
    BillingError("PLAN_RESTRICTED") with the plan to upsell to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple

from app.core.errors import BillingError

PLAN_ORDER: Tuple[str, ...] = ("free", "starter", "pro", "business_plus")
IMAGE_MODES = ("basic", "pro")
VIDEO_MODES = ("basic", "pro", "premium")

ADMIN_PLAN = "business_plus"
UNLIMITED_BALANCE = Decimal("999999")
TOKEN_QUANTUM = Decimal("0.01")

FLASH_IMAGE_MODELS = ("gemini-2.5-flash-image",)
PRO_IMAGE_MODELS = ("gemini-3-pro-image-preview", "nano-banana-pro-preview")
VEO_FAST = "veo-3.0-fast-generate-001"
VEO_PRO = "veo-3.0-generate-001"
VEO_UPSAMPLER = "veo3_upsampler_video_generation"


def as_tokens(value) -> Decimal:
    """Coerce to a 2-decimal token amount (NUMERIC(10,2) semantics)."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value if value is not None else 0).quantize(TOKEN_QUANTUM, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlanMeta:
    id: str
    label: str
    monthly_price_usd: int
    monthly_tokens: Decimal
    referral_reward_tokens: Decimal
    video_monthly_limits: Dict[str, int] = field(default_factory=dict)


PLANS: Dict[str, PlanMeta] = {
    "free": PlanMeta("free", "Free", 0, Decimal("5"), Decimal("0")),
    "starter": PlanMeta("starter", "Starter", 9, Decimal("140"), Decimal("30")),
    "pro": PlanMeta("pro", "Pro", 19, Decimal("350"), Decimal("50"), {"basic": 6, "pro": 4}),
    "business_plus": PlanMeta(
        "business_plus", "Business+", 29, Decimal("600"), Decimal("100"),
        {"basic": 10, "pro": 7, "premium": 5},
    ),
}

_PLAN_ALIASES = {
    "professional": "pro",
    "business+": "business_plus",
    "1month": "starter",
    "3months": "pro",
    "6months": "business_plus",
    "1year": "business_plus",
}


def normalize_plan(value: Optional[str]) -> str:
    """Map stored/legacy plan names to a canonical plan; unknown -> free."""
    raw = "_".join(str(value or "").strip().lower().split())
    if raw in PLANS:
        return raw
    return _PLAN_ALIASES.get(raw, "free")


def next_plan(plan: str) -> Optional[str]:
    idx = PLAN_ORDER.index(normalize_plan(plan))
    return PLAN_ORDER[idx + 1] if idx + 1 < len(PLAN_ORDER) else None


def is_paid_plan(plan: str) -> bool:
    return normalize_plan(plan) != "free"


def video_monthly_limit(plan: str, mode: str) -> Optional[int]:
    """Hard monthly video cap; None means token-limited only."""
    return PLANS[normalize_plan(plan)].video_monthly_limits.get(mode)


def video_service_type(mode: str) -> str:
    return f"video_generate_{mode}"


def image_service_type(mode: str) -> str:
    return f"image_generate_{mode}"


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImagePolicy:
    cost_per_request: Decimal
    output_count: int
    max_product_images: int
    max_style_images: int
    max_prompt_chars: int
    allowed_models: Tuple[str, ...]


@dataclass(frozen=True)
class VideoPolicy:
    cost_per_video: Decimal
    max_images: int
    max_prompt_chars: int
    allowed_models: Tuple[str, ...]
    upsampler_model: Optional[str] = None
    output_count: int = 1


@dataclass(frozen=True)
class CopywriterPolicy:
    cost_per_card: Decimal
    max_images: int
    max_additional_info_chars: int
    text_model: str


_IMAGE_POLICIES: Dict[Tuple[str, str], ImagePolicy] = {
    ("free", "basic"): ImagePolicy(Decimal("2"), 1, 1, 0, 50, FLASH_IMAGE_MODELS),
    ("starter", "basic"): ImagePolicy(Decimal("2"), 2, 3, 1, 150, FLASH_IMAGE_MODELS),
    ("starter", "pro"): ImagePolicy(Decimal("7"), 2, 3, 1, 150, PRO_IMAGE_MODELS),
    ("pro", "basic"): ImagePolicy(Decimal("1.5"), 2, 3, 1, 150, FLASH_IMAGE_MODELS),
    ("pro", "pro"): ImagePolicy(Decimal("6"), 3, 4, 1, 200, PRO_IMAGE_MODELS),
    ("business_plus", "basic"): ImagePolicy(Decimal("1"), 3, 5, 2, 250, FLASH_IMAGE_MODELS),
    ("business_plus", "pro"): ImagePolicy(Decimal("5"), 4, 5, 2, 300, PRO_IMAGE_MODELS),
}

_VIDEO_POLICIES: Dict[Tuple[str, str], VideoPolicy] = {
    ("starter", "basic"): VideoPolicy(Decimal("15"), 2, 60, (VEO_FAST,)),
    ("pro", "basic"): VideoPolicy(Decimal("25"), 2, 80, (VEO_FAST,)),
    ("pro", "pro"): VideoPolicy(Decimal("35"), 3, 120, (VEO_PRO,)),
    ("business_plus", "basic"): VideoPolicy(Decimal("20"), 2, 80, (VEO_FAST,)),
    ("business_plus", "pro"): VideoPolicy(Decimal("30"), 3, 120, (VEO_FAST,)),
    # Premium: fast generation, then an upsampling pass
    ("business_plus", "premium"): VideoPolicy(Decimal("45"), 4, 150, (VEO_FAST,), VEO_UPSAMPLER),
}

# Plan that unlocks a restricted (plan, mode) for video
_VIDEO_UPSELL = {"free": "starter", "starter": "pro", "pro": "business_plus"}

_COPYWRITER_POLICIES: Dict[str, CopywriterPolicy] = {
    "starter": CopywriterPolicy(Decimal("8"), 1, 500, "gemini-2.0-flash"),
    "pro": CopywriterPolicy(Decimal("8"), 2, 1000, "gemini-2.5-flash"),
    "business_plus": CopywriterPolicy(Decimal("6"), 3, 2500, "gemini-2.5-pro"),
}


def _check_mode(mode: str, allowed: Tuple[str, ...]) -> None:
    if mode not in allowed:
        raise BillingError("BAD_REQUEST", f"Unknown mode {mode!r}; expected one of {', '.join(allowed)}")


def get_image_policy(plan: str, mode: str) -> ImagePolicy:
    plan = normalize_plan(plan)
    _check_mode(mode, IMAGE_MODES)
    policy = _IMAGE_POLICIES.get((plan, mode))
    if policy is None:
        raise BillingError(
            "PLAN_RESTRICTED",
            "Only basic images are available on the Free plan.",
            recommended_plan="starter",
        )
    return policy


def get_video_policy(plan: str, mode: str) -> VideoPolicy:
    plan = normalize_plan(plan)
    _check_mode(mode, VIDEO_MODES)
    policy = _VIDEO_POLICIES.get((plan, mode))
    if policy is None:
        upsell = _VIDEO_UPSELL.get(plan, "business_plus")
        if plan == "free":
            message = "Video generation requires a paid plan."
        else:
            message = f"{mode.capitalize()} video is not available on the {PLANS[plan].label} plan."
        raise BillingError("PLAN_RESTRICTED", message, recommended_plan=upsell)
    return policy


def get_copywriter_policy(plan: str) -> CopywriterPolicy:
    policy = _COPYWRITER_POLICIES.get(normalize_plan(plan))
    if policy is None:
        raise BillingError(
            "PLAN_RESTRICTED",
            "The copywriter requires a paid plan.",
            recommended_plan="starter",
        )
    return policy


def resolve_model(allowed_models: Tuple[str, ...], requested: Optional[str]) -> str:
    """Return the requested model if whitelisted, else the plan default when none was asked for."""
    model = (requested or "").strip()
    if not model:
        return allowed_models[0]
    if model not in allowed_models:
        raise BillingError(
            "PLAN_RESTRICTED",
            f"Model {model!r} is not available on this plan. Allowed: {', '.join(allowed_models)}",
        )
    return model
