"""
Admin subscription management.

- POST /api/admin/subscriptions/activate     activate or renew a paid plan (admin)
- POST /api/admin/subscriptions/expire-due   expiry sweep (admin or cron secret)
- POST /api/admin/tokens/add                 bonus tokens on the subscription balance (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.session_auth import require_admin, require_cron
from app.core.async_utils import run_sync
from app.services.ledger import AccountSnapshot
from app.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter()


class ActivateRequest(BaseModel):
    user_id: str
    plan: str = Field(..., description="starter | pro | business_plus")


class ActivateResponse(BaseModel):
    user_id: str
    plan: str
    expires_at: str
    tokens_remaining: float
    referral_grant_id: Optional[str] = None


class ExpireResponse(BaseModel):
    expired: int


class AddTokensRequest(BaseModel):
    user_id: str
    tokens: float = Field(..., gt=0)


class AddTokensResponse(BaseModel):
    user_id: str
    tokens_remaining: float


@router.post("/subscriptions/activate", response_model=ActivateResponse)
async def activate_subscription(body: ActivateRequest, admin: AccountSnapshot = Depends(require_admin)):
    result = await run_sync(subscription_service.activate_subscription, body.user_id, body.plan, admin.id)
    return {
        "user_id": result.user_id,
        "plan": result.plan,
        "expires_at": result.expires_at.isoformat() + "Z",
        "tokens_remaining": float(result.tokens_remaining),
        "referral_grant_id": result.referral_grant_id,
    }


@router.post("/subscriptions/expire-due", response_model=ExpireResponse)
async def expire_due_subscriptions(_caller: Optional[AccountSnapshot] = Depends(require_cron)):
    expired = await run_sync(subscription_service.expire_due_subscriptions)
    return {"expired": expired}


@router.post("/tokens/add", response_model=AddTokensResponse)
async def add_bonus_tokens(body: AddTokensRequest, admin: AccountSnapshot = Depends(require_admin)):
    balance = await run_sync(subscription_service.add_bonus_tokens, body.user_id, str(body.tokens))
    logger.info("Admin %s added %s tokens to user=%s", admin.id, body.tokens, body.user_id)
    return {"user_id": body.user_id, "tokens_remaining": float(balance)}
