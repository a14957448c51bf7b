"""
Account endpoints.

- POST /api/account/register   create a free account (gateway signup hook, cron secret or admin)
- GET  /api/account/balance    effective balance breakdown
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.auth.session_auth import get_current_user, require_cron
from app.core.async_utils import run_sync
from app.services.ledger import AccountSnapshot
from app.services.plan_policy import PLANS
from app.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    referral_code: Optional[str] = Field(default=None, max_length=32)


class RegisterResponse(BaseModel):
    user_id: str


class GrantOut(BaseModel):
    id: str
    tokens_remaining: float
    expires_at: str


class BalanceResponse(BaseModel):
    user_id: str
    plan: str
    status: str
    expires_at: Optional[str] = None
    monthly_tokens: float
    unlimited: bool
    tokens_remaining: float
    subscription_tokens: float
    referral_tokens: float
    referral_grants: List[GrantOut]


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, _caller: Optional[AccountSnapshot] = Depends(require_cron)):
    user_id = await run_sync(subscription_service.register_account, body.email, referral_code=body.referral_code)
    return {"user_id": user_id}


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(user: AccountSnapshot = Depends(get_current_user)):
    balance = user.balance.as_dict()
    return {
        "user_id": user.id,
        "plan": user.effective_plan,
        "status": user.status,
        "expires_at": user.expires_at.isoformat() + "Z" if user.expires_at else None,
        "monthly_tokens": float(PLANS[user.effective_plan].monthly_tokens),
        "unlimited": user.is_admin,
        "tokens_remaining": float(user.tokens_remaining),
        "subscription_tokens": balance["subscription"],
        "referral_tokens": balance["referral"],
        "referral_grants": balance["grants"],
    }
