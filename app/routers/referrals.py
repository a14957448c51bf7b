"""
Referral program endpoint.

- GET /api/referrals   the caller's referral code, invited users and reward totals
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.auth.session_auth import get_current_user
from app.core.async_utils import run_sync
from app.services.ledger import AccountSnapshot
from app.services.referral_service import referral_service

router = APIRouter()


class InvitedUserOut(BaseModel):
    id: str
    email: str
    referred_at: Optional[str] = None
    subscription_plan: str
    reward_tokens: Optional[float] = None
    rewarded_plan: Optional[str] = None


class ReferralSummaryResponse(BaseModel):
    referral_code: str
    invited_count: int
    rewards_count: int
    tokens_earned: float
    active_referral_tokens: float
    invited_users: List[InvitedUserOut]


@router.get("", response_model=ReferralSummaryResponse)
async def get_referrals(user: AccountSnapshot = Depends(get_current_user)):
    summary = await run_sync(referral_service.get_summary, user.id)
    return {
        "referral_code": summary.referral_code,
        "invited_count": summary.invited_count,
        "rewards_count": summary.rewards_count,
        "tokens_earned": float(summary.tokens_earned),
        "active_referral_tokens": float(summary.active_referral_tokens),
        "invited_users": [
            {
                "id": invited.id,
                "email": invited.email_masked,
                "referred_at": invited.referred_at.isoformat() + "Z" if invited.referred_at else None,
                "subscription_plan": invited.subscription_plan,
                "reward_tokens": float(invited.reward_tokens) if invited.reward_tokens is not None else None,
                "rewarded_plan": invited.rewarded_plan,
            }
            for invited in summary.invited_users
        ],
    }
