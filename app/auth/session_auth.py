"""
Session Authentication
======================

The session gateway in front of this service authenticates the browser
session and forwards the account id in ``settings.user_header``
(default ``X-User-Id``). This module only resolves that id to an account
snapshot (with lazy subscription expiry applied).

    get_current_user   any known account, else 401 UNAUTHORIZED
    require_admin      role == admin, else 403 FORBIDDEN
    require_cron       X-Cron-Secret matching STUDIO_CRON_SECRET, or an admin
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Request

from app.config import settings
from app.core.async_utils import run_sync
from app.core.errors import BillingError
from app.services.ledger import AccountSnapshot, ledger

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "X-Cron-Secret"


async def get_current_user(request: Request) -> AccountSnapshot:
    user_id = (request.headers.get(settings.user_header) or "").strip()
    if not user_id:
        raise BillingError("UNAUTHORIZED", f"{settings.user_header} header is missing.")
    account = await run_sync(ledger.get_account, user_id)
    request.state.user = account
    return account


async def require_admin(user: AccountSnapshot = Depends(get_current_user)) -> AccountSnapshot:
    if not user.is_admin:
        raise BillingError("FORBIDDEN", "Admin access required.")
    return user


def _cron_secret_valid(provided: Optional[str]) -> bool:
    expected = settings.cron_secret
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def require_cron(request: Request) -> Optional[AccountSnapshot]:
    """Allow scheduler calls carrying the cron secret; otherwise fall back to admin auth."""
    if _cron_secret_valid(request.headers.get(CRON_SECRET_HEADER)):
        return None
    if request.headers.get(CRON_SECRET_HEADER):
        logger.warning("Rejected cron call with an invalid secret")
    user = await get_current_user(request)
    return await require_admin(user)
