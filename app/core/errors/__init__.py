"""
Billing error code system.

BillingError is the single structured exception of the ledger and the
queue. Raise it with a code from the registry; the error middleware turns
it into a JSON response with the registry's HTTP status.

Usage:
    from app.core.errors import BillingError
    raise BillingError("INSUFFICIENT_TOKENS", recommended_plan="pro")
"""

from __future__ import annotations

import re
from typing import Any, Optional

CODE_PATTERN = re.compile(r"^[A-Z][A-Z_]{2,40}$")


class BillingError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "PLAN_RESTRICTED".
        message: User-facing message. Falls back to the registry's safe message.
        recommended_plan: Plan the client should upsell to, if any.
        context: Extra response fields (retry_after_seconds, reset_at, ...).
    """

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        recommended_plan: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.message = message
        self.recommended_plan = recommended_plan
        self.context = context or {}
        super().__init__(f"{code}: {message}" if message else code)

    @property
    def retry_after_seconds(self) -> Optional[int]:
        value = self.context.get("retry_after_seconds")
        return int(value) if value is not None else None
