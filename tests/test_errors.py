"""
Tests for the billing error registry and the error response payload.
"""

import pytest

from app.core.errors import BillingError
from app.core.errors.middleware import error_payload
from app.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry


class TestRegistry:
    def test_statuses(self):
        expected = {
            "BAD_REQUEST": 400,
            "UNAUTHORIZED": 401,
            "INSUFFICIENT_TOKENS": 402,
            "SUBSCRIPTION_EXPIRED": 403,
            "PLAN_RESTRICTED": 403,
            "FORBIDDEN": 403,
            "NOT_FOUND": 404,
            "CONFLICT": 409,
            "DAILY_LIMIT": 429,
            "RATE_LIMIT": 429,
            "INTERNAL": 500,
        }
        for code, status in expected.items():
            assert error_registry.lookup(code).http_status == status

    def test_unknown_code_lookup(self):
        assert error_registry.get("NOPE_NOT_HERE") is None
        with pytest.raises(KeyError):
            error_registry.lookup("NOPE_NOT_HERE")

    def test_duplicate_codes_rejected(self, tmp_path):
        entry = (
            "  - code: SAME_CODE\n"
            "    title: t\n"
            "    severity: INFO\n"
            "    retryable: false\n"
            "    user_action_required: false\n"
            "    http_status: 400\n"
            "    safe_message: m\n"
        )
        path = tmp_path / "registry.yaml"
        path.write_text("schema_version: 1\nerrors:\n" + entry + entry)
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    @pytest.mark.parametrize(
        "status,retryable",
        [(200, "false"), (402, "true")],
    )
    def test_status_rules(self, tmp_path, status, retryable):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "schema_version: 1\nerrors:\n"
            "  - code: ODD_CODE\n"
            "    title: t\n"
            "    severity: INFO\n"
            f"    retryable: {retryable}\n"
            "    user_action_required: false\n"
            f"    http_status: {status}\n"
            "    safe_message: m\n"
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_missing_fields_rejected(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text("schema_version: 1\nerrors:\n  - code: HALF_DONE\n    title: t\n")
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))


class TestBillingError:
    def test_invalid_code_format(self):
        with pytest.raises(ValueError):
            BillingError("lowercase")

    def test_retry_after_from_context(self):
        err = BillingError("RATE_LIMIT", context={"retry_after_seconds": 42})
        assert err.retry_after_seconds == 42
        assert BillingError("BAD_REQUEST").retry_after_seconds is None


class TestErrorPayload:
    def test_payload_merges_context(self):
        err = BillingError(
            "DAILY_LIMIT",
            "Daily limit of 100 generations reached.",
            recommended_plan="pro",
            context={"reset_at": "2026-03-11T00:00:00Z", "retry_after_seconds": 60},
        )
        status, body = error_payload(err)
        assert status == 429
        assert body == {
            "error": "Daily limit of 100 generations reached.",
            "code": "DAILY_LIMIT",
            "recommended_plan": "pro",
            "retryable": True,
            "reset_at": "2026-03-11T00:00:00Z",
            "retry_after_seconds": 60,
        }

    def test_safe_message_fallback(self):
        status, body = error_payload(BillingError("NOT_FOUND"))
        assert status == 404
        assert body["error"] == "The requested resource was not found."

    def test_unregistered_code(self):
        status, body = error_payload(BillingError("NEVER_REGISTERED"))
        assert status == 500
        assert body["code"] == "NEVER_REGISTERED"
        assert body["retryable"] is False

    def test_context_cannot_override_core_fields(self):
        _, body = error_payload(BillingError("CONFLICT", context={"code": "HIJACK"}))
        assert body["code"] == "CONFLICT"
