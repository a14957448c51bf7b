"""
Error registry: the billing error codes, their HTTP status and user-facing copy.

Loaded from registry.yaml once at startup. Loading fails fast on a
malformed file so a bad deploy never serves the generic 500 fallback for
a quota or balance error.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

import yaml

from app.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = ("code", "title", "severity", "retryable", "user_action_required", "http_status", "safe_message")


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


def _parse_entry(idx: int, raw: dict) -> ErrorEntry:
    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}")

    code = raw["code"]
    if not isinstance(code, str) or not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")
    retryable = bool(raw["retryable"])
    # Clients only retry throttling and server-side failures
    if retryable and status != 429 and status < 500:
        raise RegistryValidationError(f"{code}: only 429 and 5xx codes may be retryable")

    return ErrorEntry(
        code=code,
        title=str(raw["title"]),
        severity=raw["severity"],
        retryable=retryable,
        user_action_required=bool(raw["user_action_required"]),
        http_status=status,
        safe_message=str(raw["safe_message"]),
    )


class ErrorRegistry:
    """Code -> ErrorEntry lookup."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: Optional[str] = None) -> None:
        with open(path or DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("Error registry loaded: %d codes (schema v%d)", len(entries), self.schema_version)

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
