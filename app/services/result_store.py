"""
Result Store
============

Persists provider outputs delivered inline (base64 data URLs) into
``settings.generated_directory`` and returns the public URL they are
served under. Outputs already delivered as URLs are stored as-is on the job.
"""

import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
}

MAX_OUTPUT_BYTES = 200 * 1024 * 1024


class ResultStoreError(ValueError):
    pass


class ResultStore:

    def __init__(self, directory: Optional[str] = None, public_base_url: Optional[str] = None):
        self._directory = directory
        self._public_base_url = public_base_url

    @property
    def directory(self) -> Path:
        return Path(self._directory or settings.generated_directory)

    @property
    def public_base_url(self) -> str:
        return (self._public_base_url or settings.public_base_url).rstrip("/")

    def save_data_url(self, job_id: str, data_url: str) -> str:
        match = DATA_URL_RE.match(data_url.strip())
        if not match:
            raise ResultStoreError("Output is not a base64 data URL")
        mime_type, encoded = match.group(1).lower(), match.group(2)
        extension = EXTENSIONS.get(mime_type)
        if extension is None:
            raise ResultStoreError(f"Unsupported output type {mime_type!r}")
        try:
            payload = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ResultStoreError(f"Invalid base64 output: {exc}")
        if not payload:
            raise ResultStoreError("Empty output")
        if len(payload) > MAX_OUTPUT_BYTES:
            raise ResultStoreError("Output exceeds the size limit")

        self.directory.mkdir(parents=True, exist_ok=True)
        filename = f"{job_id}.{extension}"
        target = self.directory / filename
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(payload)
        tmp.replace(target)
        logger.info("Stored output %s (%d bytes)", filename, len(payload))
        return f"{self.public_base_url}/{filename}"


result_store = ResultStore()
