"""File-backed session credentials.

Credentials are written on every update the transport emits, without
batching: a lost update can lock the session out for good. Binary values
use the {"type": "Buffer", "data": <base64>} encoding of WhatsApp Web auth
state files.
"""

from __future__ import annotations

import base64
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from chatvault.observability.logging import get_logger

logger = get_logger(__name__)

CREDENTIALS_FILENAME = "creds.json"


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and isinstance(obj.get("data"), str) and len(obj) == 2:
        return base64.b64decode(obj["data"])
    return obj


class FileCredentialStore:
    """Credentials persisted as one JSON file in the session directory."""

    def __init__(self, directory: str | Path, filename: str = CREDENTIALS_FILENAME) -> None:
        self._dir = Path(directory)
        self._path = self._dir / filename

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Any:
        """Return stored credentials, or None for a fresh session."""
        if not self._path.exists():
            return None
        return json.loads(self._path.read_text(encoding="utf-8"), object_hook=_decode)

    def save(self, credentials: Any) -> None:
        """Atomically replace the stored credentials."""
        self._dir.mkdir(parents=True, exist_ok=True)
        data = json.dumps(credentials, default=_encode)
        fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=".creds-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("credentials saved", extra={"extra_fields": {"path": str(self._path)}})
