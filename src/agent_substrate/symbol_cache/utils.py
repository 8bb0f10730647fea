from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_fingerprint(path: Path) -> Optional[str]:
    """
    SHA-256 of the file's raw bytes, read fresh on every call.

    Returns None when the file cannot be read; callers must treat that as a cache
    miss and must not register the result.
    """
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_READ_CHUNK_BYTES), b""):
                digest.update(chunk)
    except OSError as e:
        logger.warning("Failed to fingerprint source file. path=%s error=%s", path, e)
        return None
    return digest.hexdigest()
