"""Opaque, persistable references to files chosen for upload steps."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path

from pageflow.errors import BookmarkError

logger = logging.getLogger(__name__)


def create_bookmark(path: Path) -> str:
    """Return a base64 token for ``path``, or an empty token if it does not exist."""
    try:
        resolved = path.expanduser().resolve(strict=True)
        stat = resolved.stat()
    except OSError as exc:
        logger.warning("Cannot bookmark %s: %s", path, exc)
        return ""
    payload = {"path": str(resolved), "size": stat.st_size, "mtime_ns": stat.st_mtime_ns}
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def resolve_bookmark(token: str) -> Path:
    if not token:
        raise BookmarkError("Empty bookmark")
    try:
        payload = json.loads(base64.b64decode(token, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BookmarkError(f"Malformed bookmark: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("path"), str):
        raise BookmarkError("Bookmark has no path")

    path = Path(payload["path"])
    if not path.is_file():
        raise BookmarkError(f"Bookmarked file is gone: {path}")

    # A changed file still resolves; only its identity matters here.
    stat = path.stat()
    if stat.st_mtime_ns != payload.get("mtime_ns") or stat.st_size != payload.get("size"):
        logger.debug("Bookmark for %s is stale", path)
    return path
