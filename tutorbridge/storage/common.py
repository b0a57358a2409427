"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def hash_token(token: str) -> str:
    """Digest a refresh token for storage and lookup.

    Stores never hold the raw bearer value.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from JSON or the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata column that may arrive as a JSON string or a dict."""
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
