from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store write broke a uniqueness or ownership rule.

    Raised for a duplicate account email or refresh-token digest, and for
    writes that reference a missing account or conversation. ``field`` names
    the offending column when there is one.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
