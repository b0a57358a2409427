from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

FORMAT_TEXT = "text"
FORMAT_MARKDOWN = "markdown"

STATUS_SENT = "sent"

DEFAULT_CONVERSATION_TITLE = "New Conversation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    display_name: str
    role: str = "user"
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshCredential:
    """Persisted record of an issued refresh token.

    Only the SHA-256 digest of the token is stored; ``revoked_at`` is set once
    and never cleared.
    """

    id: str
    account_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, account_id: str, token_hash: str, expires_at: datetime
    ) -> "RefreshCredential":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            issued_at=utcnow(),
            expires_at=expires_at,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Conversation:
    id: str
    account_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    last_seq: int = 0


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int
    created_at: datetime
    format: str = FORMAT_TEXT
    status: str = STATUS_SENT
    meta: Dict | None = None
