from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tutorbridge.logging import get_logger
from tutorbridge.storage.common import as_utc, generate_uuid, hash_token
from tutorbridge.storage.errors import ConstraintViolation
from tutorbridge.storage.models import (
    FORMAT_TEXT,
    STATUS_SENT,
    Account,
    Conversation,
    Message,
    RefreshCredential,
    utcnow,
)


class MemoryStore:
    """In-process store used for development and tests.

    Every read-modify-write runs under one re-entrant lock, which gives the
    same single-winner guarantees the postgres store gets from conditional
    updates. When ``fs_root`` is set, state is written to
    ``<fs_root>/state/memory_store.json`` after each mutation and reloaded on
    start-up.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.passwords: Dict[str, Tuple[str, str]] = {}
        self.credentials: Dict[str, RefreshCredential] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        # RLock so helpers can be called while a mutation already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def verify_connection(self) -> None:
        if self.fs_root is not None and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # accounts
    def create_account(
        self,
        email: str,
        display_name: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = "user",
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=email,
                display_name=display_name,
                role=role,
            )
            self.accounts[account.id] = account
            self.passwords[account.id] = (password_hash, password_algo)
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]:
        return self.passwords.get(account_id)

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Tuple[int, Optional[datetime]]]:
        """Increment the failure counter, locking once it reaches ``max_attempts``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts += 1
            if account.failed_attempts >= max_attempts:
                account.locked_until = lock_until
            account.updated_at = utcnow()
            self._persist_state()
            return account.failed_attempts, account.locked_until

    def reset_login_failures(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts = 0
            account.locked_until = None
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def record_login_success(self, account_id: str, when: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts = 0
            account.locked_until = None
            account.last_login_at = when
            account.updated_at = when
            self._persist_state()
            return account

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.passwords.pop(account_id, None)
            self.credentials = {
                cid: cred
                for cid, cred in self.credentials.items()
                if cred.account_id != account_id
            }
            owned = [c.id for c in self.conversations.values() if c.account_id == account_id]
            for conversation_id in owned:
                self.conversations.pop(conversation_id, None)
                self.messages.pop(conversation_id, None)
            self._persist_state()
            return True

    # refresh credentials
    def create_refresh_credential(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshCredential:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "credential owner missing", {"account_id": account_id}
                )
            token_hash = hash_token(token)
            if any(c.token_hash == token_hash for c in self.credentials.values()):
                raise ConstraintViolation("refresh token already stored", {"field": "token"})
            credential = RefreshCredential.new(account_id, token_hash, expires_at)
            self.credentials[credential.id] = credential
            self._persist_state()
            return credential

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        token_hash = hash_token(token)
        with self._data_lock:
            return next(
                (c for c in self.credentials.values() if c.token_hash == token_hash),
                None,
            )

    def revoke_refresh_credential(
        self, credential_id: str, when: Optional[datetime] = None
    ) -> bool:
        """Revoke only if still active; returns True when this call revoked it."""
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential or credential.revoked_at is not None:
                return False
            credential.revoked_at = when or utcnow()
            self._persist_state()
            return True

    def sweep_refresh_credentials(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            dead = [
                cid
                for cid, cred in self.credentials.items()
                if cred.revoked_at is not None and cred.expires_at <= cutoff
            ]
            for cid in dead:
                del self.credentials[cid]
            if dead:
                self._persist_state()
            return len(dead)

    # conversations
    def create_conversation(self, account_id: str, title: str) -> Conversation:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "conversation owner missing", {"account_id": account_id}
                )
            now = utcnow()
            conversation = Conversation(
                id=generate_uuid(),
                account_id=account_id,
                title=title,
                created_at=now,
                updated_at=now,
            )
            self.conversations[conversation.id] = conversation
            self.messages[conversation.id] = []
            self._persist_state()
            return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Optional[Conversation]:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                return None
            conversation.title = title
            conversation.updated_at = utcnow()
            self._persist_state()
            return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._data_lock:
            if self.conversations.pop(conversation_id, None) is None:
                return False
            self.messages.pop(conversation_id, None)
            self._persist_state()
            return True

    def list_conversations(
        self, account_id: str, *, limit: int = 20, offset: int = 0
    ) -> List[Conversation]:
        with self._data_lock:
            convs = [c for c in self.conversations.values() if c.account_id == account_id]
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return convs[offset : offset + limit]

    def count_conversations(self, account_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.conversations.values() if c.account_id == account_id)

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        format: str = FORMAT_TEXT,
        status: str = STATUS_SENT,
        meta: Optional[Dict] = None,
    ) -> Message:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            conversation.last_seq += 1
            msg = Message(
                id=generate_uuid(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=conversation.last_seq,
                created_at=utcnow(),
                format=format,
                status=status,
                meta=meta,
            )
            self.messages.setdefault(conversation_id, []).append(msg)
            conversation.updated_at = msg.created_at
            self._persist_state()
            return msg

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._data_lock:
            msgs = list(self.messages.get(conversation_id, []))
        return sorted(msgs, key=lambda m: m.seq)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            for msgs in self.messages.values():
                for msg in msgs:
                    if msg.id == message_id:
                        return msg
        return None

    def delete_message(self, message_id: str) -> bool:
        with self._data_lock:
            for conversation_id, msgs in self.messages.items():
                remaining = [m for m in msgs if m.id != message_id]
                if len(remaining) != len(msgs):
                    self.messages[conversation_id] = remaining
                    self._persist_state()
                    return True
        return False

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "passwords": [
                {"account_id": account_id, "password_hash": pwd[0], "password_algo": pwd[1]}
                for account_id, pwd in self.passwords.items()
            ],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [
                self._serialize_message(m) for msgs in self.messages.values() for m in msgs
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.passwords = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("passwords", [])
        }
        self.credentials = {
            c["id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self.conversations = {
            c["id"]: self._deserialize_conversation(c)
            for c in data.get("conversations", [])
        }
        self.messages = {conversation_id: [] for conversation_id in self.conversations}
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            conversations=len(self.conversations),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "display_name": account.display_name,
            "role": account.role,
            "failed_attempts": account.failed_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "email_verified": account.email_verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            display_name=data.get("display_name", ""),
            role=data.get("role", "user"),
            failed_attempts=data.get("failed_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_credential(self, credential: RefreshCredential) -> dict:
        return {
            "id": credential.id,
            "account_id": credential.account_id,
            "token_hash": credential.token_hash,
            "issued_at": self._serialize_datetime(credential.issued_at),
            "expires_at": self._serialize_datetime(credential.expires_at),
            "revoked_at": self._serialize_datetime(credential.revoked_at),
        }

    def _deserialize_credential(self, data: dict) -> RefreshCredential:
        return RefreshCredential(
            id=data["id"],
            account_id=data["account_id"],
            token_hash=data["token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "account_id": conversation.account_id,
            "title": conversation.title,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
            "last_seq": conversation.last_seq,
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            account_id=data["account_id"],
            title=data["title"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_seq=data.get("last_seq", 0),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "seq": message.seq,
            "created_at": self._serialize_datetime(message.created_at),
            "format": message.format,
            "status": message.status,
            "meta": message.meta,
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data["content"],
            seq=data["seq"],
            created_at=self._deserialize_datetime(data["created_at"]),
            format=data.get("format", FORMAT_TEXT),
            status=data.get("status", STATUS_SENT),
            meta=data.get("meta"),
        )
