from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tutorbridge.logging import get_logger
from tutorbridge.storage.common import as_utc, generate_uuid, hash_token, parse_json_meta
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

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_credential (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_credential_account_idx ON refresh_credential (account_id)",
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        last_seq INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversation_account_updated_idx ON conversation (account_id, updated_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        conversation_id UUID NOT NULL REFERENCES conversation(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        format TEXT NOT NULL DEFAULT 'text',
        status TEXT NOT NULL DEFAULT 'sent',
        seq INTEGER NOT NULL,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (conversation_id, seq)
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts, refresh credentials and chat history."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=4)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        account_id = generate_uuid()
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, display_name, password_hash, password_algo, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (account_id, email, display_name, password_hash, password_algo, role, now, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return Account(
            id=account_id,
            email=email,
            display_name=display_name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account WHERE id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[Tuple[int, Optional[datetime]]]:
        # Single statement: the increment and the lock decision see the same row version
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_attempts = failed_attempts + 1,
                    locked_until = CASE
                        WHEN failed_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING failed_attempts, locked_until
                """,
                (max_attempts, lock_until, account_id),
            ).fetchone()
        if not row:
            return None
        return row["failed_attempts"], as_utc(row["locked_until"])

    def reset_login_failures(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login_success(self, account_id: str, when: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_attempts = 0, locked_until = NULL, last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (when, when, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return row is not None

    # refresh credentials
    def create_refresh_credential(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshCredential:
        credential = RefreshCredential.new(account_id, hash_token(token), expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_credential (id, account_id, token_hash, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.account_id,
                        credential.token_hash,
                        credential.issued_at,
                        credential.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("credential owner missing", {"account_id": account_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already stored", {"field": "token"})
        return credential

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE token_hash = %s",
                (hash_token(token),),
            ).fetchone()
        if not row:
            return None
        return RefreshCredential(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            issued_at=as_utc(row["issued_at"]),
            expires_at=as_utc(row["expires_at"]),
            revoked_at=as_utc(row.get("revoked_at")),
        )

    def revoke_refresh_credential(
        self, credential_id: str, when: Optional[datetime] = None
    ) -> bool:
        """Conditional revoke; only the caller that flips ``revoked_at`` gets True."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_credential
                SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (when or utcnow(), credential_id),
            ).fetchone()
        return row is not None

    def sweep_refresh_credentials(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_credential
                WHERE revoked_at IS NOT NULL AND expires_at <= %s
                """,
                (now or utcnow(),),
            )
            return cur.rowcount or 0

    # conversations
    def create_conversation(self, account_id: str, title: str) -> Conversation:
        conv_id = generate_uuid()
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO conversation (id, account_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                    (conv_id, account_id, title, now, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation owner missing", {"account_id": account_id}
            )
        return Conversation(
            id=conv_id,
            account_id=account_id,
            title=title,
            created_at=now,
            updated_at=now,
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversation WHERE id = %s", (conversation_id,)
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation SET title = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (title, conversation_id),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM conversation WHERE id = %s RETURNING id", (conversation_id,)
            ).fetchone()
        return row is not None

    def list_conversations(
        self, account_id: str, *, limit: int = 20, offset: int = 0
    ) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation
                WHERE account_id = %s
                ORDER BY updated_at DESC, id
                LIMIT %s OFFSET %s
                """,
                (account_id, limit, offset),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def count_conversations(self, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM conversation WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        return row["c"] if row else 0

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
        msg_id = generate_uuid()
        now = utcnow()
        with self._connect() as conn:
            with conn.transaction():
                # Row lock on the conversation serializes seq allocation
                seq_row = conn.execute(
                    """
                    UPDATE conversation
                    SET last_seq = last_seq + 1, updated_at = %s
                    WHERE id = %s
                    RETURNING last_seq
                    """,
                    (now, conversation_id),
                ).fetchone()
                if not seq_row:
                    raise ConstraintViolation(
                        "conversation not found", {"conversation_id": conversation_id}
                    )
                seq = seq_row["last_seq"]
                conn.execute(
                    """
                    INSERT INTO message (id, conversation_id, role, content, format, status, seq, meta, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        msg_id,
                        conversation_id,
                        role,
                        content,
                        format,
                        status,
                        seq,
                        json.dumps(meta) if meta else None,
                        now,
                    ),
                )
        return Message(
            id=msg_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            seq=seq,
            created_at=now,
            format=format,
            status=status,
            meta=meta,
        )

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message WHERE conversation_id = %s ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM message WHERE id = %s", (message_id,)
            ).fetchone()
        return self._message_from_row(row) if row else None

    def delete_message(self, message_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM message WHERE id = %s RETURNING id", (message_id,)
            ).fetchone()
        return row is not None

    # row mapping
    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            role=row.get("role", "user"),
            failed_attempts=row.get("failed_attempts", 0),
            locked_until=as_utc(row.get("locked_until")),
            last_login_at=as_utc(row.get("last_login_at")),
            email_verified=row.get("email_verified", False),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            updated_at=as_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _conversation_from_row(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            title=row["title"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            last_seq=row.get("last_seq", 0),
        )

    @staticmethod
    def _message_from_row(row: Dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            created_at=as_utc(row["created_at"]),
            format=row.get("format") or FORMAT_TEXT,
            status=row.get("status") or STATUS_SENT,
            meta=parse_json_meta(row.get("meta")),
        )
