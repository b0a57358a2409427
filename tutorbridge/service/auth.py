from __future__ import annotations

import asyncio
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tutorbridge.logging import get_logger
from tutorbridge.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from tutorbridge.service.lockout import LockoutTracker
from tutorbridge.service.tokens import TokenClaims, TokenCodec
from tutorbridge.storage.errors import ConstraintViolation
from tutorbridge.storage.models import Account, RefreshCredential, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_INVALID_CREDENTIALS = "invalid email or password"


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        display_name: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = "user",
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]: ...

    def create_refresh_credential(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshCredential: ...

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]: ...

    def revoke_refresh_credential(
        self, credential_id: str, when: Optional[datetime] = None
    ) -> bool: ...

    def sweep_refresh_credentials(self, now: Optional[datetime] = None) -> int: ...


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email).strip().lower()


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str = "user"


@dataclass
class AuthResult:
    account: Account
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthService:
    """Registration, login, refresh rotation and logout.

    Access tokens are stateless; refresh tokens are backed by a stored
    credential so they can be rotated and revoked. Argon2 work runs in a
    worker thread to keep the event loop responsive.
    """

    def __init__(
        self,
        store: AuthStore,
        access_codec: TokenCodec,
        refresh_codec: TokenCodec,
        lockout: LockoutTracker,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.access_codec = access_codec
        self.refresh_codec = refresh_codec
        self.lockout = lockout
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _issue_pair(self, account: Account) -> AuthResult:
        claims = TokenClaims(account_id=account.id, email=account.email, role=account.role)
        access = self.access_codec.issue(claims)
        refresh = self.refresh_codec.issue(claims)
        self.store.create_refresh_credential(account.id, refresh.token, refresh.expires_at)
        return AuthResult(
            account=account,
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def register(self, email: str, password: str, display_name: str) -> AuthResult:
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            self.logger.info("auth_register", account_id=None, outcome="duplicate")
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            account = self.store.create_account(email, display_name.strip(), password_hash, algo)
        except ConstraintViolation:
            # lost a race with a concurrent registration for the same email
            self.logger.info("auth_register", account_id=None, outcome="duplicate")
            raise ConflictError("email already registered", detail={"field": "email"})
        result = self._issue_pair(account)
        self.logger.info("auth_register", account_id=account.id, outcome="success")
        return result

    async def login(self, email: str, password: str) -> AuthResult:
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            self.logger.info("auth_login", account_id=None, outcome="unknown_account")
            raise AuthenticationError(_INVALID_CREDENTIALS)

        try:
            account = self.lockout.check(account)
        except AccountLockedError:
            self.logger.info("auth_login", account_id=account.id, outcome="locked")
            raise

        verified = await asyncio.to_thread(self._verify_password, account.id, password)
        if not verified:
            try:
                attempts = self.lockout.record_failure(account)
            except AccountLockedError:
                self.logger.info("auth_login", account_id=account.id, outcome="locked")
                raise
            self.logger.info(
                "auth_login",
                account_id=account.id,
                outcome="bad_password",
                failed_attempts=attempts,
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        account = self.lockout.record_success(account)
        result = self._issue_pair(account)
        self.logger.info("auth_login", account_id=account.id, outcome="success")
        return result

    async def refresh(self, refresh_token: str) -> AuthResult:
        # TokenMalformedError is a TokenInvalidError, so it propagates as-is
        try:
            claims = self.refresh_codec.verify(refresh_token)
        except TokenExpiredError:
            self.logger.info("auth_refresh", account_id=None, outcome="expired")
            raise

        credential = self.store.get_refresh_credential(refresh_token)
        if credential is None or credential.is_revoked:
            self.logger.info("auth_refresh", account_id=claims.account_id, outcome="revoked")
            raise TokenInvalidError("refresh token is no longer valid")
        if credential.is_expired():
            self.logger.info("auth_refresh", account_id=claims.account_id, outcome="expired")
            raise TokenExpiredError("refresh token expired")

        if not self.store.revoke_refresh_credential(credential.id):
            self.logger.warning("auth_refresh", account_id=claims.account_id, outcome="race_lost")
            raise TokenInvalidError("refresh token is no longer valid")

        account = self.store.get_account(credential.account_id)
        if not account:
            self.logger.info("auth_refresh", account_id=credential.account_id, outcome="account_missing")
            raise TokenInvalidError("refresh token is no longer valid")

        result = self._issue_pair(account)
        self.logger.info("auth_refresh", account_id=account.id, outcome="success")
        return result

    async def logout(self, refresh_token: str) -> None:
        credential = self.store.get_refresh_credential(refresh_token)
        if credential is None or credential.is_revoked:
            self.logger.info("auth_logout", account_id=None, outcome="noop")
            return
        revoked = self.store.revoke_refresh_credential(credential.id)
        self.logger.info(
            "auth_logout",
            account_id=credential.account_id,
            outcome="revoked" if revoked else "noop",
        )

    async def get_profile(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.access_codec.verify(token)
        return AuthContext(account_id=claims.account_id, email=claims.email, role=claims.role)

    async def sweep_expired_credentials(self, now: Optional[datetime] = None) -> int:
        removed = self.store.sweep_refresh_credentials(now or utcnow())
        self.logger.info("refresh_credentials_swept", removed=removed)
        return removed
