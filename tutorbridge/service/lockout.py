from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from tutorbridge.logging import get_logger
from tutorbridge.service.errors import AccountLockedError, AuthenticationError
from tutorbridge.storage.models import Account, utcnow

logger = get_logger(__name__)


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


class LockoutTracker:
    """Counts consecutive failed logins and applies temporary lockouts.

    The counter lives on the account row; increments go through the store's
    atomic ``record_login_failure`` so concurrent bad logins cannot both read
    a stale count and skip the lock.
    """

    def __init__(
        self,
        store,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock

    def state(self, account: Account, now: Optional[datetime] = None) -> LockState:
        now = now or self.clock()
        if account.locked_until is not None and account.locked_until > now:
            return LockState.LOCKED
        return LockState.OPEN

    def _retry_after(self, locked_until: datetime, now: datetime) -> int:
        return max(1, math.ceil((locked_until - now).total_seconds()))

    def check(self, account: Account) -> Account:
        """Raise while locked; clear an elapsed lock and return the fresh account."""
        now = self.clock()
        if self.state(account, now) is LockState.LOCKED:
            raise AccountLockedError(self._retry_after(account.locked_until, now))
        if account.locked_until is not None:
            refreshed = self.store.reset_login_failures(account.id)
            logger.info("account_lock_expired", account_id=account.id)
            return refreshed or account
        return account

    def record_failure(self, account: Account) -> int:
        now = self.clock()
        result = self.store.record_login_failure(
            account.id,
            max_attempts=self.max_attempts,
            lock_until=now + self.lockout_duration,
        )
        if result is None:
            raise AuthenticationError("invalid email or password")
        count, locked_until = result
        if locked_until is not None and locked_until > now:
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_attempts=count,
                locked_until=locked_until.isoformat(),
            )
            raise AccountLockedError(self._retry_after(locked_until, now))
        return count

    def record_success(self, account: Account) -> Account:
        refreshed = self.store.record_login_success(account.id, self.clock())
        return refreshed or account
