from __future__ import annotations

from authkernel.logging import get_logger, hash_identifier
from authkernel.storage.kv import KeyValueStore

logger = get_logger(__name__)


def normalize_principal(principal: str) -> str:
    return principal.strip().lower()


class LockoutGuard:
    """Fixed-window failed-login counter with a separate lock marker.

    The window starts at the first failure and is never extended by later
    ones. Reaching ``max_failures`` inside the window sets a lock that
    outlives the counter and is only cleared by expiry.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_failures: int = 5,
        failure_window_seconds: int = 900,
        lockout_seconds: int = 900,
    ) -> None:
        self.kv = kv
        self.max_failures = max_failures
        self.failure_window_seconds = failure_window_seconds
        self.lockout_seconds = lockout_seconds

    @staticmethod
    def _fail_key(principal: str) -> str:
        return f"fail:{normalize_principal(principal)}"

    @staticmethod
    def _lock_key(principal: str) -> str:
        return f"lock:{normalize_principal(principal)}"

    async def record_failure(self, principal: str) -> int:
        count = await self.kv.incr_with_ttl(
            self._fail_key(principal), self.failure_window_seconds
        )
        if count >= self.max_failures:
            await self.kv.set(self._lock_key(principal), "1", self.lockout_seconds)
            if count == self.max_failures:
                logger.warning(
                    "account_locked",
                    principal_hash=hash_identifier(principal),
                    failures=count,
                    lockout_seconds=self.lockout_seconds,
                )
        return count

    async def is_locked(self, principal: str) -> bool:
        return await self.kv.exists(self._lock_key(principal))

    async def reset_failures(self, principal: str) -> None:
        await self.kv.delete(self._fail_key(principal))
