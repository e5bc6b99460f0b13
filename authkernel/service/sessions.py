from __future__ import annotations

from authkernel.storage.kv import KeyValueStore


def refresh_key(account_id: int, jti: str) -> str:
    return f"refresh:{account_id}:{jti}"


def blacklist_key(jti: str) -> str:
    return f"blacklist:{jti}"


class SessionRegistry:
    """Live refresh sessions and the jti blacklist, kept in the KV store."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def store(self, account_id: int, jti: str, token: str, ttl_seconds: int) -> None:
        await self.kv.set(refresh_key(account_id, jti), token, max(1, ttl_seconds))

    async def exists(self, account_id: int, jti: str) -> bool:
        return await self.kv.exists(refresh_key(account_id, jti))

    async def drop(self, account_id: int, jti: str) -> None:
        await self.kv.delete(refresh_key(account_id, jti))

    async def revoke(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds < 1:
            raise ValueError("revocation ttl must be at least 1 second")
        await self.kv.set(blacklist_key(jti), "1", ttl_seconds)

    async def is_revoked(self, jti: str) -> bool:
        return await self.kv.exists(blacklist_key(jti))

    async def rotate(
        self,
        account_id: int,
        old_jti: str,
        revoke_ttl_seconds: int,
        new_jti: str,
        new_token: str,
        ttl_seconds: int,
    ) -> None:
        """Blacklist ``old_jti``, drop its session and store the new one together."""
        if revoke_ttl_seconds < 1:
            raise ValueError("revocation ttl must be at least 1 second")
        await self.kv.write_batch(
            sets=[
                (blacklist_key(old_jti), "1", revoke_ttl_seconds),
                (refresh_key(account_id, new_jti), new_token, max(1, ttl_seconds)),
            ],
            deletes=[refresh_key(account_id, old_jti)],
        )
