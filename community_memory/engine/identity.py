from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from ..memory.protocol import CommunityStore, PlatformAccountConflict
from .cache import BoundedCache
from .types import IdentityMetadata, PlatformAccount, UserIdentity, new_uuid, normalize_platform, utcnow


logger = logging.getLogger("community_memory")


class IdentityResolver:
    """Maps ``(platform, platform_id)`` pairs onto one canonical user UUID.

    Resolution never raises: when the store fails, callers get a temporary
    identity flagged ``metadata.is_temporary`` which is never cached and never
    merged into a real identity later.
    """

    def __init__(
        self,
        store: CommunityStore,
        cache: BoundedCache[UserIdentity],
        accounts_cache: BoundedCache[list[PlatformAccount]],
        *,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.accounts_cache = accounts_cache
        self._clock = clock

    @staticmethod
    def cache_key(platform: str, platform_id: str) -> str:
        return f"{platform}:{platform_id}"

    @staticmethod
    def _identity_metadata(
        platform: str,
        platform_username: str | None,
        metadata: Mapping[str, Any] | None,
        *,
        temporary: bool = False,
    ) -> IdentityMetadata:
        return IdentityMetadata(
            display_name=platform_username or None,
            preferred_platform=platform,
            is_temporary=temporary,
            extra=dict(metadata or {}),
        )

    def _temporary_identity(
        self,
        platform: str,
        platform_username: str | None,
        metadata: Mapping[str, Any] | None,
    ) -> UserIdentity:
        now = self._clock()
        return UserIdentity(
            uuid=new_uuid(),
            created_at=now,
            last_active_at=now,
            metadata=self._identity_metadata(platform, platform_username, metadata, temporary=True),
        )

    async def get_or_create_user_identity(
        self,
        platform: str,
        platform_id: str,
        platform_username: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> UserIdentity:
        platform = normalize_platform(platform)
        platform_id = str(platform_id or "").strip()
        key = self.cache_key(platform, platform_id)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Identity cache hit for %s", key)
            return cached

        try:
            identity = await self._resolve(platform, platform_id, platform_username, metadata)
        except Exception:
            logger.warning("Identity store unavailable for %s; issuing temporary identity", key, exc_info=True)
            return self._temporary_identity(platform, platform_username, metadata)

        self.cache.put(key, identity)
        return identity

    async def _resolve(
        self,
        platform: str,
        platform_id: str,
        platform_username: str | None,
        metadata: Mapping[str, Any] | None,
    ) -> UserIdentity:
        account = await self.store.find_platform_account(platform, platform_id)
        if account is not None:
            return await self._load_bound_identity(account, platform_username, metadata)

        now = self._clock()
        identity = UserIdentity(
            uuid=new_uuid(),
            created_at=now,
            last_active_at=now,
            metadata=self._identity_metadata(platform, platform_username, metadata),
        )
        account = PlatformAccount(
            id=new_uuid(),
            user_uuid=identity.uuid,
            platform=platform,
            platform_id=platform_id,
            platform_username=platform_username,
            verified_at=now,
            metadata=dict(metadata or {}),
        )
        try:
            await self.store.insert_identity_with_account(identity, account)
        except PlatformAccountConflict:
            winner = await self.store.find_platform_account(platform, platform_id)
            if winner is None:
                raise
            logger.info("Lost identity race for %s:%s; using uuid %s", platform, platform_id, winner.user_uuid)
            return await self._load_bound_identity(winner, platform_username, metadata)

        self.accounts_cache.delete(identity.uuid)
        logger.info("Created identity %s for %s:%s", identity.uuid, platform, platform_id)
        return identity

    async def _load_bound_identity(
        self,
        account: PlatformAccount,
        platform_username: str | None,
        metadata: Mapping[str, Any] | None,
    ) -> UserIdentity:
        now = self._clock()
        identity = await self.store.get_user_identity(account.user_uuid)
        if identity is None:
            identity = UserIdentity(
                uuid=account.user_uuid,
                created_at=now,
                last_active_at=now,
                metadata=self._identity_metadata(account.platform, platform_username, metadata),
            )
            await self.store.insert_user_identity(identity)
            return identity

        try:
            await self.store.touch_user_identity(identity.uuid, now)
        except Exception:
            logger.debug("Failed to update last_active_at for %s", identity.uuid, exc_info=True)
        identity.last_active_at = now
        return identity

    async def link_platform_account(
        self,
        uuid: str,
        platform: str,
        platform_id: str,
        platform_username: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Bind a platform account to ``uuid``.

        Returns True when the pair ends up bound to ``uuid`` (including when it
        already was) and False when another identity owns it or the store fails.
        """
        platform = normalize_platform(platform)
        platform_id = str(platform_id or "").strip()
        if not uuid or not platform_id:
            return False

        try:
            existing = await self.store.find_platform_account(platform, platform_id)
            if existing is not None:
                if existing.user_uuid == uuid:
                    logger.debug("Platform account %s:%s already linked to %s", platform, platform_id, uuid)
                    return True
                logger.warning(
                    "Refusing to link %s:%s to %s; already linked to %s",
                    platform,
                    platform_id,
                    uuid,
                    existing.user_uuid,
                )
                return False

            account = PlatformAccount(
                id=new_uuid(),
                user_uuid=uuid,
                platform=platform,
                platform_id=platform_id,
                platform_username=platform_username,
                verified_at=self._clock(),
                metadata=dict(metadata or {}),
            )
            try:
                await self.store.insert_platform_account(account)
            except PlatformAccountConflict:
                winner = await self.store.find_platform_account(platform, platform_id)
                return winner is not None and winner.user_uuid == uuid
        except Exception:
            logger.exception("Failed to link platform account %s:%s to %s", platform, platform_id, uuid)
            return False
        finally:
            self.cache.delete(self.cache_key(platform, platform_id))
            self.accounts_cache.delete(uuid)

        logger.info("Linked %s account %s to user %s", platform, platform_id, uuid)
        return True

    async def get_user_platform_accounts(self, uuid: str) -> list[PlatformAccount]:
        cached = self.accounts_cache.get(uuid)
        if cached is not None:
            return list(cached)
        try:
            accounts = await self.store.list_platform_accounts(uuid)
        except Exception:
            logger.exception("Failed to load platform accounts for %s", uuid)
            return []
        self.accounts_cache.put(uuid, list(accounts))
        return list(accounts)

    async def platform_id_to_uuid(self, platform: str, platform_id: str) -> str | None:
        if not str(platform_id or "").strip():
            return None
        identity = await self.get_or_create_user_identity(platform, platform_id)
        return identity.uuid

    async def get_user_summary(self, uuid: str) -> dict[str, Any] | None:
        try:
            identity = await self.store.get_user_identity(uuid)
        except Exception:
            logger.exception("Failed to build user summary for %s", uuid)
            return None
        accounts = await self.get_user_platform_accounts(uuid)
        return {
            "uuid": uuid,
            "identity": identity,
            "platform_accounts": [
                {
                    "platform": account.platform,
                    "username": account.platform_username,
                    "platform_id": account.platform_id,
                    "verified_at": account.verified_at,
                }
                for account in accounts
            ],
            "stats": {
                "total_platforms": len(accounts),
                "joined_date": identity.created_at if identity is not None else None,
                "last_active": identity.last_active_at if identity is not None else None,
            },
        }

    def stats(self) -> dict[str, Any]:
        return {
            "cached_identities": self.cache.size(),
            "cached_platform_accounts": self.accounts_cache.size(),
            "max_cache_size": self.cache.max_size,
        }
