"""Upstream resources read through the cache service.

Values are stored as JSON documents and validated back into resource models
on every read.
"""

from __future__ import annotations

import structlog
from pydantic import TypeAdapter

from notifications.client import KomunitinClient
from notifications.resources import Currency, Group, MemberWithUsers
from shared.cache import CacheService

logger = structlog.get_logger()

CACHE_TTL_24H = 24 * 60 * 60

_groups = TypeAdapter(list[Group])
_members_with_users = TypeAdapter(list[MemberWithUsers])


class CachedResources:
    def __init__(self, cache: CacheService, client: KomunitinClient, ttl: float = CACHE_TTL_24H):
        self._cache = cache
        self._client = client
        self._ttl = ttl

    async def active_groups(self, ttl: float | None = None) -> list[Group]:
        async def fetch():
            groups = await self._client.get_groups({"filter[status]": "active"})
            return _groups.dump_python(groups, mode="json")

        data = await self._cache.get("groups:active", fetch, self._ttl if ttl is None else ttl)
        return _groups.validate_python(data)

    async def group(self, code: str, ttl: float | None = None) -> Group:
        async def fetch():
            return (await self._client.get_group(code)).model_dump(mode="json")

        data = await self._cache.get(f"group:{code}", fetch, self._ttl if ttl is None else ttl)
        return Group.model_validate(data)

    async def currency(self, code: str, ttl: float | None = None) -> Currency:
        async def fetch():
            return (await self._client.get_currency(code)).model_dump(mode="json")

        data = await self._cache.get(f"currency:{code}", fetch, self._ttl if ttl is None else ttl)
        return Currency.model_validate(data)

    async def group_members_with_users(
        self, code: str, ttl: float | None = None
    ) -> list[MemberWithUsers]:
        """All members of a group, each with its users and their settings.

        Members whose users cannot be fetched are left out.
        """

        async def fetch():
            result: list[MemberWithUsers] = []
            for member in await self._client.get_members(code):
                try:
                    users = await self._client.get_member_users(member.id)
                except Exception as e:
                    logger.warning("member_users_fetch_failed", code=code, member_id=member.id, error=str(e))
                    continue
                result.append(MemberWithUsers(member=member, users=users))
            return _members_with_users.dump_python(result, mode="json")

        data = await self._cache.get(
            f"group:{code}:members", fetch, self._ttl if ttl is None else ttl
        )
        return _members_with_users.validate_python(data)
