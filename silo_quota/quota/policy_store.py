# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/policy_store.py

"""
Policy Store

Resolves daily per-user limits for (guild, role tier) and the guild-wide caps.

Tier quota fallback, one resolver per level:
  1. guild-specific row   (role_tier_quotas.guild_id = guild)
  2. global tier row      (role_tier_quotas.guild_id IS NULL)
  3. hardcoded defaults   (policy.DEFAULT_TIER_QUOTAS)

Levels 1-2 are only skipped when the store *answers* with no row. If the store
cannot be reached, PolicyResolutionError is raised: an unreachable store never
turns into an unlimited (or default) policy.

Tables: role_tier_quotas, guild_quotas (caps + exemptions)
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Optional

import asyncpg
from redis.asyncio import Redis

from silo_quota.infra.namespaces import REDIS, PG
from silo_quota.infra.relational.pool import PgComponent, DRIVER_ERRORS
from silo_quota.quota.policy import (
    RoleTier,
    TierQuota,
    GuildCapPolicy,
    GuildExemption,
    PolicyResolutionError,
    UpstreamPersistenceError,
    default_tier_quota,
)

logger = logging.getLogger(__name__)


class PolicyStore(PgComponent):
    TIER_TABLE = PG.QUOTA.ROLE_TIER_QUOTAS
    GUILD_TABLE = PG.QUOTA.GUILD_QUOTAS

    SQL_GUILD_TIER_ROW = """
        SELECT text_tokens, images, voice_minutes
        FROM {schema}.role_tier_quotas
        WHERE guild_id = $1 AND role_tier = $2
        LIMIT 1
    """
    SQL_GLOBAL_TIER_ROW = """
        SELECT text_tokens, images, voice_minutes
        FROM {schema}.role_tier_quotas
        WHERE guild_id IS NULL AND role_tier = $1
        LIMIT 1
    """
    SQL_GUILD_CAP_ROW = """
        SELECT daily_text_tokens, daily_images, daily_voice_minutes
        FROM {schema}.guild_quotas
        WHERE guild_id = $1
    """
    SQL_EXEMPTION_ROW = """
        SELECT quota_exempt, rate_limit_exempt
        FROM {schema}.guild_quotas
        WHERE guild_id = $1
    """
    SQL_UPSERT_GUILD_TIER = """
        INSERT INTO {schema}.role_tier_quotas (guild_id, role_tier, text_tokens, images, voice_minutes)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (guild_id, role_tier) WHERE guild_id IS NOT NULL
        DO UPDATE SET
            text_tokens   = EXCLUDED.text_tokens,
            images        = EXCLUDED.images,
            voice_minutes = EXCLUDED.voice_minutes,
            updated_at    = NOW()
        RETURNING text_tokens, images, voice_minutes
    """
    SQL_UPSERT_GLOBAL_TIER = """
        INSERT INTO {schema}.role_tier_quotas (guild_id, role_tier, text_tokens, images, voice_minutes)
        VALUES (NULL, $1, $2, $3, $4)
        ON CONFLICT (role_tier) WHERE guild_id IS NULL
        DO UPDATE SET
            text_tokens   = EXCLUDED.text_tokens,
            images        = EXCLUDED.images,
            voice_minutes = EXCLUDED.voice_minutes,
            updated_at    = NOW()
        RETURNING text_tokens, images, voice_minutes
    """
    SQL_DELETE_GUILD_TIER = """
        DELETE FROM {schema}.role_tier_quotas
        WHERE guild_id = $1 AND role_tier = $2
    """
    SQL_UPSERT_GUILD_CAP = """
        INSERT INTO {schema}.guild_quotas (guild_id, daily_text_tokens, daily_images, daily_voice_minutes)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (guild_id)
        DO UPDATE SET
            daily_text_tokens   = COALESCE(EXCLUDED.daily_text_tokens, {schema}.guild_quotas.daily_text_tokens),
            daily_images        = COALESCE(EXCLUDED.daily_images, {schema}.guild_quotas.daily_images),
            daily_voice_minutes = COALESCE(EXCLUDED.daily_voice_minutes, {schema}.guild_quotas.daily_voice_minutes),
            updated_at          = NOW()
        RETURNING daily_text_tokens, daily_images, daily_voice_minutes
    """
    SQL_UPSERT_EXEMPTION = """
        INSERT INTO {schema}.guild_quotas (guild_id, quota_exempt, rate_limit_exempt)
        VALUES ($1, COALESCE($2, FALSE), COALESCE($3, FALSE))
        ON CONFLICT (guild_id)
        DO UPDATE SET
            quota_exempt      = COALESCE($2, {schema}.guild_quotas.quota_exempt),
            rate_limit_exempt = COALESCE($3, {schema}.guild_quotas.rate_limit_exempt),
            updated_at        = NOW()
        RETURNING quota_exempt, rate_limit_exempt
    """

    def __init__(
            self,
            pg_pool: Optional[asyncpg.Pool] = None,
            redis: Optional[Redis] = None,
            *,
            schema: Optional[str] = None,
            cache_ttl: Optional[int] = None,
    ):
        super().__init__(pg_pool, schema=schema)
        self._redis = redis
        self._owns_redis = False
        self.cache_ttl = cache_ttl if cache_ttl is not None else self._settings.QUOTA_POLICY_CACHE_TTL
        self.default_guild_cap = GuildCapPolicy(
            text_tokens_max=self._settings.QUOTA_GUILD_TEXT_TOKENS_MAX,
            images_max=self._settings.QUOTA_GUILD_IMAGES_MAX,
            voice_minutes_max=self._settings.QUOTA_GUILD_VOICE_MINUTES_MAX,
        )

    async def init(self, *, redis_url: Optional[str] = None):
        await super().init()
        redis_url = redis_url or self._settings.REDIS_URL
        if not self._redis and redis_url:
            self._redis = Redis.from_url(redis_url)
            self._owns_redis = True

    async def close(self):
        await super().close()
        if self._owns_redis and self._redis:
            await self._redis.close()
            self._redis = None

    # ---------------- cache ----------------

    def _tier_key(self, guild_id: str, tier: RoleTier) -> str:
        return f"{REDIS.QUOTA.TIER_POLICY_CACHE}:{guild_id}:{tier.value}"

    def _cap_key(self, guild_id: str) -> str:
        return f"{REDIS.QUOTA.GUILD_CAP_CACHE}:{guild_id}"

    def _exemption_key(self, guild_id: str) -> str:
        return f"{REDIS.QUOTA.EXEMPTION_CACHE}:{guild_id}"

    async def _cache_get(self, key: str) -> Optional[dict]:
        if not self._redis:
            return None
        try:
            cached = await self._redis.get(key)
            if cached:
                raw = cached.decode() if isinstance(cached, (bytes, bytearray)) else str(cached)
                return json.loads(raw)
        except Exception as e:
            logger.warning("Redis quota policy read error: %s", e)
        return None

    async def _cache_set(self, key: str, value: dict) -> None:
        if not self._redis or self.cache_ttl <= 0:
            return
        try:
            await self._redis.setex(key, self.cache_ttl, json.dumps(value))
        except Exception as e:
            logger.warning("Redis quota policy write error: %s", e)

    async def _invalidate(self, *keys: str, pattern: Optional[str] = None) -> None:
        if not self._redis:
            return
        try:
            found = list(keys)
            if pattern:
                async for k in self._redis.scan_iter(match=pattern, count=500):
                    found.append(k.decode() if isinstance(k, (bytes, bytearray)) else str(k))
            if found:
                await self._redis.delete(*found)
        except Exception as e:
            logger.warning("Redis quota policy invalidation error: %s", e)

    def _pool(self) -> asyncpg.Pool:
        if not self._pg_pool:
            raise PolicyResolutionError("Quota policy store is not initialized")
        return self._pg_pool

    # ---------------- tier quota resolvers ----------------

    @staticmethod
    def _row_to_tier_quota(row, source: str) -> TierQuota:
        return TierQuota(
            text_tokens=int(row["text_tokens"] or 0),
            images=int(row["images"] or 0),
            voice_minutes=int(row["voice_minutes"] or 0),
            source=source,
        )

    async def _resolve_guild_row(self, conn, guild_id: str, tier: RoleTier) -> Optional[TierQuota]:
        row = await conn.fetchrow(self._sql(self.SQL_GUILD_TIER_ROW), guild_id, tier.value)
        return self._row_to_tier_quota(row, "guild") if row else None

    async def _resolve_global_row(self, conn, tier: RoleTier) -> Optional[TierQuota]:
        row = await conn.fetchrow(self._sql(self.SQL_GLOBAL_TIER_ROW), tier.value)
        return self._row_to_tier_quota(row, "global") if row else None

    async def get_role_tier_quota(self, guild_id: str, tier) -> TierQuota:
        """
        Daily per-user limits for a role tier in a guild.

        Unknown tiers resolve to the member policy.
        """
        tier = RoleTier.parse(tier)
        key = self._tier_key(guild_id, tier)

        cached = await self._cache_get(key)
        if cached:
            return TierQuota(**cached)

        try:
            async with self._pool().acquire() as conn:
                quota = await self._resolve_guild_row(conn, guild_id, tier)
                if quota is None:
                    quota = await self._resolve_global_row(conn, tier)
        except DRIVER_ERRORS as e:
            raise PolicyResolutionError(
                f"Failed to resolve quota policy for tier '{tier.value}'",
                data={"guild_id": guild_id, "tier": tier.value},
            ) from e

        if quota is None:
            quota = default_tier_quota(tier)

        await self._cache_set(key, asdict(quota))
        return quota

    # ---------------- guild caps / exemptions ----------------

    async def get_guild_cap_policy(self, guild_id: str) -> GuildCapPolicy:
        cached = await self._cache_get(self._cap_key(guild_id))
        if cached:
            return GuildCapPolicy(**cached)

        try:
            async with self._pool().acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_GUILD_CAP_ROW), guild_id)
        except DRIVER_ERRORS as e:
            raise PolicyResolutionError(
                "Failed to resolve guild cap policy", data={"guild_id": guild_id}
            ) from e

        d = self.default_guild_cap
        if not row:
            cap = d
        else:
            # NULL column = not overridden; an explicit 0 is honored
            cap = GuildCapPolicy(
                text_tokens_max=d.text_tokens_max if row["daily_text_tokens"] is None else int(row["daily_text_tokens"]),
                images_max=d.images_max if row["daily_images"] is None else int(row["daily_images"]),
                voice_minutes_max=d.voice_minutes_max if row["daily_voice_minutes"] is None else int(row["daily_voice_minutes"]),
            )

        await self._cache_set(self._cap_key(guild_id), asdict(cap))
        return cap

    async def get_guild_exemption(self, guild_id: str) -> GuildExemption:
        cached = await self._cache_get(self._exemption_key(guild_id))
        if cached:
            return GuildExemption(**cached)

        try:
            async with self._pool().acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_EXEMPTION_ROW), guild_id)
        except DRIVER_ERRORS as e:
            raise PolicyResolutionError(
                "Failed to read guild exemption", data={"guild_id": guild_id}
            ) from e

        exemption = GuildExemption(
            quota_exempt=bool(row and row["quota_exempt"] is True),
            rate_limit_exempt=bool(row and row["rate_limit_exempt"] is True),
        )
        await self._cache_set(self._exemption_key(guild_id), asdict(exemption))
        return exemption

    # ---------------- admin mutations ----------------

    async def _write(self, sql: str, *args, what: str, data: dict):
        if not self._pg_pool:
            raise UpstreamPersistenceError("Quota policy store is not initialized", data=data)
        try:
            async with self._pg_pool.acquire() as conn:
                return await conn.fetchrow(sql, *args)
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(f"Failed to {what}", data=data) from e

    async def set_role_tier_quota(
            self,
            *,
            guild_id: Optional[str],
            tier,
            text_tokens: int,
            images: int,
            voice_minutes: int,
    ) -> TierQuota:
        """
        Create or replace a tier row. guild_id=None writes the global row.
        """
        tier = RoleTier.parse(tier)
        # validates non-negative values before touching the store
        quota = TierQuota(text_tokens=text_tokens, images=images, voice_minutes=voice_minutes,
                          source="guild" if guild_id else "global")
        data = {"guild_id": guild_id, "tier": tier.value}

        if guild_id:
            await self._write(self._sql(self.SQL_UPSERT_GUILD_TIER),
                              guild_id, tier.value, quota.text_tokens, quota.images, quota.voice_minutes,
                              what="store guild tier quota", data=data)
            await self._invalidate(self._tier_key(guild_id, tier))
        else:
            await self._write(self._sql(self.SQL_UPSERT_GLOBAL_TIER),
                              tier.value, quota.text_tokens, quota.images, quota.voice_minutes,
                              what="store global tier quota", data=data)
            await self._invalidate(pattern=f"{REDIS.QUOTA.TIER_POLICY_CACHE}:*:{tier.value}")

        logger.info("Tier quota updated: guild=%s tier=%s %s/%s/%s",
                    guild_id or "<global>", tier.value, quota.text_tokens, quota.images, quota.voice_minutes)
        return quota

    async def delete_role_tier_quota(self, *, guild_id: str, tier) -> None:
        """Drop a guild override so the tier falls back to the global row."""
        tier = RoleTier.parse(tier)
        if not self._pg_pool:
            raise UpstreamPersistenceError("Quota policy store is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                await conn.execute(self._sql(self.SQL_DELETE_GUILD_TIER), guild_id, tier.value)
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(
                "Failed to delete guild tier quota", data={"guild_id": guild_id, "tier": tier.value}
            ) from e
        await self._invalidate(self._tier_key(guild_id, tier))

    async def set_guild_cap_policy(
            self,
            *,
            guild_id: str,
            text_tokens_max: Optional[int] = None,
            images_max: Optional[int] = None,
            voice_minutes_max: Optional[int] = None,
    ) -> GuildCapPolicy:
        """Partial update: only the caps you pass are changed."""
        for name, val in (("text_tokens_max", text_tokens_max),
                          ("images_max", images_max),
                          ("voice_minutes_max", voice_minutes_max)):
            if val is not None and val < 0:
                raise ValueError(f"{name} must be non-negative, got {val}")

        await self._write(self._sql(self.SQL_UPSERT_GUILD_CAP),
                          guild_id, text_tokens_max, images_max, voice_minutes_max,
                          what="store guild cap policy", data={"guild_id": guild_id})
        await self._invalidate(self._cap_key(guild_id))
        return await self.get_guild_cap_policy(guild_id)

    async def set_guild_exemption(
            self,
            *,
            guild_id: str,
            quota_exempt: Optional[bool] = None,
            rate_limit_exempt: Optional[bool] = None,
    ) -> GuildExemption:
        row = await self._write(self._sql(self.SQL_UPSERT_EXEMPTION),
                                guild_id, quota_exempt, rate_limit_exempt,
                                what="store guild exemption", data={"guild_id": guild_id})
        await self._invalidate(self._exemption_key(guild_id))
        logger.info("Guild exemption updated: guild=%s quota_exempt=%s rate_limit_exempt=%s",
                    guild_id, row["quota_exempt"], row["rate_limit_exempt"])
        return GuildExemption(quota_exempt=bool(row["quota_exempt"]),
                              rate_limit_exempt=bool(row["rate_limit_exempt"]))
