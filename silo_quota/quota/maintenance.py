# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/maintenance.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

import asyncpg

from silo_quota.infra.relational.pool import PgComponent, DRIVER_ERRORS
from silo_quota.quota.ledger import utc_today
from silo_quota.quota.policy import RoleTier, LedgerReadError, UpstreamPersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuildQuotaStats:
    text_tokens_used: int = 0
    images_used: int = 0
    voice_minutes_used: int = 0
    unique_users: int = 0
    pending_reset_notifications: int = 0


@dataclass(frozen=True)
class CleanupResult:
    accuracy_logs_deleted: int = 0
    usage_deleted: int = 0
    guild_usage_deleted: int = 0


@dataclass
class IntegrityReport:
    guilds_with_null_caps: List[str] = field(default_factory=list)
    missing_global_tiers: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.guilds_with_null_caps and not self.missing_global_tiers


def _deleted_count(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 12"
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (TypeError, ValueError):
        return 0


class QuotaMaintenance(PgComponent):
    """Admin views and retention jobs over the quota tables."""

    SQL_GUILD_STATS = """
        SELECT COALESCE(SUM(ut.text_tokens_used), 0)   AS text_tokens_used,
               COALESCE(SUM(ut.images_used), 0)        AS images_used,
               COALESCE(SUM(ut.voice_minutes_used), 0) AS voice_minutes_used,
               COUNT(DISTINCT ut.user_id)              AS unique_users,
               (SELECT COUNT(*) FROM {schema}.quota_reset_notifications
                 WHERE guild_id = $1)                  AS pending_reset_notifications
        FROM {schema}.usage_tracking ut
        WHERE ut.guild_id = $1 AND ut.usage_date = $2
    """
    SQL_DELETE_ACCURACY = """
        DELETE FROM {schema}.quota_accuracy_log
        WHERE created_at < NOW() - make_interval(days => $1)
    """
    SQL_DELETE_USAGE = """
        DELETE FROM {schema}.usage_tracking WHERE usage_date < $1
    """
    SQL_DELETE_GUILD_USAGE = """
        DELETE FROM {schema}.guild_daily_usage WHERE usage_date < $1
    """
    SQL_NULL_CAPS = """
        SELECT guild_id FROM {schema}.guild_quotas
        WHERE daily_text_tokens IS NULL
           OR daily_images IS NULL
           OR daily_voice_minutes IS NULL
        ORDER BY guild_id
    """
    SQL_GLOBAL_TIERS = """
        SELECT role_tier FROM {schema}.role_tier_quotas WHERE guild_id IS NULL
    """

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: Optional[str] = None):
        super().__init__(pg_pool, schema=schema)

    def _pool(self, error_cls) -> asyncpg.Pool:
        if not self._pg_pool:
            raise error_cls("Quota maintenance is not initialized")
        return self._pg_pool

    async def get_guild_quota_stats(self, guild_id: str, *, usage_date: Optional[date] = None) -> GuildQuotaStats:
        try:
            async with self._pool(LedgerReadError).acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_GUILD_STATS), guild_id, usage_date or utc_today())
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read guild quota stats", data={"guild_id": guild_id}) from e
        if not row:
            return GuildQuotaStats()
        return GuildQuotaStats(
            text_tokens_used=int(row["text_tokens_used"] or 0),
            images_used=int(row["images_used"] or 0),
            voice_minutes_used=int(row["voice_minutes_used"] or 0),
            unique_users=int(row["unique_users"] or 0),
            pending_reset_notifications=int(row["pending_reset_notifications"] or 0),
        )

    async def cleanup_old_data(
            self,
            *,
            accuracy_days: Optional[int] = None,
            usage_days: Optional[int] = None,
            today: Optional[date] = None,
    ) -> CleanupResult:
        accuracy_days = self._settings.ACCURACY_RETENTION_DAYS if accuracy_days is None else accuracy_days
        usage_days = self._settings.USAGE_RETENTION_DAYS if usage_days is None else usage_days
        cutoff = (today or utc_today()) - timedelta(days=int(usage_days))

        try:
            async with self._pool(UpstreamPersistenceError).acquire() as conn:
                async with conn.transaction():
                    acc = await conn.execute(self._sql(self.SQL_DELETE_ACCURACY), int(accuracy_days))
                    usage = await conn.execute(self._sql(self.SQL_DELETE_USAGE), cutoff)
                    guild_usage = await conn.execute(self._sql(self.SQL_DELETE_GUILD_USAGE), cutoff)
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError("Quota retention cleanup failed") from e

        result = CleanupResult(
            accuracy_logs_deleted=_deleted_count(acc),
            usage_deleted=_deleted_count(usage),
            guild_usage_deleted=_deleted_count(guild_usage),
        )
        logger.info("Quota cleanup: accuracy=%s usage=%s guild_usage=%s",
                    result.accuracy_logs_deleted, result.usage_deleted, result.guild_usage_deleted)
        return result

    async def verify_integrity(self) -> IntegrityReport:
        try:
            async with self._pool(LedgerReadError).acquire() as conn:
                null_rows = await conn.fetch(self._sql(self.SQL_NULL_CAPS))
                tier_rows = await conn.fetch(self._sql(self.SQL_GLOBAL_TIERS))
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Quota integrity check failed") from e

        existing = {r["role_tier"] for r in tier_rows}
        report = IntegrityReport(
            guilds_with_null_caps=[r["guild_id"] for r in null_rows],
            missing_global_tiers=[t.value for t in RoleTier if t.value not in existing],
        )

        if report.guilds_with_null_caps:
            logger.warning("Found %s guilds with NULL quota values", len(report.guilds_with_null_caps))
        if report.missing_global_tiers:
            logger.warning("Missing global role tier quotas for: %s", ", ".join(report.missing_global_tiers))
        logger.info("Quota data integrity check completed")
        return report
