# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/ledger.py

"""
Usage Ledger

Per-user and per-guild daily usage counters (one row per UTC day).

Tables:
  usage_tracking     (guild_id, user_id, usage_date) -> *_used, *_requests
  guild_daily_usage  (guild_id, usage_date)          -> total_*

CRITICAL: atomic_increment_usage() is the only concurrency barrier of the quota
engine. It is ONE conditional upsert: the increment is applied only when
current + amount <= limit, and Postgres re-checks the predicate after taking
the row lock. No read-then-write across awaits.

The guild aggregate is maintained in the same transaction; it is never derived
by summing user rows at read time.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import asyncpg

from silo_quota.infra.namespaces import PG
from silo_quota.infra.relational.pool import PgComponent, DRIVER_ERRORS
from silo_quota.quota.policy import (
    UsageType,
    UsageCounters,
    GuildQuotaCheck,
    AtomicIncrementResult,
    UNLIMITED,
    LedgerReadError,
    UpstreamPersistenceError,
)

logger = logging.getLogger(__name__)


def utc_today(now: Optional[datetime] = None) -> date:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()

def next_reset_at(now: Optional[datetime] = None) -> datetime:
    """Next midnight UTC."""
    d = utc_today(now)
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc) + timedelta(days=1)


_REQUEST_COLUMNS = {
    UsageType.TEXT_TOKENS: "text_requests",
    UsageType.IMAGES: "image_requests",
    UsageType.VOICE_MINUTES: "voice_requests",
}


def _check_amount(amount) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"usage amount must be an integer, got {amount!r}")
    if value != amount:
        raise ValueError(f"usage amount must be an integer, got {amount!r}")
    if value < 0:
        raise ValueError(f"usage amount must be non-negative, got {value}")
    return value


class UsageLedger(PgComponent):
    USER_TABLE = PG.QUOTA.USAGE_TRACKING
    GUILD_TABLE = PG.QUOTA.GUILD_DAILY_USAGE

    SQL_USER_USAGE = """
        SELECT COALESCE(text_tokens_used, 0)   AS text_tokens,
               COALESCE(images_used, 0)        AS images,
               COALESCE(voice_minutes_used, 0) AS voice_minutes
        FROM {schema}.usage_tracking
        WHERE guild_id = $1 AND user_id = $2 AND usage_date = $3
    """
    SQL_GUILD_USAGE = """
        SELECT COALESCE(total_text_tokens, 0)   AS text_tokens,
               COALESCE(total_images, 0)        AS images,
               COALESCE(total_voice_minutes, 0) AS voice_minutes
        FROM {schema}.guild_daily_usage
        WHERE guild_id = $1 AND usage_date = $2
    """
    SQL_GUILD_CHECK = """
        SELECT
          (SELECT q.daily_{ut} FROM {schema}.guild_quotas q
            WHERE q.guild_id = $1) AS cap,
          (SELECT g.total_{ut} FROM {schema}.guild_daily_usage g
            WHERE g.guild_id = $1 AND g.usage_date = $2) AS used
    """
    # Conditional upsert: nothing is written unless current + amount <= limit.
    # A missing row counts as 0, so a fresh row is only inserted when amount <= limit.
    SQL_ATOMIC_INCREMENT = """
        INSERT INTO {schema}.usage_tracking AS u
            (guild_id, user_id, usage_date, {ut}_used, {req})
        SELECT $1::text, $2::text, $3::date, $4::integer, 1
        WHERE $4::integer <= $5::integer
        ON CONFLICT (guild_id, user_id, usage_date)
        DO UPDATE SET
            {ut}_used  = u.{ut}_used + EXCLUDED.{ut}_used,
            {req}      = u.{req} + 1,
            updated_at = NOW()
        WHERE u.{ut}_used + EXCLUDED.{ut}_used <= $5::integer
        RETURNING u.{ut}_used AS new_total
    """
    SQL_INCREMENT_UNCONDITIONAL = """
        INSERT INTO {schema}.usage_tracking AS u
            (guild_id, user_id, usage_date, {ut}_used, {req})
        VALUES ($1, $2, $3, $4, 1)
        ON CONFLICT (guild_id, user_id, usage_date)
        DO UPDATE SET
            {ut}_used  = u.{ut}_used + EXCLUDED.{ut}_used,
            {req}      = u.{req} + 1,
            updated_at = NOW()
        RETURNING u.{ut}_used AS new_total
    """
    SQL_USER_COUNTER = """
        SELECT {ut}_used AS current
        FROM {schema}.usage_tracking
        WHERE guild_id = $1 AND user_id = $2 AND usage_date = $3
    """
    SQL_GUILD_INCREMENT = """
        INSERT INTO {schema}.guild_daily_usage AS g
            (guild_id, usage_date, total_{ut})
        VALUES ($1, $2, $3)
        ON CONFLICT (guild_id, usage_date)
        DO UPDATE SET
            total_{ut} = g.total_{ut} + EXCLUDED.total_{ut},
            updated_at = NOW()
    """

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: Optional[str] = None):
        super().__init__(pg_pool, schema=schema)
        self._default_caps = {
            UsageType.TEXT_TOKENS: self._settings.QUOTA_GUILD_TEXT_TOKENS_MAX,
            UsageType.IMAGES: self._settings.QUOTA_GUILD_IMAGES_MAX,
            UsageType.VOICE_MINUTES: self._settings.QUOTA_GUILD_VOICE_MINUTES_MAX,
        }

    def _usage_sql(self, template: str, usage_type: UsageType) -> str:
        return self._sql(template, ut=usage_type.value, req=_REQUEST_COLUMNS[usage_type])

    def _pool(self, error_cls) -> asyncpg.Pool:
        if not self._pg_pool:
            raise error_cls("Usage ledger is not initialized")
        return self._pg_pool

    # ---------------- reads ----------------

    async def get_user_daily_usage(
            self, guild_id: str, user_id: str, *, usage_date: Optional[date] = None
    ) -> Optional[UsageCounters]:
        """Today's counters for a user, or None when nothing was used yet."""
        day = usage_date or utc_today()
        try:
            async with self._pool(LedgerReadError).acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_USER_USAGE), guild_id, user_id, day)
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read user daily usage",
                                  data={"guild_id": guild_id, "user_id": user_id}) from e
        if not row:
            return None
        return UsageCounters(
            text_tokens=int(row["text_tokens"]),
            images=int(row["images"]),
            voice_minutes=int(row["voice_minutes"]),
        )

    async def get_guild_daily_usage(
            self, guild_id: str, *, usage_date: Optional[date] = None
    ) -> Optional[UsageCounters]:
        day = usage_date or utc_today()
        try:
            async with self._pool(LedgerReadError).acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_GUILD_USAGE), guild_id, day)
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read guild daily usage",
                                  data={"guild_id": guild_id}) from e
        if not row:
            return None
        return UsageCounters(
            text_tokens=int(row["text_tokens"]),
            images=int(row["images"]),
            voice_minutes=int(row["voice_minutes"]),
        )

    async def check_guild_quota(
            self,
            guild_id: str,
            usage_type: UsageType,
            amount: int,
            *,
            usage_date: Optional[date] = None,
    ) -> GuildQuotaCheck:
        """Read-only: would current guild usage + amount stay within the guild cap?"""
        usage_type = UsageType(usage_type)
        amount = _check_amount(amount)
        day = usage_date or utc_today()
        try:
            async with self._pool(LedgerReadError).acquire() as conn:
                row = await conn.fetchrow(self._usage_sql(self.SQL_GUILD_CHECK, usage_type), guild_id, day)
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read guild quota",
                                  data={"guild_id": guild_id, "type": usage_type.value}) from e

        cap = row["cap"] if row else None
        quota_limit = self._default_caps[usage_type] if cap is None else int(cap)
        current = int((row["used"] if row else None) or 0)

        return GuildQuotaCheck(
            allowed=current + amount <= quota_limit,
            remaining=max(0, quota_limit - current),
            max=quota_limit,
        )

    # ---------------- writes ----------------

    async def atomic_increment_usage(
            self,
            guild_id: str,
            user_id: str,
            usage_type: UsageType,
            amount: int,
            user_limit: int,
            *,
            usage_date: Optional[date] = None,
    ) -> AtomicIncrementResult:
        """
        Add `amount` only if the user's counter stays within `user_limit`.

        success=False is an expected outcome (limit would be exceeded), not an
        error: the stored value is unchanged and new_total is the current value.
        """
        usage_type = UsageType(usage_type)
        amount = _check_amount(amount)
        user_limit = int(user_limit)
        day = usage_date or utc_today()

        try:
            async with self._pool(UpstreamPersistenceError).acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        self._usage_sql(self.SQL_ATOMIC_INCREMENT, usage_type),
                        guild_id, user_id, day, amount, user_limit,
                    )
                    if row is not None:
                        await conn.execute(
                            self._usage_sql(self.SQL_GUILD_INCREMENT, usage_type),
                            guild_id, day, amount,
                        )
                        new_total = int(row["new_total"])
                        return AtomicIncrementResult(
                            success=True,
                            new_total=new_total,
                            remaining=user_limit - new_total,
                        )

                    current = await conn.fetchval(
                        self._usage_sql(self.SQL_USER_COUNTER, usage_type),
                        guild_id, user_id, day,
                    )
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(
                "Failed to commit usage",
                data={"guild_id": guild_id, "user_id": user_id, "type": usage_type.value, "amount": amount},
            ) from e

        current = int(current or 0)
        logger.info("Atomic increment refused: guild=%s user=%s type=%s amount=%s current=%s limit=%s",
                    guild_id, user_id, usage_type.value, amount, current, user_limit)
        return AtomicIncrementResult(
            success=False,
            new_total=current,
            remaining=max(0, user_limit - current),
        )

    async def _increment_unconditional(
            self, guild_id: str, user_id: str, usage_type: UsageType, amount: int, day: date
    ) -> int:
        try:
            async with self._pool(UpstreamPersistenceError).acquire() as conn:
                async with conn.transaction():
                    new_total = await conn.fetchval(
                        self._usage_sql(self.SQL_INCREMENT_UNCONDITIONAL, usage_type),
                        guild_id, user_id, day, amount,
                    )
                    await conn.execute(
                        self._usage_sql(self.SQL_GUILD_INCREMENT, usage_type),
                        guild_id, day, amount,
                    )
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(
                "Failed to record usage",
                data={"guild_id": guild_id, "user_id": user_id, "type": usage_type.value, "amount": amount},
            ) from e
        return int(new_total or 0)

    async def increment_usage(
            self,
            guild_id: str,
            user_id: str,
            usage_type: UsageType,
            amount: int,
            *,
            usage_date: Optional[date] = None,
    ) -> bool:
        """
        Legacy increment: blind to the user limit.

        The guild cap is read first and the increment issued separately, so two
        callers can both pass the read. Only for call sites that already
        validated the limit; new code should use atomic_increment_usage().
        """
        usage_type = UsageType(usage_type)
        amount = _check_amount(amount)
        day = usage_date or utc_today()

        guild_check = await self.check_guild_quota(guild_id, usage_type, amount, usage_date=day)
        if not guild_check.allowed:
            logger.warning("Legacy increment refused by guild cap: guild=%s type=%s amount=%s remaining=%s",
                           guild_id, usage_type.value, amount, guild_check.remaining)
            return False

        await self._increment_unconditional(guild_id, user_id, usage_type, amount, day)
        return True

    async def record_unmetered(
            self,
            guild_id: str,
            user_id: str,
            usage_type: UsageType,
            amount: int,
            *,
            usage_date: Optional[date] = None,
    ) -> AtomicIncrementResult:
        """Record usage for an exempt guild: no limit, counters still kept."""
        usage_type = UsageType(usage_type)
        amount = _check_amount(amount)
        new_total = await self._increment_unconditional(
            guild_id, user_id, usage_type, amount, usage_date or utc_today()
        )
        return AtomicIncrementResult(success=True, new_total=new_total, remaining=UNLIMITED)
