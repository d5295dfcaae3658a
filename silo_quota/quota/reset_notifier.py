# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/reset_notifier.py

"""
Marks users whose quota ran out so an external scheduler can tell them when
it resets. One active mark per (guild_id, user_id).

Table: quota_reset_notifications
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

import asyncpg

from silo_quota.infra.namespaces import PG
from silo_quota.infra.relational.pool import PgComponent, DRIVER_ERRORS
from silo_quota.quota.ledger import utc_today
from silo_quota.quota.policy import LedgerReadError, UpstreamPersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResetNotificationMark:
    guild_id: str
    user_id: str
    channel_id: str
    exhausted_at: datetime


class ResetNotifier(PgComponent):
    TABLE = PG.QUOTA.RESET_NOTIFICATIONS

    SQL_MARK = """
        INSERT INTO {schema}.quota_reset_notifications (guild_id, user_id, channel_id, exhausted_at)
        VALUES ($1, $2, $3, NOW())
        ON CONFLICT (guild_id, user_id) DO UPDATE SET
            channel_id   = EXCLUDED.channel_id,
            exhausted_at = NOW()
    """
    # a mark is due once the UTC day it was created in has rolled over
    SQL_DUE = """
        SELECT guild_id, user_id, channel_id, exhausted_at
        FROM {schema}.quota_reset_notifications
        WHERE (exhausted_at AT TIME ZONE 'UTC')::date < $1
        ORDER BY exhausted_at
        LIMIT $2
    """
    SQL_CLEAR = """
        DELETE FROM {schema}.quota_reset_notifications
        WHERE guild_id = $1 AND user_id = $2
    """
    SQL_COUNT = """
        SELECT COUNT(*) FROM {schema}.quota_reset_notifications
        WHERE guild_id = $1
    """

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: Optional[str] = None):
        super().__init__(pg_pool, schema=schema)

    async def mark_for_reset_notification(self, guild_id: str, user_id: str, channel_id: str) -> None:
        """Idempotent: an existing mark gets the new channel and a fresh exhausted_at."""
        if not self._pg_pool:
            raise UpstreamPersistenceError("Reset notifier is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                await conn.execute(self._sql(self.SQL_MARK), guild_id, user_id, channel_id)
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(
                "Failed to mark user for reset notification",
                data={"guild_id": guild_id, "user_id": user_id},
            ) from e
        logger.debug("User marked for reset notification: guild=%s user=%s channel=%s",
                     guild_id, user_id, channel_id)

    async def get_users_needing_notification(
            self, *, today: Optional[date] = None, limit: int = 500
    ) -> List[ResetNotificationMark]:
        if not self._pg_pool:
            raise LedgerReadError("Reset notifier is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                rows = await conn.fetch(self._sql(self.SQL_DUE), today or utc_today(), int(limit))
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read pending reset notifications") from e

        return [
            ResetNotificationMark(
                guild_id=r["guild_id"],
                user_id=r["user_id"],
                channel_id=r["channel_id"],
                exhausted_at=r["exhausted_at"],
            )
            for r in rows
        ]

    async def clear_reset_notification(self, guild_id: str, user_id: str) -> None:
        if not self._pg_pool:
            raise UpstreamPersistenceError("Reset notifier is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                await conn.execute(self._sql(self.SQL_CLEAR), guild_id, user_id)
        except DRIVER_ERRORS as e:
            raise UpstreamPersistenceError(
                "Failed to clear reset notification",
                data={"guild_id": guild_id, "user_id": user_id},
            ) from e

    async def count_pending(self, guild_id: str) -> int:
        if not self._pg_pool:
            raise LedgerReadError("Reset notifier is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                n = await conn.fetchval(self._sql(self.SQL_COUNT), guild_id)
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to count reset notifications",
                                  data={"guild_id": guild_id}) from e
        return int(n or 0)
