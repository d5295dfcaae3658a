# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/accuracy.py

"""
Estimate-vs-actual samples used to tune response estimation.

Table: quota_accuracy_log (append-only)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import asyncpg

from silo_quota.infra.namespaces import PG
from silo_quota.infra.relational.pool import PgComponent, DRIVER_ERRORS
from silo_quota.quota.policy import LedgerReadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccuracyStats:
    avg_ratio: Optional[float]   # mean of actual / input_length
    sample_count: int
    std_dev: Optional[float]


class AccuracyStore(PgComponent):
    TABLE = PG.QUOTA.ACCURACY_LOG

    SQL_INSERT_SAMPLE = """
        INSERT INTO {schema}.quota_accuracy_log
            (guild_id, user_id, input_length, estimated_tokens, actual_tokens)
        VALUES ($1, $2, $3, $4, $5)
    """
    SQL_STATS = """
        SELECT AVG(actual_tokens::NUMERIC / NULLIF(input_length, 0))    AS avg_ratio,
               COUNT(*)                                                 AS sample_count,
               STDDEV(actual_tokens::NUMERIC / NULLIF(input_length, 0)) AS std_dev
        FROM {schema}.quota_accuracy_log
        WHERE created_at > NOW() - make_interval(days => $1)
          AND input_length > 0
          AND actual_tokens > 0
    """

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: Optional[str] = None):
        super().__init__(pg_pool, schema=schema)

    async def log_accuracy(
            self,
            guild_id: str,
            user_id: str,
            input_length: int,
            estimated_amount: int,
            actual_amount: int,
    ) -> None:
        """Telemetry only: failures are logged and never reach the caller."""
        try:
            if not self._pg_pool:
                raise RuntimeError("accuracy store is not initialized")
            async with self._pg_pool.acquire() as conn:
                await conn.execute(
                    self._sql(self.SQL_INSERT_SAMPLE),
                    guild_id, user_id, int(input_length), int(estimated_amount), int(actual_amount),
                )
        except Exception as e:
            logger.warning("Failed to log quota accuracy (guild=%s user=%s): %s", guild_id, user_id, e)

    async def get_stats(self, window_days: int = 7) -> AccuracyStats:
        if not self._pg_pool:
            raise LedgerReadError("Accuracy store is not initialized")
        try:
            async with self._pg_pool.acquire() as conn:
                row = await conn.fetchrow(self._sql(self.SQL_STATS), int(window_days))
        except DRIVER_ERRORS as e:
            raise LedgerReadError("Failed to read accuracy stats",
                                  data={"window_days": window_days}) from e

        if not row:
            return AccuracyStats(avg_ratio=None, sample_count=0, std_dev=None)

        return AccuracyStats(
            avg_ratio=float(row["avg_ratio"]) if row["avg_ratio"] is not None else None,
            sample_count=int(row["sample_count"] or 0),
            std_dev=float(row["std_dev"]) if row["std_dev"] is not None else None,
        )
