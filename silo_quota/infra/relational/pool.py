# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/relational/pool.py
from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from silo_quota.config import get_settings

logger = logging.getLogger(__name__)

# Anything the driver can raise for an unreachable / failing store
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


async def create_pg_pool(settings=None, **kwargs) -> asyncpg.Pool:
    s = settings or get_settings()
    return await asyncpg.create_pool(
        host=s.PGHOST,
        port=s.PGPORT,
        user=s.PGUSER,
        password=s.PGPASSWORD,
        database=s.PGDATABASE,
        ssl=s.PGSSL,
        server_settings={"TimeZone": "UTC"},
        **kwargs,
    )


class PgComponent:
    """
    Shared pool ownership for the quota stores.

    A pool passed in is borrowed; a pool created in init() is owned and
    closed by close().
    """

    def __init__(self, pg_pool: Optional[asyncpg.Pool] = None, *, schema: Optional[str] = None):
        self._settings = get_settings()
        self._pg_pool: Optional[asyncpg.Pool] = pg_pool
        self._owns_pool = False
        self.schema = schema or self._settings.QUOTA_PG_SCHEMA

    async def init(self):
        if not self._pg_pool:
            self._pg_pool = await create_pg_pool(self._settings)
            self._owns_pool = True
            logger.info("%s connected to Postgres (schema=%s)", type(self).__name__, self.schema)

    async def close(self):
        if self._owns_pool and self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None
            self._owns_pool = False

    def _sql(self, template: str, **kw) -> str:
        return template.format(schema=self.schema, **kw)
