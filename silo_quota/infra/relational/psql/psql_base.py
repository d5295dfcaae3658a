# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/relational/psql/psql_base.py

import logging
from typing import Dict, Optional

import psycopg2

from silo_quota.config import get_settings

logger = logging.getLogger(__name__)


class PostgreSqlDbMgr:
    """Synchronous connection used by the schema deployment tooling."""

    def __init__(self, connection_params: Optional[Dict[str, str]] = None):
        connection_params = connection_params or {}
        s = get_settings()
        self.host = connection_params.get("host") or s.PGHOST
        self.port = connection_params.get("port") or s.PGPORT
        self.database = connection_params.get("database") or s.PGDATABASE
        self.username = connection_params.get("username") or s.PGUSER
        self.password = connection_params.get("password") or s.PGPASSWORD
        self.ssl = s.PGSSL
        self.appname = connection_params.get("application_name") or "silo-quota-deploy"

        opts = [
            "-c TimeZone=UTC",
            "-c datestyle=ISO, YMD",
            f"-c application_name={self.appname}",
        ]
        self._options = " ".join(opts)

    def get_connection(self):
        return psycopg2.connect(
            dbname=self.database,
            user=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            sslmode=("require" if self.ssl else "disable"),
            options=self._options,
        )

    def execute_sql_string(self, sql: str):
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql)
                conn.commit()

    def execute_sql_file(self, file_path, substitutions=None):
        """
        Execute a SQL file, replacing <KEY> placeholders from `substitutions`.
        """
        with open(file_path, "r") as file:
            sql = render_sql(file.read(), substitutions)
        self.execute_sql_string(sql)
        logger.info("Executed SQL file: %s", file_path)


def render_sql(sql: str, substitutions=None) -> str:
    for key, value in (substitutions or {}).items():
        if value is not None:
            sql = sql.replace(f"<{key}>", value)
    return sql
