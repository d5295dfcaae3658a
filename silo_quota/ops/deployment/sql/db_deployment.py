# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# ops/deployment/sql/db_deployment.py

import argparse
import os
import re
import sys

from silo_quota.config import get_settings
from silo_quota.infra.relational.psql.psql_base import PostgreSqlDbMgr

QUOTA_COMPONENT = "silo-quota"

SUPPORTED_COMPONENTS = [
    QUOTA_COMPONENT,
]

sql_location = os.path.dirname(__file__)


def safe_schema_name(name: str) -> str:
    """
    Turn an arbitrary string into a safe PostgreSQL schema name:
      - lowercase
      - only letters, digits, and underscores
      - starts with a letter or underscore
      - at most 63 characters
    """
    sanitized = re.sub(r'[^A-Za-z0-9_]', '_', name)
    sanitized = re.sub(r'_+', '_', sanitized).strip('_').lower()
    if not re.match(r'^[a-z_]', sanitized):
        sanitized = '_' + sanitized
    return sanitized[:63] or '_schema'


def sql_file_for(op: str, component: str, app: str = "quota") -> str:
    prefix = "deploy" if op == "deploy" else "drop"
    return os.path.join(sql_location, app, f"{prefix}-{component}.sql")


def run(op, component, schema=None, mgr=None):
    """
    Execute SQL deployment/deletion for a given component.

    Args:
        op: "deploy" or "delete"
        component: Component name (e.g. "silo-quota")
        schema: Target schema; QUOTA_PG_SCHEMA when omitted
    """
    if component not in SUPPORTED_COMPONENTS:
        raise ValueError(f"Unsupported component: {component!r}")
    if op not in ("deploy", "delete"):
        raise ValueError("Please specify --deploy or --delete.")

    mgr = mgr or PostgreSqlDbMgr()
    schema = safe_schema_name(schema or get_settings().QUOTA_PG_SCHEMA)
    substitutions = {"SCHEMA": schema}

    try:
        mgr.execute_sql_file(sql_file_for(op, component), substitutions=substitutions)
    except Exception as e:
        print(f"Error running {op} for {component}: {e}")
        raise

    if op == "deploy":
        print(f"Schema deployed successfully: {schema}")
    else:
        print(f"Schema deleted successfully: {schema}")
    return schema


def main(argv=None):
    parser = argparse.ArgumentParser(description="Database tool for quota schema deployments.")
    parser.add_argument(
        "--component", action="store", choices=SUPPORTED_COMPONENTS, default=QUOTA_COMPONENT,
        help=f"Name of the component to deploy {SUPPORTED_COMPONENTS}."
    )
    parser.add_argument("--deploy", action="store_true", help="Deploy the database schema and indices.")
    parser.add_argument("--delete", action="store_true", help="Delete the quota tables.")
    parser.add_argument("--schema", help="Target schema (default: QUOTA_PG_SCHEMA)")
    args = parser.parse_args(argv)

    if args.deploy:
        op = "deploy"
    elif args.delete:
        op = "delete"
    else:
        print("Please specify --deploy or --delete.")
        parser.print_help()
        return 1

    run(op, args.component, schema=args.schema)
    return 0


if __name__ == "__main__":
    from silo_quota.utils.logging_config import configure_logging
    configure_logging()
    sys.exit(main())
