# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# ops/cli/quota_reset.py
#
# Inspect and maintain quota state in Postgres.
# Works with the tables deployed by ops/deployment/sql/db_deployment.py

import argparse
import asyncio
import sys
from datetime import date
from typing import Optional

from silo_quota.infra.relational.pool import create_pg_pool
from silo_quota.quota.ledger import UsageLedger
from silo_quota.quota.maintenance import QuotaMaintenance
from silo_quota.quota.policy import UsageType
from silo_quota.quota.reset_notifier import ResetNotifier
from silo_quota.utils.logging_config import configure_logging


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


async def show_usage(pool, args) -> int:
    ledger = UsageLedger(pool, schema=args.schema)
    day = _parse_date(args.date)
    if args.user:
        usage = await ledger.get_user_daily_usage(args.guild, args.user, usage_date=day)
        print(f"# user {args.user} in guild {args.guild}")
    else:
        usage = await ledger.get_guild_daily_usage(args.guild, usage_date=day)
        print(f"# guild {args.guild}")
    if usage is None:
        print("no usage recorded.")
        return 0
    for ut in UsageType:
        print(f"{ut.value}: {usage.used_for(ut)}")
    return 0


async def guild_stats(pool, args) -> int:
    stats = await QuotaMaintenance(pool, schema=args.schema).get_guild_quota_stats(
        args.guild, usage_date=_parse_date(args.date)
    )
    print(f"# guild {args.guild}")
    print(f"text_tokens: {stats.text_tokens_used}")
    print(f"images: {stats.images_used}")
    print(f"voice_minutes: {stats.voice_minutes_used}")
    print(f"unique users: {stats.unique_users}")
    print(f"pending reset notifications: {stats.pending_reset_notifications}")
    return 0


async def list_pending(pool, args) -> int:
    marks = await ResetNotifier(pool, schema=args.schema).get_users_needing_notification(limit=args.limit)
    if not marks:
        print("no pending reset notifications.")
        return 0
    for m in marks:
        print(f"{m.guild_id}\t{m.user_id}\t{m.channel_id}\t{m.exhausted_at.isoformat()}")
    print(f"\n{len(marks)} pending.")
    return 0


async def clear_mark(pool, args) -> int:
    if not args.user:
        print("--user is required to clear a reset mark.")
        return 2
    if args.dry_run:
        print(f"DRY-RUN: would clear reset mark for guild={args.guild} user={args.user}")
        return 0
    await ResetNotifier(pool, schema=args.schema).clear_reset_notification(args.guild, args.user)
    print(f"cleared reset mark for guild={args.guild} user={args.user}")
    return 0


async def cleanup(pool, args) -> int:
    if args.dry_run:
        print("DRY-RUN: cleanup skipped.")
        return 0
    result = await QuotaMaintenance(pool, schema=args.schema).cleanup_old_data(
        accuracy_days=args.accuracy_days, usage_days=args.usage_days
    )
    print(f"removed {result.accuracy_logs_deleted} accuracy samples, "
          f"{result.usage_deleted} user usage rows, "
          f"{result.guild_usage_deleted} guild usage rows.")
    return 0


async def verify(pool, args) -> int:
    report = await QuotaMaintenance(pool, schema=args.schema).verify_integrity()
    for g in report.guilds_with_null_caps:
        print(f"guild with NULL caps: {g}")
    for t in report.missing_global_tiers:
        print(f"missing global tier: {t}")
    print("ok" if report.ok else "problems found")
    return 0 if report.ok else 1


COMMANDS = {
    "usage": show_usage,
    "stats": guild_stats,
    "pending": list_pending,
    "clear": clear_mark,
    "cleanup": cleanup,
    "verify": verify,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Inspect and maintain quota records in Postgres.")
    p.add_argument("command", choices=sorted(COMMANDS), help="What to do.")

    # targeting
    p.add_argument("--guild", help="Guild id (usage, stats, clear)")
    p.add_argument("--user", help="User id (usage, clear)")
    p.add_argument("--date", help="Usage date YYYY-MM-DD (default: today UTC)")
    p.add_argument("--schema", help="Quota schema (default: QUOTA_PG_SCHEMA)")

    # behavior
    p.add_argument("--limit", type=int, default=500, help="Max pending marks to list.")
    p.add_argument("--accuracy-days", type=int, help="Accuracy sample retention in days.")
    p.add_argument("--usage-days", type=int, help="Usage row retention in days.")
    p.add_argument("--dry-run", action="store_true", help="Report but do not delete.")
    return p


async def main(argv=None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    if args.command in ("usage", "stats", "clear") and not args.guild:
        p.error(f"--guild is required for '{args.command}'")

    pool = await create_pg_pool()
    try:
        return await COMMANDS[args.command](pool, args)
    finally:
        await pool.close()


if __name__ == "__main__":
    configure_logging()
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)

"""
# today's usage for one user
python -m silo_quota.ops.cli.quota_reset usage --guild 123 --user 456

# marks whose quota day has rolled over
python -m silo_quota.ops.cli.quota_reset pending

# retention cleanup with custom windows
python -m silo_quota.ops.cli.quota_reset cleanup --accuracy-days 14 --usage-days 60
"""
