# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

"""
In-memory stand-ins for the asyncpg pool and Redis used by the quota stores.

FakeDb answers exactly the statements the stores issue: every SQL template
declared on the store classes is rendered the way the store renders it and
mapped to a handler. Each statement yields to the event loop once, then runs
its handler without awaiting, the same way Postgres applies one statement
under a row lock. Unknown SQL fails the test.
"""

import asyncio
import fnmatch
import statistics
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from silo_quota.quota.accuracy import AccuracyStore
from silo_quota.quota.ledger import UsageLedger, _REQUEST_COLUMNS
from silo_quota.quota.maintenance import QuotaMaintenance
from silo_quota.quota.policy import RoleTier, UsageType
from silo_quota.quota.policy_store import PolicyStore
from silo_quota.quota.reset_notifier import ResetNotifier

SCHEMA = "silo_quota"

_USER_COLS = ("text_tokens_used", "images_used", "voice_minutes_used",
              "text_requests", "image_requests", "voice_requests")
_GUILD_COLS = ("total_text_tokens", "total_images", "total_voice_minutes")
_CAP_COLS = ("daily_text_tokens", "daily_images", "daily_voice_minutes")


def render(template: str, usage_type: UsageType = UsageType.TEXT_TOKENS, schema: str = SCHEMA) -> str:
    return template.format(schema=schema, ut=usage_type.value, req=_REQUEST_COLUMNS[usage_type])


class FakeDb:
    def __init__(self, schema: str = SCHEMA):
        self.schema = schema
        self.now = datetime.now(timezone.utc)
        self.broken = False

        self.tiers = {}          # (guild_id | None, tier) -> {text_tokens, images, voice_minutes}
        self.guild_quotas = {}   # guild_id -> {daily_*, quota_exempt, rate_limit_exempt}
        self.usage = {}          # (guild_id, user_id, date) -> {*_used, *_requests}
        self.guild_usage = {}    # (guild_id, date) -> {total_*}
        self.accuracy = []       # [{guild_id, user_id, input_length, estimated_tokens, actual_tokens, created_at}]
        self.marks = {}          # (guild_id, user_id) -> {channel_id, exhausted_at}

        self.calls = []          # statement names in execution order
        self._handlers = {}
        self._register_all()

    # ---------------- seeding ----------------

    def seed_tier(self, guild_id, tier, text_tokens, images, voice_minutes):
        self.tiers[(guild_id, RoleTier(tier).value)] = {
            "text_tokens": text_tokens, "images": images, "voice_minutes": voice_minutes,
        }

    def seed_guild(self, guild_id, *, text_tokens=None, images=None, voice_minutes=None,
                   quota_exempt=False, rate_limit_exempt=False):
        self.guild_quotas[guild_id] = {
            "daily_text_tokens": text_tokens,
            "daily_images": images,
            "daily_voice_minutes": voice_minutes,
            "quota_exempt": quota_exempt,
            "rate_limit_exempt": rate_limit_exempt,
        }

    def seed_usage(self, guild_id, user_id, day, **used):
        row = self._user_row(guild_id, user_id, day)
        for ut, amount in used.items():
            row[f"{ut}_used"] = amount

    def seed_guild_usage(self, guild_id, day, **totals):
        row = self._guild_row(guild_id, day)
        for ut, amount in totals.items():
            row[f"total_{ut}"] = amount

    def user_total(self, guild_id, user_id, day, usage_type: UsageType) -> int:
        row = self.usage.get((guild_id, user_id, day))
        return row[f"{UsageType(usage_type).value}_used"] if row else 0

    def guild_total(self, guild_id, day, usage_type: UsageType) -> int:
        row = self.guild_usage.get((guild_id, day))
        return row[f"total_{UsageType(usage_type).value}"] if row else 0

    def _user_row(self, guild_id, user_id, day):
        return self.usage.setdefault((guild_id, user_id, day), {c: 0 for c in _USER_COLS})

    def _guild_row(self, guild_id, day):
        return self.guild_usage.setdefault((guild_id, day), {c: 0 for c in _GUILD_COLS})

    # ---------------- dispatch ----------------

    def _add(self, name, template, tag, fn, usage_type=None):
        sql = render(template, usage_type or UsageType.TEXT_TOKENS, self.schema)
        self._handlers[sql] = (name, tag, fn)

    def _register_all(self):
        P, L, A, R, M = PolicyStore, UsageLedger, AccuracyStore, ResetNotifier, QuotaMaintenance

        self._add("SQL_GUILD_TIER_ROW", P.SQL_GUILD_TIER_ROW, "SELECT", self._guild_tier_row)
        self._add("SQL_GLOBAL_TIER_ROW", P.SQL_GLOBAL_TIER_ROW, "SELECT", self._global_tier_row)
        self._add("SQL_GUILD_CAP_ROW", P.SQL_GUILD_CAP_ROW, "SELECT", self._guild_cap_row)
        self._add("SQL_EXEMPTION_ROW", P.SQL_EXEMPTION_ROW, "SELECT", self._exemption_row)
        self._add("SQL_UPSERT_GUILD_TIER", P.SQL_UPSERT_GUILD_TIER, "INSERT 0", self._upsert_guild_tier)
        self._add("SQL_UPSERT_GLOBAL_TIER", P.SQL_UPSERT_GLOBAL_TIER, "INSERT 0", self._upsert_global_tier)
        self._add("SQL_DELETE_GUILD_TIER", P.SQL_DELETE_GUILD_TIER, "DELETE", self._delete_guild_tier)
        self._add("SQL_UPSERT_GUILD_CAP", P.SQL_UPSERT_GUILD_CAP, "INSERT 0", self._upsert_guild_cap)
        self._add("SQL_UPSERT_EXEMPTION", P.SQL_UPSERT_EXEMPTION, "INSERT 0", self._upsert_exemption)

        self._add("SQL_USER_USAGE", L.SQL_USER_USAGE, "SELECT", self._user_usage)
        self._add("SQL_GUILD_USAGE", L.SQL_GUILD_USAGE, "SELECT", self._guild_usage_row)
        for ut in UsageType:
            self._add("SQL_GUILD_CHECK", L.SQL_GUILD_CHECK, "SELECT", self._guild_check(ut), ut)
            self._add("SQL_ATOMIC_INCREMENT", L.SQL_ATOMIC_INCREMENT, "INSERT 0", self._atomic_increment(ut), ut)
            self._add("SQL_INCREMENT_UNCONDITIONAL", L.SQL_INCREMENT_UNCONDITIONAL, "INSERT 0",
                      self._increment_unconditional(ut), ut)
            self._add("SQL_USER_COUNTER", L.SQL_USER_COUNTER, "SELECT", self._user_counter(ut), ut)
            self._add("SQL_GUILD_INCREMENT", L.SQL_GUILD_INCREMENT, "INSERT 0", self._guild_increment(ut), ut)

        self._add("SQL_INSERT_SAMPLE", A.SQL_INSERT_SAMPLE, "INSERT 0", self._insert_sample)
        self._add("SQL_STATS", A.SQL_STATS, "SELECT", self._accuracy_stats)

        self._add("SQL_MARK", R.SQL_MARK, "INSERT 0", self._mark)
        self._add("SQL_DUE", R.SQL_DUE, "SELECT", self._due)
        self._add("SQL_CLEAR", R.SQL_CLEAR, "DELETE", self._clear)
        self._add("SQL_COUNT", R.SQL_COUNT, "SELECT", self._count)

        self._add("SQL_GUILD_STATS", M.SQL_GUILD_STATS, "SELECT", self._guild_stats)
        self._add("SQL_DELETE_ACCURACY", M.SQL_DELETE_ACCURACY, "DELETE", self._delete_accuracy)
        self._add("SQL_DELETE_USAGE", M.SQL_DELETE_USAGE, "DELETE", self._delete_usage)
        self._add("SQL_DELETE_GUILD_USAGE", M.SQL_DELETE_GUILD_USAGE, "DELETE", self._delete_guild_usage)
        self._add("SQL_NULL_CAPS", M.SQL_NULL_CAPS, "SELECT", self._null_caps)
        self._add("SQL_GLOBAL_TIERS", M.SQL_GLOBAL_TIERS, "SELECT", self._global_tiers)

    async def run(self, sql, args):
        await asyncio.sleep(0)
        if self.broken:
            raise ConnectionRefusedError("fake postgres is down")
        try:
            name, tag, fn = self._handlers[sql]
        except KeyError:
            raise AssertionError(f"unexpected SQL:\n{sql}")
        self.calls.append(name)
        return tag, fn(*args)

    # ---------------- policy ----------------

    def _guild_tier_row(self, guild_id, tier):
        row = self.tiers.get((guild_id, tier))
        return [dict(row)] if row else []

    def _global_tier_row(self, tier):
        row = self.tiers.get((None, tier))
        return [dict(row)] if row else []

    def _guild_cap_row(self, guild_id):
        row = self.guild_quotas.get(guild_id)
        return [{c: row[c] for c in _CAP_COLS}] if row else []

    def _exemption_row(self, guild_id):
        row = self.guild_quotas.get(guild_id)
        return [{"quota_exempt": row["quota_exempt"], "rate_limit_exempt": row["rate_limit_exempt"]}] if row else []

    def _upsert_guild_tier(self, guild_id, tier, t, i, v):
        self.seed_tier(guild_id, tier, t, i, v)
        return [dict(self.tiers[(guild_id, tier)])]

    def _upsert_global_tier(self, tier, t, i, v):
        self.seed_tier(None, tier, t, i, v)
        return [dict(self.tiers[(None, tier)])]

    def _delete_guild_tier(self, guild_id, tier):
        row = self.tiers.pop((guild_id, tier), None)
        return [row] if row else []

    def _upsert_guild_cap(self, guild_id, t, i, v):
        row = self.guild_quotas.get(guild_id)
        if row is None:
            self.seed_guild(guild_id, text_tokens=t, images=i, voice_minutes=v)
        else:
            for col, val in zip(_CAP_COLS, (t, i, v)):
                if val is not None:
                    row[col] = val
        return [{c: self.guild_quotas[guild_id][c] for c in _CAP_COLS}]

    def _upsert_exemption(self, guild_id, quota_exempt, rate_limit_exempt):
        row = self.guild_quotas.get(guild_id)
        if row is None:
            self.seed_guild(guild_id, quota_exempt=bool(quota_exempt), rate_limit_exempt=bool(rate_limit_exempt))
        else:
            if quota_exempt is not None:
                row["quota_exempt"] = quota_exempt
            if rate_limit_exempt is not None:
                row["rate_limit_exempt"] = rate_limit_exempt
        row = self.guild_quotas[guild_id]
        return [{"quota_exempt": row["quota_exempt"], "rate_limit_exempt": row["rate_limit_exempt"]}]

    # ---------------- ledger ----------------

    def _user_usage(self, guild_id, user_id, day):
        row = self.usage.get((guild_id, user_id, day))
        if not row:
            return []
        return [{"text_tokens": row["text_tokens_used"],
                 "images": row["images_used"],
                 "voice_minutes": row["voice_minutes_used"]}]

    def _guild_usage_row(self, guild_id, day):
        row = self.guild_usage.get((guild_id, day))
        if not row:
            return []
        return [{"text_tokens": row["total_text_tokens"],
                 "images": row["total_images"],
                 "voice_minutes": row["total_voice_minutes"]}]

    def _guild_check(self, ut):
        def handler(guild_id, day):
            caps = self.guild_quotas.get(guild_id)
            usage = self.guild_usage.get((guild_id, day))
            return [{
                "cap": caps[f"daily_{ut.value}"] if caps else None,
                "used": usage[f"total_{ut.value}"] if usage else None,
            }]
        return handler

    def _atomic_increment(self, ut):
        col, req = f"{ut.value}_used", _REQUEST_COLUMNS[ut]

        def handler(guild_id, user_id, day, amount, limit):
            key = (guild_id, user_id, day)
            row = self.usage.get(key)
            if row is None:
                if amount > limit:
                    return []
                row = self._user_row(guild_id, user_id, day)
            elif row[col] + amount > limit:
                return []
            row[col] += amount
            row[req] += 1
            return [{"new_total": row[col]}]
        return handler

    def _increment_unconditional(self, ut):
        col, req = f"{ut.value}_used", _REQUEST_COLUMNS[ut]

        def handler(guild_id, user_id, day, amount):
            row = self._user_row(guild_id, user_id, day)
            row[col] += amount
            row[req] += 1
            return [{"new_total": row[col]}]
        return handler

    def _user_counter(self, ut):
        def handler(guild_id, user_id, day):
            row = self.usage.get((guild_id, user_id, day))
            return [{"current": row[f"{ut.value}_used"]}] if row else []
        return handler

    def _guild_increment(self, ut):
        def handler(guild_id, day, amount):
            row = self._guild_row(guild_id, day)
            row[f"total_{ut.value}"] += amount
            return [row]
        return handler

    # ---------------- accuracy ----------------

    def _insert_sample(self, guild_id, user_id, input_length, estimated, actual):
        self.accuracy.append({
            "guild_id": guild_id, "user_id": user_id, "input_length": input_length,
            "estimated_tokens": estimated, "actual_tokens": actual, "created_at": self.now,
        })
        return [{}]

    def _accuracy_stats(self, days):
        since = self.now - timedelta(days=days)
        ratios = [
            Decimal(s["actual_tokens"]) / Decimal(s["input_length"])
            for s in self.accuracy
            if s["created_at"] > since and s["input_length"] > 0 and s["actual_tokens"] > 0
        ]
        return [{
            "avg_ratio": sum(ratios) / len(ratios) if ratios else None,
            "sample_count": len(ratios),
            "std_dev": statistics.stdev(ratios) if len(ratios) > 1 else None,
        }]

    # ---------------- reset marks ----------------

    def _mark(self, guild_id, user_id, channel_id):
        self.marks[(guild_id, user_id)] = {"channel_id": channel_id, "exhausted_at": self.now}
        return [{}]

    def _due(self, today, limit):
        due = [
            {"guild_id": g, "user_id": u, **m}
            for (g, u), m in self.marks.items()
            if m["exhausted_at"].astimezone(timezone.utc).date() < today
        ]
        due.sort(key=lambda r: r["exhausted_at"])
        return due[:limit]

    def _clear(self, guild_id, user_id):
        row = self.marks.pop((guild_id, user_id), None)
        return [row] if row else []

    def _count(self, guild_id):
        return [{"count": sum(1 for (g, _) in self.marks if g == guild_id)}]

    # ---------------- maintenance ----------------

    def _guild_stats(self, guild_id, day):
        rows = [r for (g, _, d), r in self.usage.items() if g == guild_id and d == day]
        return [{
            "text_tokens_used": sum(r["text_tokens_used"] for r in rows),
            "images_used": sum(r["images_used"] for r in rows),
            "voice_minutes_used": sum(r["voice_minutes_used"] for r in rows),
            "unique_users": len({u for (g, u, d) in self.usage if g == guild_id and d == day}),
            "pending_reset_notifications": self._count(guild_id)[0]["count"],
        }]

    def _delete_accuracy(self, days):
        cutoff = self.now - timedelta(days=days)
        gone = [s for s in self.accuracy if s["created_at"] < cutoff]
        self.accuracy = [s for s in self.accuracy if s["created_at"] >= cutoff]
        return gone

    def _delete_usage(self, cutoff):
        gone = [k for k in self.usage if k[2] < cutoff]
        for k in gone:
            del self.usage[k]
        return gone

    def _delete_guild_usage(self, cutoff):
        gone = [k for k in self.guild_usage if k[1] < cutoff]
        for k in gone:
            del self.guild_usage[k]
        return gone

    def _null_caps(self):
        return [
            {"guild_id": g}
            for g, row in sorted(self.guild_quotas.items())
            if any(row[c] is None for c in _CAP_COLS)
        ]

    def _global_tiers(self):
        return [{"role_tier": t} for (g, t) in self.tiers if g is None]


class FakeConn:
    def __init__(self, db: FakeDb):
        self.db = db

    async def fetchrow(self, sql, *args):
        _, rows = await self.db.run(sql, args)
        return rows[0] if rows else None

    async def fetchval(self, sql, *args):
        _, rows = await self.db.run(sql, args)
        return next(iter(rows[0].values())) if rows else None

    async def fetch(self, sql, *args):
        _, rows = await self.db.run(sql, args)
        return list(rows)

    async def execute(self, sql, *args):
        tag, rows = await self.db.run(sql, args)
        return f"{tag} {len(rows)}"

    @asynccontextmanager
    async def transaction(self):
        yield self


class FakePool:
    def __init__(self, db: FakeDb):
        self.db = db
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        await asyncio.sleep(0)
        yield FakeConn(self.db)

    async def close(self):
        self.closed = True


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.broken = False
        self.setex_calls = 0

    def _check(self):
        if self.broken:
            raise ConnectionError("fake redis is down")

    async def get(self, key):
        self._check()
        val = self.store.get(key)
        return val.encode() if isinstance(val, str) else val

    async def setex(self, key, ttl, value):
        self._check()
        self.setex_calls += 1
        self.store[key] = value

    async def delete(self, *keys):
        self._check()
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def scan_iter(self, match=None, count=None):
        self._check()
        for k in list(self.store):
            if match is None or fnmatch.fnmatchcase(k, match):
                yield k.encode()

    async def close(self):
        pass


class FakePermissions:
    """PermissionResolver with a fixed user -> tier table."""

    def __init__(self, tiers=None, default=RoleTier.MEMBER):
        self.tiers = dict(tiers or {})
        self.default = default
        self.calls = 0

    async def get_user_role_tier(self, guild_id, user_id, member):
        self.calls += 1
        return self.tiers.get(user_id, self.default)
