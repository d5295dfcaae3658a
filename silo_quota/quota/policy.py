# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/policy.py

"""
Quota vocabulary: role tiers, usage types, per-tier and per-guild policies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict


class RoleTier(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    TRUSTED = "trusted"
    MEMBER = "member"
    RESTRICTED = "restricted"

    @classmethod
    def parse(cls, value) -> "RoleTier":
        """Unknown tiers resolve to MEMBER."""
        if isinstance(value, RoleTier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEMBER


class UsageType(str, Enum):
    TEXT_TOKENS = "text_tokens"
    IMAGES = "images"
    VOICE_MINUTES = "voice_minutes"

    @property
    def label(self) -> str:
        return _USAGE_LABELS[self]


_USAGE_LABELS = {
    UsageType.TEXT_TOKENS: "text token",
    UsageType.IMAGES: "image generation",
    UsageType.VOICE_MINUTES: "voice minute",
}

UNLIMITED = float("inf")


@dataclass(frozen=True)
class TierQuota:
    """Daily per-user limits for one role tier. 0 = no access."""
    text_tokens: int = 0
    images: int = 0
    voice_minutes: int = 0
    # which fallback level produced this row: "guild" | "global" | "default"
    source: str = "default"

    def __post_init__(self):
        for attr in ("text_tokens", "images", "voice_minutes"):
            val = getattr(self, attr)
            if val is None or int(val) < 0:
                raise ValueError(f"{attr} must be a non-negative integer, got {val}")

    def limit_for(self, usage_type: UsageType) -> int:
        return int(getattr(self, UsageType(usage_type).value))


@dataclass(frozen=True)
class GuildCapPolicy:
    """Guild-wide daily ceiling across all users combined."""
    text_tokens_max: int = 50_000
    images_max: int = 5
    voice_minutes_max: int = 15

    def max_for(self, usage_type: UsageType) -> int:
        return int(getattr(self, f"{UsageType(usage_type).value}_max"))


@dataclass(frozen=True)
class GuildExemption:
    quota_exempt: bool = False
    rate_limit_exempt: bool = False


DEFAULT_TIER_QUOTAS: Dict[RoleTier, TierQuota] = {
    RoleTier.ADMIN: TierQuota(text_tokens=50_000, images=5, voice_minutes=15),
    RoleTier.MODERATOR: TierQuota(text_tokens=20_000, images=3, voice_minutes=10),
    RoleTier.TRUSTED: TierQuota(text_tokens=10_000, images=2, voice_minutes=5),
    RoleTier.MEMBER: TierQuota(text_tokens=5_000, images=1, voice_minutes=0),
    RoleTier.RESTRICTED: TierQuota(text_tokens=0, images=0, voice_minutes=0),
}


def default_tier_quota(tier) -> TierQuota:
    """Last fallback level: the hardcoded table."""
    return DEFAULT_TIER_QUOTAS.get(RoleTier.parse(tier), DEFAULT_TIER_QUOTAS[RoleTier.MEMBER])


# --------- results ---------

@dataclass(frozen=True)
class UsageCounters:
    text_tokens: int = 0
    images: int = 0
    voice_minutes: int = 0

    def used_for(self, usage_type: UsageType) -> int:
        return int(getattr(self, UsageType(usage_type).value))


@dataclass(frozen=True)
class GuildQuotaCheck:
    allowed: bool
    remaining: int
    max: int


@dataclass(frozen=True)
class AtomicIncrementResult:
    success: bool
    new_total: int
    remaining: float


class DenyReason(str, Enum):
    NO_ACCESS = "no_access"
    VOICE_TIER_RESTRICTED = "voice_tier_restricted"
    GUILD_CAP_EXCEEDED = "guild_cap_exceeded"
    USER_DAILY_CAP_EXCEEDED = "user_daily_cap_exceeded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class QuotaCheckResult:
    """
    Pre-flight decision. `remaining` is a display estimate only: the
    authoritative check happens at commit time in the ledger.
    """
    allowed: bool
    remaining: float
    max: float
    reason: Optional[str] = None
    code: Optional[DenyReason] = None
    tier: Optional[RoleTier] = None
    extra: Dict[str, object] = field(default_factory=dict)


# --------- errors ---------

class QuotaEngineError(RuntimeError):
    def __init__(self, message: str, *, code: str, data: dict | None = None):
        super().__init__(message)
        self.code = code
        self.data = data or {}


class PolicyResolutionError(QuotaEngineError):
    """Policy or exemption could not be read. Never treated as unlimited."""
    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message, code="policy_resolution_failed", data=data)


class LedgerReadError(QuotaEngineError):
    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message, code="ledger_read_failed", data=data)


class UpstreamPersistenceError(QuotaEngineError):
    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message, code="upstream_persistence_failed", data=data)
