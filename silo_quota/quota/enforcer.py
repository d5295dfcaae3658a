# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/enforcer.py

"""
Quota Enforcer

Two-phase enforcement across an external async boundary:

  check_quota()          pre-flight, advisory. Several awaited reads; nothing is
                         held while the metered action (AI call) runs, so two
                         concurrent requests may both be allowed here.
  record_usage_atomic()  commit, authoritative. Delegates to the ledger's
                         conditional increment, which is the only barrier.

If the metered action fails before the commit, nothing is recorded.

Store failures propagate (QuotaEngineError). The engine does not pick
fail-open vs fail-closed; check_quota_fail_closed() is the fail-closed entry
point callers should use.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from silo_quota.config import get_settings
from silo_quota.quota.accuracy import AccuracyStore
from silo_quota.quota.estimation import EstimationEngine
from silo_quota.quota.ledger import UsageLedger, next_reset_at
from silo_quota.quota.permissions import PermissionResolver
from silo_quota.quota.policy import (
    RoleTier,
    UsageType,
    DenyReason,
    QuotaCheckResult,
    AtomicIncrementResult,
    QuotaEngineError,
    UNLIMITED,
)
from silo_quota.quota.policy_store import PolicyStore
from silo_quota.quota.reset_notifier import ResetNotifier

logger = logging.getLogger(__name__)


class QuotaEnforcer:

    def __init__(
            self,
            policies: PolicyStore,
            ledger: UsageLedger,
            permissions: PermissionResolver,
            *,
            accuracy: Optional[AccuracyStore] = None,
            estimator: Optional[EstimationEngine] = None,
            notifier: Optional[ResetNotifier] = None,
            warn_threshold: Optional[float] = None,
    ):
        self.policies = policies
        self.ledger = ledger
        self.permissions = permissions
        self.accuracy = accuracy
        self.estimator = estimator or (EstimationEngine(accuracy) if accuracy else None)
        self.notifier = notifier
        self.warn_threshold = get_settings().QUOTA_WARN_THRESHOLD if warn_threshold is None else warn_threshold

    async def _resolve_limit(self, guild_id: str, user_id: str, member: Any, usage_type: UsageType):
        tier = RoleTier.parse(await self.permissions.get_user_role_tier(guild_id, user_id, member))
        quota = await self.policies.get_role_tier_quota(guild_id, tier)
        return tier, quota.limit_for(usage_type)

    # ---------------- pre-flight ----------------

    async def check_quota(
            self,
            guild_id: str,
            user_id: str,
            member: Any,
            usage_type: UsageType,
            amount: int = 1,
    ) -> QuotaCheckResult:
        usage_type = UsageType(usage_type)

        # 1. exempt guilds skip policy and role resolution entirely
        exemption = await self.policies.get_guild_exemption(guild_id)
        if exemption.quota_exempt:
            logger.debug("Quota check: guild exempt guild=%s user=%s type=%s", guild_id, user_id, usage_type.value)
            return QuotaCheckResult(allowed=True, remaining=UNLIMITED, max=UNLIMITED)

        # 2-3. tier and limit
        tier, user_limit = await self._resolve_limit(guild_id, user_id, member, usage_type)

        if user_limit == 0:
            logger.debug("Quota check: no access guild=%s user=%s tier=%s type=%s",
                         guild_id, user_id, tier.value, usage_type.value)
            if usage_type == UsageType.VOICE_MINUTES:
                return QuotaCheckResult(
                    allowed=False, remaining=0, max=0, tier=tier,
                    code=DenyReason.VOICE_TIER_RESTRICTED,
                    reason="Voice features require Trusted role or higher. Ask an admin for access.",
                )
            return QuotaCheckResult(
                allowed=False, remaining=0, max=0, tier=tier,
                code=DenyReason.NO_ACCESS,
                reason=f"You don't have access to {usage_type.label}s.",
            )

        # 4. guild-wide cap before the per-user check
        guild_check = await self.ledger.check_guild_quota(guild_id, usage_type, amount)
        if not guild_check.allowed:
            logger.warning("Quota check: guild limit reached guild=%s type=%s remaining=%s max=%s",
                           guild_id, usage_type.value, guild_check.remaining, guild_check.max)
            return QuotaCheckResult(
                allowed=False, remaining=guild_check.remaining, max=guild_check.max, tier=tier,
                code=DenyReason.GUILD_CAP_EXCEEDED,
                reason=f"Server has reached its daily {usage_type.label} limit.",
            )

        # 5. per-user daily limit
        usage = await self.ledger.get_user_daily_usage(guild_id, user_id)
        used = usage.used_for(usage_type) if usage else 0
        remaining = max(0, user_limit - used)
        fraction_used = used / user_limit

        logger.debug("Quota check guild=%s user=%s tier=%s type=%s current=%s requested=%s remaining=%s max=%s",
                     guild_id, user_id, tier.value, usage_type.value, used, amount, remaining, user_limit)

        if fraction_used >= self.warn_threshold:
            logger.warning("User quota low guild=%s user=%s type=%s remaining=%s max=%s used=%d%%",
                           guild_id, user_id, usage_type.value, remaining, user_limit, round(fraction_used * 100))

        if used + amount > user_limit:
            logger.info("Quota exceeded guild=%s user=%s type=%s requested=%s current=%s max=%s",
                        guild_id, user_id, usage_type.value, amount, used, user_limit)
            return QuotaCheckResult(
                allowed=False, remaining=remaining, max=user_limit, tier=tier,
                code=DenyReason.USER_DAILY_CAP_EXCEEDED,
                reason=f"You've reached your daily {usage_type.label} limit. Resets at midnight UTC.",
                extra={"reset_at": next_reset_at().isoformat()},
            )

        # display estimate only; the commit decides
        return QuotaCheckResult(allowed=True, remaining=user_limit - used - amount, max=user_limit, tier=tier)

    async def check_quota_fail_closed(
            self,
            guild_id: str,
            user_id: str,
            member: Any,
            usage_type: UsageType,
            amount: int = 1,
    ) -> QuotaCheckResult:
        """check_quota() that denies when the stores cannot answer."""
        try:
            return await self.check_quota(guild_id, user_id, member, usage_type, amount)
        except QuotaEngineError as e:
            logger.error("Quota check failed, denying: guild=%s user=%s type=%s code=%s err=%s",
                         guild_id, user_id, UsageType(usage_type).value, e.code, e)
            return QuotaCheckResult(
                allowed=False, remaining=0, max=0,
                code=DenyReason.UNAVAILABLE,
                reason="Usage limits can't be verified right now. Please try again shortly.",
                extra={"error_code": e.code},
            )

    # ---------------- commit ----------------

    async def record_usage(
            self,
            guild_id: str,
            user_id: str,
            usage_type: UsageType,
            amount: int,
            limit: Optional[int] = None,
    ) -> bool:
        """
        With `limit`: atomic conditional increment.
        Without: legacy limit-blind increment for callers that validated beforehand.
        """
        usage_type = UsageType(usage_type)
        if limit is None:
            return await self.ledger.increment_usage(guild_id, user_id, usage_type, amount)

        result = await self.ledger.atomic_increment_usage(guild_id, user_id, usage_type, amount, limit)
        logger.debug("Usage recorded guild=%s user=%s type=%s amount=%s success=%s new_total=%s remaining=%s",
                     guild_id, user_id, usage_type.value, amount, result.success, result.new_total, result.remaining)
        return result.success

    async def record_usage_atomic(
            self,
            guild_id: str,
            user_id: str,
            member: Any,
            usage_type: UsageType,
            amount: int,
    ) -> AtomicIncrementResult:
        """Self-contained commit: tier and limit are resolved here, never taken from the caller."""
        usage_type = UsageType(usage_type)

        exemption = await self.policies.get_guild_exemption(guild_id)
        if exemption.quota_exempt:
            return await self.ledger.record_unmetered(guild_id, user_id, usage_type, amount)

        tier, user_limit = await self._resolve_limit(guild_id, user_id, member, usage_type)
        result = await self.ledger.atomic_increment_usage(guild_id, user_id, usage_type, amount, user_limit)

        logger.debug("Usage recorded (atomic) guild=%s user=%s tier=%s type=%s amount=%s success=%s "
                     "new_total=%s remaining=%s",
                     guild_id, user_id, tier.value, usage_type.value, amount,
                     result.success, result.new_total, result.remaining)
        return result

    # ---------------- estimation / telemetry ----------------

    async def estimate_response_amount(self, input_length: int) -> int:
        if not self.estimator:
            raise RuntimeError("QuotaEnforcer was built without an estimator")
        return await self.estimator.estimate_response_amount(input_length)

    async def log_accuracy(
            self,
            guild_id: str,
            user_id: str,
            input_length: int,
            estimated: int,
            actual: int,
    ) -> None:
        difference = actual - estimated
        percent_error = round(difference / estimated * 100) if estimated > 0 else 0
        logger.debug("Token usage accuracy guild=%s user=%s input_length=%s estimated=%s actual=%s "
                     "difference=%s error=%s%%",
                     guild_id, user_id, input_length, estimated, actual, difference, percent_error)
        if not self.accuracy:
            return
        await self.accuracy.log_accuracy(guild_id, user_id, input_length, estimated, actual)

    async def mark_for_reset_notification(self, guild_id: str, user_id: str, channel_id: str) -> None:
        if not self.notifier:
            raise RuntimeError("QuotaEnforcer was built without a reset notifier")
        await self.notifier.mark_for_reset_notification(guild_id, user_id, channel_id)

    # ---------------- summaries ----------------

    async def get_remaining_quotas(self, guild_id: str, user_id: str, member: Any) -> Dict[UsageType, Dict[str, float]]:
        exemption = await self.policies.get_guild_exemption(guild_id)
        if exemption.quota_exempt:
            return {ut: {"remaining": UNLIMITED, "max": UNLIMITED} for ut in UsageType}

        tier = RoleTier.parse(await self.permissions.get_user_role_tier(guild_id, user_id, member))
        quota = await self.policies.get_role_tier_quota(guild_id, tier)
        usage = await self.ledger.get_user_daily_usage(guild_id, user_id)

        out: Dict[UsageType, Dict[str, float]] = {}
        for ut in UsageType:
            max_ = quota.limit_for(ut)
            used = usage.used_for(ut) if usage else 0
            out[ut] = {"remaining": max(0, max_ - used), "max": max_}
        return out

    async def get_guild_usage_summary(self, guild_id: str) -> Dict[UsageType, Dict[str, int]]:
        usage = await self.ledger.get_guild_daily_usage(guild_id)
        caps = await self.policies.get_guild_cap_policy(guild_id)
        return {
            ut: {"used": usage.used_for(ut) if usage else 0, "max": caps.max_for(ut)}
            for ut in UsageType
        }
