# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/__init__.py
"""
Quota & usage enforcement engine.

- PolicyStore: tier quotas (guild -> global -> defaults), guild caps, exemptions
- UsageLedger: daily counters with the atomic conditional increment
- AccuracyStore / EstimationEngine: self-calibrating usage estimates
- QuotaEnforcer: pre-flight check + authoritative commit
- ResetNotifier: marks for "your quota has reset" messages
"""

from silo_quota.quota.policy import (
    RoleTier,
    UsageType,
    TierQuota,
    GuildCapPolicy,
    GuildExemption,
    UsageCounters,
    GuildQuotaCheck,
    AtomicIncrementResult,
    QuotaCheckResult,
    DenyReason,
    UNLIMITED,
    QuotaEngineError,
    PolicyResolutionError,
    LedgerReadError,
    UpstreamPersistenceError,
)
from silo_quota.quota.policy_store import PolicyStore
from silo_quota.quota.ledger import UsageLedger
from silo_quota.quota.accuracy import AccuracyStore, AccuracyStats
from silo_quota.quota.estimation import EstimationEngine, estimate_amount
from silo_quota.quota.enforcer import QuotaEnforcer
from silo_quota.quota.reset_notifier import ResetNotifier, ResetNotificationMark
from silo_quota.quota.maintenance import QuotaMaintenance

__all__ = [
    "RoleTier",
    "UsageType",
    "TierQuota",
    "GuildCapPolicy",
    "GuildExemption",
    "UsageCounters",
    "GuildQuotaCheck",
    "AtomicIncrementResult",
    "QuotaCheckResult",
    "DenyReason",
    "UNLIMITED",
    "QuotaEngineError",
    "PolicyResolutionError",
    "LedgerReadError",
    "UpstreamPersistenceError",
    "PolicyStore",
    "UsageLedger",
    "AccuracyStore",
    "AccuracyStats",
    "EstimationEngine",
    "estimate_amount",
    "QuotaEnforcer",
    "ResetNotifier",
    "ResetNotificationMark",
    "QuotaMaintenance",
]
