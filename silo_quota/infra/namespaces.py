# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/namespaces.py


class REDIS:
    class QUOTA:
        """
        Read-through cache for resolved quota policy.

        Format: silo:quota:{kind}:{guild_id}[:{role_tier}]
        """
        TIER_POLICY_CACHE = "silo:quota:tier_policy"
        GUILD_CAP_CACHE = "silo:quota:guild_cap"
        EXEMPTION_CACHE = "silo:quota:exemption"


class PG:
    class QUOTA:
        ROLE_TIER_QUOTAS = "role_tier_quotas"
        GUILD_QUOTAS = "guild_quotas"
        USAGE_TRACKING = "usage_tracking"
        GUILD_DAILY_USAGE = "guild_daily_usage"
        ACCURACY_LOG = "quota_accuracy_log"
        RESET_NOTIFICATIONS = "quota_reset_notifications"
