# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/permissions.py
from __future__ import annotations

from typing import Any, Protocol

from silo_quota.quota.policy import RoleTier


class PermissionResolver(Protocol):
    """
    Supplies the role tier of a guild member. The resolution rules (custom
    role assignments, platform permission flags, timeouts) live outside the
    quota engine; `member` is whatever capability object the caller holds.
    """

    async def get_user_role_tier(self, guild_id: str, user_id: str, member: Any) -> RoleTier:
        ...
