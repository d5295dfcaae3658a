# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

"""
Quota & usage enforcement for multi-tenant chat guilds.
"""
