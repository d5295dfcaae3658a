# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# utils/logging_config.py
import logging
import os


def _to_level(name: str, default: int) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default

def configure_logging():
    # --- Root config ---
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("LOG_FORMAT",
                           "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    level = _to_level(log_level_name, logging.INFO)

    logging.basicConfig(level=level, format=log_format, force=True)
    logging.captureWarnings(True)

    # --- Driver loggers ---
    desired_levels = {
        "asyncio": os.getenv("ASYNCIO_LEVEL", "WARNING"),
        "asyncpg": os.getenv("ASYNCPG_LEVEL", "WARNING"),
        "redis": os.getenv("REDIS_LEVEL", "WARNING"),
        # quota engine itself can be made chattier without touching root
        "silo_quota": os.getenv("QUOTA_LOG_LEVEL", log_level_name),
    }

    for name, lvl_name in desired_levels.items():
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(_to_level(lvl_name, level))
