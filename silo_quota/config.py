# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# silo_quota/config.py
from __future__ import annotations
from functools import lru_cache

from dotenv import load_dotenv, find_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

load_dotenv(find_dotenv())


class Settings(BaseSettings):
    # Postgres
    PGHOST: str = Field(default="localhost", alias="POSTGRES_HOST")
    PGPORT: int = Field(default=5432, alias="POSTGRES_PORT")
    PGDATABASE: str = Field(default="postgres", alias="POSTGRES_DATABASE")
    PGUSER: str = Field(default="postgres", alias="POSTGRES_USER")
    PGPASSWORD: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    PGSSL: bool = Field(default=False, alias="POSTGRES_SSL")

    # Redis (optional read-through cache for policy rows)
    REDIS_URL: str | None = None

    # Quota tables live in a dedicated schema
    QUOTA_PG_SCHEMA: str = "silo_quota"
    QUOTA_POLICY_CACHE_TTL: int = 10

    # Guild-wide daily caps used when a guild has no override row
    QUOTA_GUILD_TEXT_TOKENS_MAX: int = 50_000
    QUOTA_GUILD_IMAGES_MAX: int = 5
    QUOTA_GUILD_VOICE_MINUTES_MAX: int = 15

    # Low-quota warning threshold (fraction of the daily limit already used)
    QUOTA_WARN_THRESHOLD: float = 0.8

    # Response estimation
    ESTIMATE_DEFAULT_RATIO: float = 0.3
    ESTIMATE_BASE_AMOUNT: int = 150
    ESTIMATE_MIN_AMOUNT: int = 50
    ESTIMATE_MAX_AMOUNT: int = 4000
    ESTIMATE_CACHE_TTL_SEC: float = 3600.0
    ESTIMATE_WINDOW_DAYS: int = 7
    ESTIMATE_MIN_SAMPLES: int = 10

    # Retention
    ACCURACY_RETENTION_DAYS: int = 30
    USAGE_RETENTION_DAYS: int = 90


@lru_cache()
def get_settings() -> Settings:
    return Settings()
