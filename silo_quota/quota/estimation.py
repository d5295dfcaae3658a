# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# quota/estimation.py
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from silo_quota.config import get_settings
from silo_quota.quota.accuracy import AccuracyStore

logger = logging.getLogger(__name__)


def estimate_amount(
        input_length,
        ratio: float,
        base_amount: int,
        *,
        min_amount: int = 50,
        max_amount: int = 4000,
) -> int:
    """
    ceil(input_length * ratio) + base_amount, clamped to [min_amount, max_amount].
    Non-decreasing in input_length for a fixed ratio/base.
    """
    try:
        x = float(input_length)
    except OverflowError:
        # integers beyond float range
        x = math.inf if input_length > 0 else 0.0
    except (TypeError, ValueError):
        x = 0.0
    if math.isnan(x) or x < 0:
        x = 0.0
    ratio = max(0.0, float(ratio))

    # +inf input saturates at the ceiling unless the ratio is 0
    raw = x * ratio if ratio > 0 else 0.0
    if raw >= max_amount:
        return int(max_amount)
    estimated = math.ceil(raw) + int(base_amount)
    return int(max(min_amount, min(max_amount, estimated)))


@dataclass(frozen=True)
class RatioCache:
    value: float
    fetched_at: float


class EstimationEngine:
    """
    Predicts response usage before the provider reports the real cost.

    The ratio is recalibrated from the trailing accuracy window and held in an
    instance-owned cache entry; nothing is shared between engines.
    """

    def __init__(
            self,
            accuracy: AccuracyStore,
            *,
            default_ratio: Optional[float] = None,
            base_amount: Optional[int] = None,
            min_amount: Optional[int] = None,
            max_amount: Optional[int] = None,
            cache_ttl_sec: Optional[float] = None,
            window_days: Optional[int] = None,
            min_samples: Optional[int] = None,
            clock: Callable[[], float] = time.monotonic,
    ):
        s = get_settings()
        self.accuracy = accuracy
        self.default_ratio = s.ESTIMATE_DEFAULT_RATIO if default_ratio is None else default_ratio
        self.base_amount = s.ESTIMATE_BASE_AMOUNT if base_amount is None else base_amount
        self.min_amount = s.ESTIMATE_MIN_AMOUNT if min_amount is None else min_amount
        self.max_amount = s.ESTIMATE_MAX_AMOUNT if max_amount is None else max_amount
        self.cache_ttl_sec = s.ESTIMATE_CACHE_TTL_SEC if cache_ttl_sec is None else cache_ttl_sec
        self.window_days = s.ESTIMATE_WINDOW_DAYS if window_days is None else window_days
        self.min_samples = s.ESTIMATE_MIN_SAMPLES if min_samples is None else min_samples
        self._clock = clock
        self._ratio_cache: Optional[RatioCache] = None

    def invalidate(self) -> None:
        self._ratio_cache = None

    async def get_ratio(self) -> float:
        now = self._clock()
        cache = self._ratio_cache
        if cache is not None and now - cache.fetched_at < self.cache_ttl_sec:
            return cache.value

        ratio = self.default_ratio
        try:
            stats = await self.accuracy.get_stats(self.window_days)
            if (
                    stats.avg_ratio is not None
                    and stats.sample_count >= self.min_samples
                    and math.isfinite(stats.avg_ratio)
                    and stats.avg_ratio > 0
            ):
                ratio = stats.avg_ratio
                logger.debug("Estimate ratio updated from accuracy data: avg_ratio=%s samples=%s std_dev=%s",
                             stats.avg_ratio, stats.sample_count, stats.std_dev)
        except Exception as e:
            logger.warning("Failed to get accuracy stats for estimate ratio: %s", e)

        self._ratio_cache = RatioCache(value=ratio, fetched_at=now)
        return ratio

    async def estimate_response_amount(self, input_length: int) -> int:
        ratio = await self.get_ratio()
        return estimate_amount(
            input_length, ratio, self.base_amount,
            min_amount=self.min_amount, max_amount=self.max_amount,
        )
