# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Sliding-window admission gate for `gh` calls.

Contract: at most `max_calls` admissions per scope have start timestamps inside any
rolling window of `window_s` seconds. This is a timestamp log (exact, auditable), not
a token bucket.

Admission never drops a call and never reorders calls beyond the delay it imposes.
Waiting happens in bounded `step_s` sleeps so task cancellation is noticed promptly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict

from .models import ThrottleCategoryStats

_logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "__global__"


class ThrottleWindow:
    """Ordered call-start timestamps for one scope."""

    def __init__(self, window_s: float):
        self.window_s = float(window_s)
        self.starts: Deque[float] = deque()

    def prune(self, now: float) -> None:
        cutoff = now - self.window_s
        while self.starts and self.starts[0] <= cutoff:
            self.starts.popleft()

    def delay_until_slot(self, now: float) -> float:
        if not self.starts:
            return 0.0
        return max(0.0, self.starts[0] + self.window_s - now)


class CallThrottle:
    def __init__(
        self,
        *,
        max_calls: int,
        window_s: float,
        step_s: float = 0.25,
        per_category: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if int(max_calls) <= 0:
            raise ValueError("max_calls must be positive")
        if float(window_s) <= 0:
            raise ValueError("window_s must be positive")
        self.max_calls = int(max_calls)
        self.window_s = float(window_s)
        self.step_s = max(0.001, float(step_s))
        self.per_category = bool(per_category)
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, ThrottleWindow] = {}
        self._stats: Dict[str, ThrottleCategoryStats] = {}

    def _window(self, category: str) -> ThrottleWindow:
        scope = category if self.per_category else GLOBAL_SCOPE
        w = self._windows.get(scope)
        if w is None:
            w = ThrottleWindow(self.window_s)
            self._windows[scope] = w
        return w

    async def admit(self, category: str) -> float:
        """Wait for a slot and record the call start. Returns seconds spent waiting."""
        category = str(category or "unknown")
        window = self._window(category)
        waited = 0.0
        while True:
            now = self._clock()
            window.prune(now)
            if len(window.starts) < self.max_calls:
                window.starts.append(now)
                self._record(category, waited)
                return waited
            delay = window.delay_until_slot(now)
            if waited == 0.0:
                _logger.debug("Throttling [%s]: %d calls in last %.1fs, waiting %.2fs",
                              category, len(window.starts), self.window_s, delay)
            step = min(max(delay, 0.001), self.step_s)
            t0 = self._clock()
            await self._sleep(step)
            waited += max(0.0, self._clock() - t0)

    def _record(self, category: str, waited: float) -> None:
        prev = self._stats.get(category, ThrottleCategoryStats())
        self._stats[category] = ThrottleCategoryStats(
            count=prev.count + 1,
            throttled=prev.throttled + (1 if waited > 0 else 0),
            throttled_delay_s=prev.throttled_delay_s + waited,
        )

    def metrics(self) -> Dict[str, ThrottleCategoryStats]:
        """Snapshot of per-category metrics (immutable values)."""
        return dict(self._stats)

    def reset_metrics(self) -> None:
        self._stats = {}
