# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Per-client-address limiter for auth attempts (fixed window that starts at the first attempt)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

_logger = logging.getLogger(__name__)


@dataclass
class _Attempts:
    count: int
    reset_at: float


class IpRateLimiter:
    def __init__(
        self,
        *,
        window_s: float = 300.0,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.window_s = float(window_s)
        self.max_attempts = int(max_attempts)
        self._clock = clock
        self._entries: Dict[str, _Attempts] = {}

    def allow(self, address: str) -> bool:
        now = self._clock()
        self._prune(now)
        key = address or "unknown"
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = _Attempts(count=1, reset_at=now + self.window_s)
            return True
        if entry.count >= self.max_attempts:
            _logger.warning("Auth rate limit hit for %s (%d attempts)", key, entry.count)
            return False
        entry.count += 1
        return True

    def retry_after_s(self, address: str) -> int:
        entry = self._entries.get(address or "unknown")
        if entry is None:
            return 0
        return max(0, int(entry.reset_at - self._clock() + 0.999))

    def _prune(self, now: float) -> None:
        for key, entry in list(self._entries.items()):
            if now >= entry.reset_at:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
