# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Fixed cool-down after an upstream rate-limit failure.

Only failures classified as RATE_LIMITED may arm this guard. Authentication failures and
transient errors must not, otherwise a login problem shows up as a 5 minute outage.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional

_logger = logging.getLogger(__name__)


class ErrorBackoffGuard:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._until: Optional[float] = None

    def arm(self, duration_s: float) -> None:
        self._until = self._clock() + float(duration_s)
        _logger.warning("Rate limit backoff armed for %.0fs", float(duration_s))

    def clear(self) -> None:
        if self._until is not None:
            _logger.info("Rate limit backoff cleared")
        self._until = None

    def is_active(self) -> bool:
        return self._until is not None and self._clock() < self._until

    def remaining_seconds(self) -> int:
        if self._until is None:
            return 0
        return max(0, int(math.ceil(self._until - self._clock())))
