# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the per-address auth attempt limiter.
"""

from pr_inbox.conftest import FakeClock
from pr_inbox.ip_rate_limit import IpRateLimiter


def test_allows_ceiling_then_rejects_until_window_resets():
    """Test that 3 attempts pass, the 4th is rejected, and the window reset allows again."""
    clock = FakeClock(0.0)
    limiter = IpRateLimiter(window_s=300, max_attempts=3, clock=clock)

    assert [limiter.allow("10.0.0.1") for _ in range(4)] == [True, True, True, False]
    clock.advance(120)
    assert limiter.allow("10.0.0.1") is False
    assert limiter.retry_after_s("10.0.0.1") == 180

    clock.advance(180)
    assert limiter.allow("10.0.0.1") is True


def test_addresses_are_independent_and_expired_entries_pruned():
    """Test that one address hitting the limit does not affect another, and old entries go away."""
    clock = FakeClock(0.0)
    limiter = IpRateLimiter(window_s=300, max_attempts=1, clock=clock)

    assert limiter.allow("10.0.0.1") is True
    assert limiter.allow("10.0.0.1") is False
    assert limiter.allow("10.0.0.2") is True
    assert len(limiter) == 2

    clock.advance(301)
    assert limiter.allow("10.0.0.3") is True
    assert len(limiter) == 1


def test_missing_address_is_bucketed_as_unknown():
    """Test that requests without a resolvable address share one bucket."""
    limiter = IpRateLimiter(window_s=300, max_attempts=1, clock=FakeClock())
    assert limiter.allow("") is True
    assert limiter.allow("unknown") is False
