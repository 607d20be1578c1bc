# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the gh invocation boundary and failure classification.

The GhInvoker tests run the current Python interpreter in place of `gh`, so they
exercise real subprocesses without needing the GitHub CLI installed.
"""

import sys

import pytest

from pr_inbox.gh_cli import GH_CLI_STATS, GhInvoker, GhResult, classify_failure
from pr_inbox.types import FailureKind


def _failed(stderr: str = "", stdout: str = "", launch_error=None) -> GhResult:
    return GhResult(
        label="test", args=("api", "user"), ok=False,
        stdout=stdout, stderr=stderr, returncode=1, launch_error=launch_error,
    )


# ============================================================================
# classify_failure() mapping table
# ============================================================================

@pytest.mark.parametrize(
    "stderr,expected",
    [
        ("gh: API rate limit exceeded for user ID 42.", FailureKind.RATE_LIMITED),
        ("You have exceeded a secondary rate limit. Please wait a few minutes", FailureKind.RATE_LIMITED),
        ("HTTP 403: Forbidden (https://api.github.com/search/issues)", FailureKind.RATE_LIMITED),
        ("HTTP 429: Too Many Requests", FailureKind.RATE_LIMITED),
        ("To get started with GitHub CLI, please run:  gh auth login", FailureKind.UNAUTHENTICATED),
        ("You are not logged into any GitHub hosts.", FailureKind.UNAUTHENTICATED),
        ("HTTP 401: Bad credentials (https://api.github.com/user)", FailureKind.UNAUTHENTICATED),
        ("GraphQL: Could not resolve to a Repository", FailureKind.UNKNOWN),
        ("", FailureKind.UNKNOWN),
    ],
)
def test_classify_failure_table(stderr, expected):
    """Test that gh stderr text maps to the expected failure kind."""
    assert classify_failure(_failed(stderr=stderr)) == expected


def test_unauthenticated_wins_over_rate_limit():
    """Test that text matching both tables is classified as unauthenticated."""
    text = "HTTP 403: Must have admin rights; try gh auth login"
    assert classify_failure(_failed(stderr=text)) == FailureKind.UNAUTHENTICATED


def test_launch_error_is_tool_unavailable():
    """Test that a process that never started is tool_unavailable, whatever its text."""
    result = _failed(stderr="rate limit exceeded", launch_error="No such file or directory: 'gh'")
    assert classify_failure(result) == FailureKind.TOOL_UNAVAILABLE


def test_patterns_are_configurable():
    """Test that callers can supply their own trigger strings."""
    result = _failed(stderr="upstream says: slow down please")
    assert classify_failure(result) == FailureKind.UNKNOWN
    assert classify_failure(result, rate_limit_patterns=("slow down",)) == FailureKind.RATE_LIMITED


def test_failure_text_prefers_stderr():
    """Test that failure_text picks the most useful message."""
    assert _failed(stderr=" boom \n", stdout="ignored").failure_text == "boom"
    assert _failed(stdout="only stdout").failure_text == "only stdout"
    assert "status 1" in _failed().failure_text


# ============================================================================
# GhInvoker (real subprocesses)
# ============================================================================

@pytest.mark.asyncio
async def test_run_captures_output_and_records_stats():
    """Test that a successful command is ok and counted under its label."""
    GH_CLI_STATS.reset()
    invoker = GhInvoker(sys.executable)
    result = await invoker.run(["-c", "print('alice')"], label="user")
    assert result.ok is True
    assert result.returncode == 0
    assert result.stdout.strip() == "alice"
    assert GH_CLI_STATS.calls_by_label == {"user": 1}
    assert GH_CLI_STATS.failures_total == 0


@pytest.mark.asyncio
async def test_run_nonzero_exit_is_a_failure_result():
    """Test that a non-zero exit returns ok=False instead of raising."""
    GH_CLI_STATS.reset()
    invoker = GhInvoker(sys.executable)
    code = "import sys; sys.stderr.write('HTTP 401: Bad credentials'); sys.exit(1)"
    result = await invoker.run(["-c", code], label="user")
    assert result.ok is False
    assert result.returncode == 1
    assert classify_failure(result) == FailureKind.UNAUTHENTICATED
    assert GH_CLI_STATS.failures_by_label == {"user": 1}


@pytest.mark.asyncio
async def test_run_missing_binary_is_launch_error():
    """Test that a missing executable yields a launch error result."""
    invoker = GhInvoker("/nonexistent/path/to/gh")
    result = await invoker.run(["api", "user"], label="user")
    assert result.ok is False
    assert result.launch_error
    assert classify_failure(result) == FailureKind.TOOL_UNAVAILABLE


@pytest.mark.asyncio
async def test_run_timeout_kills_the_process():
    """Test that a command exceeding its timeout is killed and reported as timed out."""
    invoker = GhInvoker(sys.executable)
    result = await invoker.run(["-c", "import time; time.sleep(30)"], label="slow", timeout_s=0.3)
    assert result.ok is False
    assert result.timed_out is True
    assert "timed out" in result.failure_text
