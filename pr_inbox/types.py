# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Shared enums used by both:
- the gh/aggregation layer (`gh_cli.py`, `aggregator.py`)
- the auth session layer and the HTTP routes (`auth_sessions.py`, `server.py`)

This module MUST NOT import any other pr_inbox module to avoid cycles.
"""

from __future__ import annotations

from enum import Enum


class PRState(str, Enum):
    """Normalized PR lifecycle state (merged PRs are CLOSED with merged=True)."""

    OPEN = "open"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    REVIEW_REQUIRED = "review_required"


class RecordSource(str, Enum):
    """Where a PullRequestRecord came from. NOTIFICATION wins on merge."""

    NOTIFICATION = "notification"
    SEARCH = "search"


class FailureKind(str, Enum):
    """Classification of a failed `gh` invocation."""

    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    TOOL_UNAVAILABLE = "tool_unavailable"
    PARSE_FAILURE = "parse_failure"
    UNKNOWN = "unknown"


class FetchErrorKind(str, Enum):
    """Machine-checkable classification carried by every fetch error payload."""

    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    BACKOFF_ACTIVE = "backoff_active"
    TOOL_UNAVAILABLE = "tool_unavailable"
    PARSE_FAILURE = "parse_failure"
    UNKNOWN = "unknown"


class AuthState(str, Enum):
    STARTING = "starting"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class AuthEventType(str, Enum):
    """Fixed SSE event vocabulary for an auth session stream."""

    START = "start"
    CODE = "code"
    URL = "url"
    STDERR = "stderr"
    SUCCESS = "success"
    ERROR = "error"


class CIStatus(str, Enum):
    """Summarized CI pipeline status for a branch."""

    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"
    ON_HOLD = "on_hold"
    UNKNOWN = "unknown"
