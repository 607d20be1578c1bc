# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Pull-request inbox backed by the GitHub CLI (pr-inbox).

This package contains:
- the aggregation engine (notifications + searches -> one deduplicated PR list) with
  its cache, request coalescing, call throttle and rate-limit backoff
- the device-code login session manager (`gh auth login --web` subprocesses)
- an aiohttp server exposing both, plus health, CircleCI status and local worktree helpers

Public API is re-exported from:
- `pr_inbox.aggregator` for the engine
- `pr_inbox.auth_sessions` for login sessions
- `pr_inbox.server` for the HTTP application
"""

from .aggregator import NotificationAggregator  # noqa: F401
from .auth_sessions import AuthSession, AuthSessionManager  # noqa: F401
from .config import InboxConfig, load_config  # noqa: F401
from .errors import FetchError  # noqa: F401
from .gh_cli import GhInvoker, GhResult  # noqa: F401
from .models import CurrentView, PullRequestRecord  # noqa: F401
