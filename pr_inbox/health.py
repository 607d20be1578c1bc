# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Health probe and logout helper around the gh CLI."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .config import InboxConfig, gh_hosts_file
from .gh_cli import GhResult

_logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_S = 5.0
LOGOUT_TIMEOUT_S = 10.0


def read_gh_login(hosts_file: Optional[Path] = None, host: str = "github.com") -> Optional[str]:
    """Return the login stored by `gh auth login` for `host`, or None.

    hosts.yml layouts seen in the wild:
      github.com: {user: alice, oauth_token: ...}
      github.com: {users: {alice: {oauth_token: ...}}, user: alice}
    """
    path = hosts_file or gh_hosts_file()
    try:
        if not path.exists():
            return None
        with open(path, "r") as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:  # File read or YAML parse errors
        _logger.warning("Could not read %s: %s", path, e)
        return None
    if not isinstance(config, dict):
        return None
    entry = config.get(host)
    if not isinstance(entry, dict):
        return None
    user = entry.get("user")
    if user:
        return str(user)
    users = entry.get("users")
    if isinstance(users, dict):
        for name in users:
            return str(name)
    return None


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def probe_health(invoker, *, hosts_file: Optional[Path] = None) -> Tuple[int, Dict[str, Any]]:
    """Run `gh --version`. Returns (http_status, payload)."""
    result: GhResult = await invoker.run(["--version"], label="health", timeout_s=HEALTH_TIMEOUT_S)
    if not result.ok:
        payload: Dict[str, Any] = {
            "status": "unhealthy",
            "timestamp": _timestamp(),
            "error": result.launch_error or "GitHub CLI not available",
        }
        if result.stderr.strip():
            payload["stderr"] = result.stderr.strip()
        return 503, payload

    user = read_gh_login(hosts_file)
    return 200, {
        "status": "healthy",
        "timestamp": _timestamp(),
        "github_cli": {
            "installed": True,
            "version": result.stdout.strip(),
            "authenticated": user is not None,
            "user": user,
        },
    }


async def logout_gh(invoker, config: InboxConfig) -> Tuple[int, Dict[str, Any]]:
    """Run `gh auth logout`. A non-zero exit is reported, not raised (already logged out is common)."""
    result: GhResult = await invoker.run(list(config.auth_logout_args), label="logout", timeout_s=LOGOUT_TIMEOUT_S)
    if result.launch_error:
        return 500, {"success": False, "message": "Failed to logout", "error": result.launch_error}
    if result.ok:
        _logger.info("Logged out of GitHub CLI")
        return 200, {"success": True, "message": "Successfully logged out of GitHub CLI"}
    return 200, {
        "success": False,
        "message": "Logout completed with warnings",
        "stderr": result.stderr.strip(),
    }
