# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Configuration for pr-inbox.

Resolution order (later wins):
  1. DEFAULT_* constants below
  2. YAML config file ($PR_INBOX_CONFIG, or --config on the CLI)
  3. PR_INBOX_<FIELD_NAME_UPPER> environment variables (e.g. PR_INBOX_CACHE_TTL_S=60)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

_logger = logging.getLogger(__name__)

ENV_PREFIX = "PR_INBOX_"

#
# Policy constants (single source of truth)
#
DEFAULT_GH_PATH: str = "gh"
# ^ Executable used for every external call. Example: "/usr/local/bin/gh".
DEFAULT_COMMAND_TIMEOUT_S: float = 60.0
# ^ Hard timeout for one `gh` invocation. `gh api notifications --paginate` can take
#   several seconds on busy accounts, so this is generous.
DEFAULT_CACHE_TTL_S: float = 120.0
# ^ How long a successfully aggregated PR list is served from memory.
DEFAULT_BACKOFF_S: float = 300.0
# ^ Cool-down after a rate-limit-classified failure. No gh calls are made meanwhile.
DEFAULT_THROTTLE_MAX_CALLS: int = 25
DEFAULT_THROTTLE_WINDOW_S: float = 5.0
# ^ At most THROTTLE_MAX_CALLS gh calls may *start* within any THROTTLE_WINDOW_S window.
#   Example: one cycle with 100 notification enrichments takes ~20s instead of a burst.
DEFAULT_THROTTLE_STEP_S: float = 0.25
# ^ Longest single sleep while waiting for a throttle slot (keeps shutdown responsive).
DEFAULT_SEARCH_LIMIT: int = 100
DEFAULT_ENRICH_LIMIT: int = 100
# ^ Max notification PRs enriched per cycle with `gh pr view` (one call each).
DEFAULT_AUTH_TIMEOUT_S: float = 10 * 60
DEFAULT_ORPHAN_AGE_S: float = 15 * 60
DEFAULT_CLEANUP_GRACE_S: float = 1.0
# ^ Delay between a terminal auth event and session removal, so slow SSE readers see it.
DEFAULT_KILL_GRACE_S: float = 5.0
# ^ SIGTERM -> SIGKILL escalation delay for explicit session cleanup.
DEFAULT_SWEEP_INTERVAL_S: float = 60.0
DEFAULT_IP_RATE_WINDOW_S: float = 5 * 60
DEFAULT_IP_RATE_MAX: int = 3
# ^ Max auth attempts per client address per IP_RATE_WINDOW_S.
DEFAULT_CIRCLECI_TTL_S: float = 30.0
DEFAULT_SOURCE_BASE_PATH: str = "~/Source"
# ^ Directory holding local clones as <dir>/<repo name>. PR branch worktrees live inside them.
DEFAULT_SOURCE_BASE_PATH: str = "~/Source"
# ^ Directory holding local clones as <dir>/<repo name>; PR branch worktrees live inside them.
DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 3000

# Failure classification tables. These are substrings of gh stderr (case-insensitive);
# upstream wording can change, so they are configuration rather than protocol.
DEFAULT_RATE_LIMIT_PATTERNS: Tuple[str, ...] = (
    "rate limit exceeded",
    "secondary rate limit",
    "HTTP 429",
    "HTTP 403",
)
DEFAULT_UNAUTHENTICATED_PATTERNS: Tuple[str, ...] = (
    "gh auth login",
    "not logged into",
    "authentication required",
    "bad credentials",
    "HTTP 401",
)

DEFAULT_AUTH_LOGIN_ARGS: Tuple[str, ...] = ("auth", "login", "--web")
DEFAULT_AUTH_LOGOUT_ARGS: Tuple[str, ...] = ("auth", "logout", "--hostname", "github.com")


def gh_hosts_file() -> Path:
    """Return the GitHub CLI hosts file.

    Resolution order:
    - GH_CONFIG_DIR/hosts.yml (gh's own override)
    - ~/.config/gh/hosts.yml
    """
    override = os.environ.get("GH_CONFIG_DIR")
    if override:
        return Path(override).expanduser() / "hosts.yml"
    return Path.home() / ".config" / "gh" / "hosts.yml"


@dataclass(frozen=True)
class InboxConfig:
    gh_path: str = DEFAULT_GH_PATH
    command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S
    backoff_s: float = DEFAULT_BACKOFF_S
    throttle_max_calls: int = DEFAULT_THROTTLE_MAX_CALLS
    throttle_window_s: float = DEFAULT_THROTTLE_WINDOW_S
    throttle_step_s: float = DEFAULT_THROTTLE_STEP_S
    throttle_per_category: bool = False
    search_limit: int = DEFAULT_SEARCH_LIMIT
    enrich_limit: int = DEFAULT_ENRICH_LIMIT
    auth_timeout_s: float = DEFAULT_AUTH_TIMEOUT_S
    orphan_age_s: float = DEFAULT_ORPHAN_AGE_S
    cleanup_grace_s: float = DEFAULT_CLEANUP_GRACE_S
    kill_grace_s: float = DEFAULT_KILL_GRACE_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S
    ip_rate_window_s: float = DEFAULT_IP_RATE_WINDOW_S
    ip_rate_max: int = DEFAULT_IP_RATE_MAX
    circleci_ttl_s: float = DEFAULT_CIRCLECI_TTL_S
    source_base_path: str = DEFAULT_SOURCE_BASE_PATH
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    rate_limit_patterns: Tuple[str, ...] = DEFAULT_RATE_LIMIT_PATTERNS
    unauthenticated_patterns: Tuple[str, ...] = DEFAULT_UNAUTHENTICATED_PATTERNS
    auth_login_args: Tuple[str, ...] = DEFAULT_AUTH_LOGIN_ARGS
    auth_logout_args: Tuple[str, ...] = DEFAULT_AUTH_LOGOUT_ARGS
    circleci_token: Optional[str] = field(default=None, repr=False)

    def with_overrides(self, overrides: Mapping[str, Any]) -> "InboxConfig":
        """Return a copy with `overrides` applied (values coerced to the field types)."""
        known = {f.name: f for f in fields(self)}
        coerced: Dict[str, Any] = {}
        for key, raw in overrides.items():
            if key not in known:
                raise ValueError(f"Unknown config key: {key}")
            coerced[key] = _coerce(raw, getattr(self, key), key)
        return replace(self, **coerced)


def _coerce(raw: Any, current: Any, key: str) -> Any:
    if raw is None:
        return None
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, tuple):
        if isinstance(raw, str):
            return tuple(p.strip() for p in raw.split(",") if p.strip())
        if isinstance(raw, (list, tuple)):
            return tuple(str(p) for p in raw)
        raise ValueError(f"Config key {key} expects a list, got {type(raw).__name__}")
    return str(raw)


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at top level")
    return data


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(InboxConfig):
        v = environ.get(ENV_PREFIX + f.name.upper())
        if v is not None and v != "":
            out[f.name] = v
    # Same token variables the CircleCI CLI understands.
    token = environ.get("CIRCLECI_TOKEN") or environ.get("CIRCLE_TOKEN")
    if token and "circleci_token" not in out:
        out["circleci_token"] = token
    source = environ.get("SOURCE_BASE_PATH")
    if source and "source_base_path" not in out:
        out["source_base_path"] = source
    return out


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> InboxConfig:
    """Build the effective config: defaults -> YAML file -> environment."""
    env = os.environ if environ is None else environ
    cfg = InboxConfig()

    if path is None and env.get("PR_INBOX_CONFIG"):
        path = Path(env["PR_INBOX_CONFIG"])
    if path is not None:
        p = Path(path).expanduser()
        _logger.info("Loading config from %s", p)
        cfg = cfg.with_overrides(_read_yaml(p))

    return cfg.with_overrides(_env_overrides(env))
