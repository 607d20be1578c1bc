# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub CLI (`gh`) invocation boundary.

Every external call made by pr-inbox goes through `GhInvoker.run()`:
  - runs one `gh` command to completion (asyncio subprocess, no shell)
  - returns a `GhResult` with stdout/stderr/exit status and an explicit `ok`
  - NEVER raises for a non-zero exit, a timeout, or a rejected launch (missing binary,
    permission denied); those are failure results
  - does NOT retry; retry/backoff policy belongs to the callers

`classify_failure()` maps a failed result to a `FailureKind` using substring tables
from the config (unauthenticated first, then rate-limit). Unmatched text is UNKNOWN.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple

from .config import DEFAULT_RATE_LIMIT_PATTERNS, DEFAULT_UNAUTHENTICATED_PATTERNS
from .types import FailureKind

_logger = logging.getLogger(__name__)


class _GhCliStats:
    """Global singleton for tracking `gh` invocations made by this process."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all statistics (useful for testing)."""
        self.calls_total = 0
        self.calls_by_label = {}  # Dict[str, int]
        self.failures_total = 0
        self.failures_by_label = {}  # Dict[str, int]
        self.time_total_s = 0.0
        self.time_by_label_s = {}  # Dict[str, float]
        self.last_failure = {}  # Dict[str, str] - label/args/stderr of the latest failure

    def record(self, result: "GhResult") -> None:
        label = result.label or "unknown"
        self.calls_total += 1
        self.calls_by_label[label] = int(self.calls_by_label.get(label, 0)) + 1
        self.time_total_s += float(result.duration_s)
        self.time_by_label_s[label] = float(self.time_by_label_s.get(label, 0.0)) + float(result.duration_s)
        if not result.ok:
            self.failures_total += 1
            self.failures_by_label[label] = int(self.failures_by_label.get(label, 0)) + 1
            self.last_failure = {
                "label": label,
                "args": " ".join(result.args),
                "error": result.failure_text[:500],
            }

    def to_dict(self) -> Dict[str, object]:
        return {
            "calls_total": self.calls_total,
            "calls_by_label": dict(self.calls_by_label),
            "failures_total": self.failures_total,
            "failures_by_label": dict(self.failures_by_label),
            "time_total_s": round(self.time_total_s, 3),
        }


# Global instance - all invocations write to this
GH_CLI_STATS = _GhCliStats()


@dataclass(frozen=True)
class GhResult:
    label: str
    args: Tuple[str, ...]
    ok: bool
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    # set when the process could not be started at all
    launch_error: Optional[str] = None
    timed_out: bool = False
    duration_s: float = 0.0

    @property
    def failure_text(self) -> str:
        """Best text to show/classify for a failure."""
        if self.launch_error:
            return self.launch_error
        if self.timed_out:
            return f"gh timed out: {' '.join(self.args)}"
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        if text:
            return text
        return f"gh exited with status {self.returncode}"


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
    low = text.lower()
    return any(p.lower() in low for p in patterns if p)


def classify_failure(
    result: GhResult,
    *,
    rate_limit_patterns: Sequence[str] = DEFAULT_RATE_LIMIT_PATTERNS,
    unauthenticated_patterns: Sequence[str] = DEFAULT_UNAUTHENTICATED_PATTERNS,
) -> FailureKind:
    """Classify a failed gh result.

    Mapping table (first match wins):
      launch error                 -> TOOL_UNAVAILABLE
      unauthenticated_patterns     -> UNAUTHENTICATED  (checked first: a login problem
                                                        must never arm the rate-limit backoff)
      rate_limit_patterns          -> RATE_LIMITED
      anything else                -> UNKNOWN
    """
    if result.launch_error:
        return FailureKind.TOOL_UNAVAILABLE
    text = "\n".join(t for t in (result.stderr, result.stdout) if t)
    if _matches_any(text, unauthenticated_patterns):
        return FailureKind.UNAUTHENTICATED
    if _matches_any(text, rate_limit_patterns):
        return FailureKind.RATE_LIMITED
    return FailureKind.UNKNOWN


class GhInvoker:
    """Runs `gh` commands as asyncio subprocesses."""

    def __init__(self, gh_path: str = "gh", *, default_timeout_s: float = 60.0):
        self.gh_path = str(gh_path)
        self.default_timeout_s = float(default_timeout_s)
        self.logger = logging.getLogger(self.__class__.__name__)

    async def run(self, args: Sequence[str], *, label: str, timeout_s: Optional[float] = None) -> GhResult:
        argv = tuple(str(a) for a in args)
        timeout = self.default_timeout_s if timeout_s is None else float(timeout_s)
        self.logger.debug("GH CALL [%s] gh %s", label, " ".join(argv))
        t0 = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                self.gh_path,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            result = GhResult(
                label=label,
                args=argv,
                ok=False,
                launch_error=f"Failed to launch {self.gh_path}: {e}",
                duration_s=time.monotonic() - t0,
            )
            self.logger.error("GH LAUNCH FAILED [%s] %s", label, result.launch_error)
            GH_CLI_STATS.record(result)
            return result

        timed_out = False
        try:
            out_b, err_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            try:
                proc.kill()
            except ProcessLookupError:
                self.logger.debug("GH [%s] exited before kill", label)
            out_b, err_b = await proc.communicate()

        rc = proc.returncode
        result = GhResult(
            label=label,
            args=argv,
            ok=(not timed_out and rc == 0),
            stdout=(out_b or b"").decode("utf-8", errors="replace"),
            stderr=(err_b or b"").decode("utf-8", errors="replace"),
            returncode=rc,
            timed_out=timed_out,
            duration_s=time.monotonic() - t0,
        )
        GH_CLI_STATS.record(result)
        if result.ok:
            self.logger.debug("GH RESP [%s] rc=0 bytes=%d %.2fs", label, len(result.stdout), result.duration_s)
        else:
            self.logger.warning(
                "GH FAILED [%s] rc=%s timed_out=%s: %s", label, rc, timed_out, result.failure_text[:300]
            )
        return result
