# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Data model for the aggregated PR view.

URL forms (both derived from each other, so any source can produce the dedup key):
  - canonical identity URL (dedup key):  https://api.github.com/repos/OWNER/REPO/pulls/123
  - display URL:                         https://github.com/OWNER/REPO/pull/123

Notifications report the canonical form (`subject.url`), `gh search prs` reports the
display form (`url`).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .types import PRState, RecordSource, ReviewDecision

_API_PR_URL_RE = re.compile(r"^https://api\.github\.com/repos/([^/\s]+/[^/\s]+)/pulls/(\d+)/?$")
_HTML_PR_URL_RE = re.compile(r"^https://github\.com/([^/\s]+/[^/\s]+)/pull/(\d+)(?:[/?#].*)?$")


def parse_pr_url(url: str) -> Optional[Tuple[str, int]]:
    """Return (owner/repo, number) for either URL form, or None."""
    s = str(url or "").strip()
    m = _API_PR_URL_RE.match(s) or _HTML_PR_URL_RE.match(s)
    if not m:
        return None
    return m.group(1), int(m.group(2))


def canonical_pr_url(url: str) -> Optional[str]:
    parsed = parse_pr_url(url)
    if parsed is None:
        return None
    repo, number = parsed
    return f"https://api.github.com/repos/{repo}/pulls/{number}"


def display_pr_url(url: str) -> Optional[str]:
    parsed = parse_pr_url(url)
    if parsed is None:
        return None
    repo, number = parsed
    return f"https://github.com/{repo}/pull/{number}"


def normalize_state(raw: Any) -> Tuple[PRState, bool]:
    """Map gh state strings (open/closed/merged, any case) to (PRState, merged)."""
    s = str(raw or "").strip().lower()
    if s == "open":
        return PRState.OPEN, False
    if s == "merged":
        return PRState.CLOSED, True
    if s == "closed":
        return PRState.CLOSED, False
    return PRState.UNKNOWN, False


def normalize_review_decision(raw: Any) -> Optional[ReviewDecision]:
    s = str(raw or "").strip().lower()
    if not s:
        return None
    try:
        return ReviewDecision(s)
    except ValueError:
        return None


@dataclass(frozen=True)
class PullRequestRecord:
    """One deduplicated PR observation. Never mutated once merged."""

    title: str
    reason: str
    url: str
    html_url: str
    state: PRState = PRState.UNKNOWN
    repository: str = ""
    number: int = 0
    head_ref: Optional[str] = None
    closed_at: Optional[str] = None
    merged: bool = False
    review_decision: Optional[ReviewDecision] = None
    source: RecordSource = RecordSource.SEARCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "reason": self.reason,
            "url": self.url,
            "html_url": self.html_url,
            "state": self.state.value,
            "repository": self.repository,
            "number": self.number,
            "head_ref": self.head_ref,
            "closed_at": self.closed_at,
            "merged": self.merged,
            "review_decision": self.review_decision.value if self.review_decision else None,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class ThrottleCategoryStats:
    count: int = 0
    throttled: int = 0
    throttled_delay_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "throttled": self.throttled,
            "throttled_delay_s": round(self.throttled_delay_s, 3),
        }


@dataclass(frozen=True)
class CurrentView:
    """What `get_current_view()` returns: the merged list plus serving metadata."""

    records: Tuple[PullRequestRecord, ...]
    fetched_at: float
    from_cache: bool = False
    throttle_metrics: Dict[str, ThrottleCategoryStats] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.records)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "notifications": [r.to_dict() for r in self.records],
            "total": self.total,
            "cached": self.from_cache,
            "throttle": {k: v.to_dict() for k, v in sorted(self.throttle_metrics.items())},
        }


@dataclass(frozen=True)
class CacheEntry:
    """The single current snapshot. Replaced whole, never patched."""

    view: CurrentView
    captured_at: float

    @property
    def total(self) -> int:
        return self.view.total

    def is_fresh(self, *, now: float, ttl_s: float) -> bool:
        return (now - self.captured_at) < float(ttl_s)
