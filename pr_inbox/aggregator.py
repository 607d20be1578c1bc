# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""PR notification aggregator.

One cycle ("fetch") does:
  1. gh api user --jq .login                                  (identity; fatal on failure)
  2. concurrently, each call admitted by CallThrottle:
       gh api notifications --paginate --jq <PullRequest filter>   -> JSON lines
         + per item (first enrich_limit): gh pr view <html_url> --json ...
       gh search prs author:<login>            --json ...
       gh search prs review-requested:<login>  --json ...
       gh search prs reviewed-by:<login>       --json ...
       gh search prs commenter:<login>         --json ...
  3. merge by canonical URL: notification records first, then search records only for
     keys not already present (keyed by source class, never by arrival order)

Serving policy (get_current_view):
  fresh cache -> cached view; backoff active -> BackoffActiveError (no gh calls);
  cycle in flight -> share its outcome; else run a cycle as the owner.

Partial-failure semantics:
  - one unparsable item: logged, skipped
  - one failed category: contributes zero records
  - any call classified RATE_LIMITED: the cycle still merges what it has, but fails with
    UpstreamRateLimitedError (partial view attached), arms the backoff and leaves the
    cache untouched
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .backoff import ErrorBackoffGuard
from .coalesce import RequestCoalescer
from .config import InboxConfig
from .errors import (
    BackoffActiveError,
    FetchError,
    ToolUnavailableError,
    UnauthenticatedError,
    UpstreamRateLimitedError,
)
from .gh_cli import GhResult, classify_failure
from .models import (
    CacheEntry,
    CurrentView,
    PullRequestRecord,
    canonical_pr_url,
    display_pr_url,
    normalize_review_decision,
    normalize_state,
    parse_pr_url,
)
from .throttle import CallThrottle
from .types import FailureKind, FetchErrorKind, PRState, RecordSource

_logger = logging.getLogger(__name__)

NOTIFICATIONS_JQ = (
    '.[] | select(.subject.type == "PullRequest") '
    "| {title: .subject.title, reason: .reason, url: .subject.url}"
)
SEARCH_JSON_FIELDS = "title,url,state,repository,number,closedAt"
ENRICH_JSON_FIELDS = "number,state,url,headRefName,closedAt,mergedAt,reviewDecision"

# (reason label, search qualifier); order is the overlay order for search records.
SEARCH_CATEGORIES: Tuple[Tuple[str, str], ...] = (
    ("author", "author"),
    ("review_requested", "review-requested"),
    ("reviewed", "reviewed-by"),
    ("commenter", "commenter"),
)


class Invoker(Protocol):
    async def run(self, args: Sequence[str], *, label: str, timeout_s: Optional[float] = None) -> GhResult:
        ...


@dataclass
class _CycleState:
    """Failures observed during one cycle (all categories)."""

    failures: List[Tuple[str, FailureKind, str]] = field(default_factory=list)

    def add(self, label: str, kind: FailureKind, text: str) -> None:
        self.failures.append((label, kind, text))

    def first(self, kind: FailureKind) -> Optional[Tuple[str, FailureKind, str]]:
        for f in self.failures:
            if f[1] == kind:
                return f
        return None


# ======================================================================================
# Parsing (pure)
# ======================================================================================

def parse_notification_lines(stdout: str) -> List[PullRequestRecord]:
    """Parse `gh api notifications --jq` JSON lines. Bad lines are skipped."""
    out: List[PullRequestRecord] = []
    for line in (stdout or "").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as e:
            _logger.warning("Skipping unparsable notification line %r: %s", line[:200], e)
            continue
        if not isinstance(item, dict):
            _logger.warning("Skipping non-object notification line %r", line[:200])
            continue
        url = canonical_pr_url(str(item.get("url") or ""))
        if url is None:
            _logger.warning("Skipping notification without a PR url: %r", line[:200])
            continue
        repo, number = parse_pr_url(url)  # type: ignore[misc]
        out.append(
            PullRequestRecord(
                title=str(item.get("title") or ""),
                reason=str(item.get("reason") or "subscribed"),
                url=url,
                html_url=display_pr_url(url) or "",
                repository=repo,
                number=number,
                source=RecordSource.NOTIFICATION,
            )
        )
    return out


def parse_search_results(stdout: str, reason: str) -> List[PullRequestRecord]:
    """Parse `gh search prs --json` output. Raises ValueError if the document is not a list."""
    data = json.loads(stdout or "[]")
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON list from gh search, got {type(data).__name__}")
    out: List[PullRequestRecord] = []
    for item in data:
        if not isinstance(item, dict):
            _logger.warning("Skipping non-object search result (%s): %r", reason, item)
            continue
        url = canonical_pr_url(str(item.get("url") or ""))
        if url is None:
            _logger.warning("Skipping search result without a PR url (%s): %r", reason, item.get("url"))
            continue
        repo, number = parse_pr_url(url)  # type: ignore[misc]
        repo_obj = item.get("repository")
        if isinstance(repo_obj, dict) and repo_obj.get("nameWithOwner"):
            repo = str(repo_obj["nameWithOwner"])
        try:
            number = int(item.get("number") or number)
        except (TypeError, ValueError):
            _logger.warning("Skipping search result with a bad number (%s): %r", reason, item.get("number"))
            continue
        state, merged = normalize_state(item.get("state"))
        out.append(
            PullRequestRecord(
                title=str(item.get("title") or ""),
                reason=reason,
                url=url,
                html_url=display_pr_url(url) or "",
                state=state,
                repository=repo,
                number=number,
                closed_at=item.get("closedAt") or None,
                merged=merged,
                source=RecordSource.SEARCH,
            )
        )
    return out


def apply_enrichment(record: PullRequestRecord, detail: Dict[str, Any]) -> PullRequestRecord:
    """Return a copy of a notification record with `gh pr view --json` fields applied.

    Raises ValueError/TypeError if `number` is present but not an integer.
    """
    state, merged = normalize_state(detail.get("state"))
    if detail.get("mergedAt"):
        merged = True
    return replace(
        record,
        state=state,
        merged=merged,
        number=int(detail.get("number") or record.number),
        head_ref=detail.get("headRefName") or None,
        closed_at=detail.get("closedAt") or None,
        review_decision=normalize_review_decision(detail.get("reviewDecision")),
    )


def merge_records(
    notification_records: Iterable[PullRequestRecord],
    search_lists: Iterable[Iterable[PullRequestRecord]],
) -> List[PullRequestRecord]:
    """Deduplicate by canonical URL; notification records win, then first search record wins."""
    merged: Dict[str, PullRequestRecord] = {}
    for rec in notification_records:
        merged.setdefault(rec.url, rec)
    for records in search_lists:
        for rec in records:
            if rec.url not in merged:
                merged[rec.url] = rec
    return list(merged.values())


# ======================================================================================
# Aggregator
# ======================================================================================

class NotificationAggregator:
    def __init__(
        self,
        invoker: Invoker,
        config: Optional[InboxConfig] = None,
        *,
        throttle: Optional[CallThrottle] = None,
        backoff: Optional[ErrorBackoffGuard] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or InboxConfig()
        self.invoker = invoker
        self.throttle = throttle or CallThrottle(
            max_calls=self.config.throttle_max_calls,
            window_s=self.config.throttle_window_s,
            step_s=self.config.throttle_step_s,
            per_category=self.config.throttle_per_category,
        )
        self.backoff = backoff or ErrorBackoffGuard(clock=clock)
        self._clock = clock
        self._coalescer: RequestCoalescer[CurrentView] = RequestCoalescer()
        self._cache: Optional[CacheEntry] = None
        self.cycles_started = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    # ----------------------------
    # Public API
    # ----------------------------

    @property
    def cache_entry(self) -> Optional[CacheEntry]:
        return self._cache

    @property
    def fetch_in_flight(self) -> bool:
        return self._coalescer.in_flight

    def invalidate(self) -> None:
        """Drop the cached view (e.g. after the gh login identity changed)."""
        if self._cache is not None:
            self.logger.info("Cache invalidated")
        self._cache = None

    async def get_current_view(self) -> CurrentView:
        entry = self._cache
        if entry is not None and entry.is_fresh(now=self._clock(), ttl_s=self.config.cache_ttl_s):
            return replace(entry.view, from_cache=True)

        if self.backoff.is_active():
            raise BackoffActiveError(self.backoff.remaining_seconds())

        role = self._coalescer.join_or_become_owner()
        if not role.is_owner:
            self.logger.debug("Joining in-flight fetch")
            return await role.wait()

        view: Optional[CurrentView] = None
        error: Optional[FetchError] = None
        try:
            try:
                view = await self._run_cycle()
            except FetchError as e:
                error = e
                if e.kind == FetchErrorKind.RATE_LIMITED:
                    self.backoff.arm(self.config.backoff_s)
                    e.retry_after_s = self.backoff.remaining_seconds()
                raise
            self._cache = CacheEntry(view=view, captured_at=self._clock())
            self.backoff.clear()
            return view
        finally:
            self._coalescer.finish(role, result=view, error=error)

    # ----------------------------
    # One cycle
    # ----------------------------

    async def _gh(self, args: Sequence[str], *, label: str) -> GhResult:
        await self.throttle.admit(label)
        return await self.invoker.run(args, label=label, timeout_s=self.config.command_timeout_s)

    def _classify(self, result: GhResult) -> FailureKind:
        return classify_failure(
            result,
            rate_limit_patterns=self.config.rate_limit_patterns,
            unauthenticated_patterns=self.config.unauthenticated_patterns,
        )

    async def _run_cycle(self) -> CurrentView:
        self.cycles_started += 1
        self.throttle.reset_metrics()
        t0 = time.monotonic()
        self.logger.info("=== Starting PR fetch ===")

        login = await self._resolve_login()
        state = _CycleState()

        results = await asyncio.gather(
            self._notification_records(state),
            *[self._search_records(login, reason, qualifier, state) for reason, qualifier in SEARCH_CATEGORIES],
        )
        notification_records: List[PullRequestRecord] = results[0]
        search_lists: List[List[PullRequestRecord]] = list(results[1:])

        self.logger.info(
            "Search results summary: notifications=%d %s",
            len(notification_records),
            " ".join(f"{reason}={len(recs)}" for (reason, _), recs in zip(SEARCH_CATEGORIES, search_lists)),
        )

        records = merge_records(notification_records, search_lists)
        view = CurrentView(
            records=tuple(records),
            fetched_at=time.time(),
            from_cache=False,
            throttle_metrics=self.throttle.metrics(),
        )

        rate_limited = state.first(FailureKind.RATE_LIMITED)
        if rate_limited is not None:
            label, _, text = rate_limited
            self.logger.warning("Cycle hit the upstream rate limit in [%s]; returning partial data as error", label)
            raise UpstreamRateLimitedError(f"GitHub rate limit hit during {label}: {text[:300]}", partial=view)

        open_count = sum(1 for r in records if r.state == PRState.OPEN)
        self.logger.info(
            "=== Completed in %dms === total=%d open=%d closed=%d",
            int((time.monotonic() - t0) * 1000),
            len(records),
            open_count,
            sum(1 for r in records if r.state == PRState.CLOSED),
        )
        return view

    async def _resolve_login(self) -> str:
        result = await self._gh(["api", "user", "--jq", ".login"], label="user")
        if not result.ok:
            kind = self._classify(result)
            detail = result.failure_text
            if kind == FailureKind.UNAUTHENTICATED:
                raise UnauthenticatedError(f"GitHub CLI is not authenticated: {detail}")
            if kind == FailureKind.RATE_LIMITED:
                raise UpstreamRateLimitedError(f"GitHub rate limit hit resolving user: {detail}")
            if kind == FailureKind.TOOL_UNAVAILABLE:
                raise ToolUnavailableError(detail)
            raise FetchError(f"Failed to resolve GitHub user: {detail}")
        login = result.stdout.strip()
        if not login:
            raise FetchError("gh api user returned an empty login", kind=FetchErrorKind.PARSE_FAILURE)
        self.logger.info("GitHub username: %s", login)
        return login

    def _category_failed(self, label: str, result: GhResult, state: _CycleState) -> None:
        kind = self._classify(result)
        state.add(label, kind, result.failure_text)
        self.logger.warning("Category [%s] failed (%s); contributing no records", label, kind.value)

    async def _notification_records(self, state: _CycleState) -> List[PullRequestRecord]:
        result = await self._gh(["api", "notifications", "--paginate", "--jq", NOTIFICATIONS_JQ], label="notifications")
        if not result.ok:
            self._category_failed("notifications", result, state)
            return []
        records = parse_notification_lines(result.stdout)
        limit = max(0, int(self.config.enrich_limit))
        self.logger.info("Enriching %d notification PRs...", min(len(records), limit))
        enriched = await asyncio.gather(*[self._enrich(r, state) for r in records[:limit]])
        return list(enriched) + records[limit:]

    async def _enrich(self, record: PullRequestRecord, state: _CycleState) -> PullRequestRecord:
        result = await self._gh(["pr", "view", record.html_url, "--json", ENRICH_JSON_FIELDS], label="enrich")
        if not result.ok:
            kind = self._classify(result)
            state.add("enrich", kind, result.failure_text)
            self.logger.warning("Failed to enrich notification %s (%s)", record.html_url, kind.value)
            return record
        try:
            detail = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            self.logger.warning("Skipping enrichment of %s: bad JSON (%s)", record.html_url, e)
            return record
        if not isinstance(detail, dict):
            self.logger.warning("Skipping enrichment of %s: unexpected payload", record.html_url)
            return record
        try:
            return apply_enrichment(record, detail)
        except (TypeError, ValueError) as e:
            self.logger.warning("Skipping enrichment of %s: bad field (%s)", record.html_url, e)
            return record

    async def _search_records(
        self, login: str, reason: str, qualifier: str, state: _CycleState
    ) -> List[PullRequestRecord]:
        label = f"search.{reason}"
        args = [
            "search", "prs", f"{qualifier}:{login}",
            "--json", SEARCH_JSON_FIELDS,
            "--limit", str(int(self.config.search_limit)),
        ]
        result = await self._gh(args, label=label)
        if not result.ok:
            self._category_failed(label, result, state)
            return []
        try:
            return parse_search_results(result.stdout, reason)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            state.add(label, FailureKind.PARSE_FAILURE, str(e))
            self.logger.warning("Category [%s] returned unparsable output: %s", label, e)
            return []
