# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""CircleCI status of the latest pipeline on a branch (CircleCI API v2).

Lookup: project pipelines filtered by branch -> first (newest) pipeline -> its
workflows -> one summarized status. Every outcome, including errors, is cached per
`repo#branch` for a fixed TTL so a page full of branches does not hammer the API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, urlencode

import aiohttp

from .types import CIStatus

_logger = logging.getLogger(__name__)

API_BASE_URL = "https://circleci.com/api/v2"
APP_BASE_URL = "https://app.circleci.com/pipelines/github"
REQUEST_TIMEOUT_S = 15

_FAILED_WORKFLOW_STATUSES = frozenset({"failed", "error", "canceled", "unauthorized", "not_run"})
_RUNNING_WORKFLOW_STATUSES = frozenset({"running", "failing"})


def summarize_status(workflow_statuses: Iterable[Optional[str]]) -> CIStatus:
    """Collapse workflow statuses: any failure > on hold > running > all success > unknown."""
    statuses = [s for s in workflow_statuses if s]
    if not statuses:
        return CIStatus.UNKNOWN
    if any(s in _FAILED_WORKFLOW_STATUSES for s in statuses):
        return CIStatus.FAILED
    if any(s == "on_hold" for s in statuses):
        return CIStatus.ON_HOLD
    if any(s in _RUNNING_WORKFLOW_STATUSES for s in statuses):
        return CIStatus.RUNNING
    if all(s == "success" for s in statuses):
        return CIStatus.SUCCESS
    return CIStatus.UNKNOWN


def pipeline_url(repo: str, branch: str) -> str:
    return f"{APP_BASE_URL}/{repo}?{urlencode({'branch': branch})}"


def _items(doc: Any) -> List[Any]:
    """Return the `items` list of a CircleCI page. Raises ValueError for any other shape."""
    if not isinstance(doc, dict):
        raise ValueError(f"unexpected CircleCI payload: {type(doc).__name__}")
    items = doc.get("items")
    return items if isinstance(items, list) else []


@dataclass(frozen=True)
class _CachedStatus:
    captured_at: float
    http_status: int
    data: Dict[str, Any]


class CircleCIStatusClient:
    def __init__(
        self,
        token: Optional[str],
        *,
        ttl_s: float = 30.0,
        api_base_url: str = API_BASE_URL,
        clock: Callable[[], float] = time.time,
    ):
        self.token = token
        self.ttl_s = float(ttl_s)
        self.api_base_url = api_base_url.rstrip("/")
        self._clock = clock
        self._cache: Dict[str, _CachedStatus] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_S))
        return self._session

    def _remember(self, key: str, http_status: int, data: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        now = self._clock()
        for stale in [k for k, v in self._cache.items() if now - v.captured_at >= self.ttl_s]:
            del self._cache[stale]
        self._cache[key] = _CachedStatus(captured_at=now, http_status=http_status, data=data)
        return http_status, data

    async def status(self, repo: Optional[str], branch: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """Return (http_status, {status, pipelineUrl, cached?, error?})."""
        if not repo or not branch:
            return 400, {"status": CIStatus.UNKNOWN.value, "pipelineUrl": "", "error": "repo and branch are required"}

        url = pipeline_url(repo, branch)
        key = f"{repo}#{branch}"
        hit = self._cache.get(key)
        if hit is not None and self._clock() - hit.captured_at < self.ttl_s:
            return hit.http_status, {**hit.data, "cached": True}

        if not self.token:
            return self._remember(key, 401, {
                "status": CIStatus.UNKNOWN.value,
                "pipelineUrl": url,
                "error": "CircleCI token not configured (set CIRCLECI_TOKEN)",
            })

        org, _, project = repo.partition("/")
        if not org or not project or "/" in project:
            return 400, {"status": CIStatus.UNKNOWN.value, "pipelineUrl": url, "error": "Invalid repo format"}

        headers = {"Circle-Token": self.token, "Accept": "application/json"}
        try:
            session = self._http()
            pipelines_url = (
                f"{self.api_base_url}/project/gh/{quote(org)}/{quote(project)}/pipeline"
                f"?{urlencode({'branch': branch})}"
            )
            async with session.get(pipelines_url, headers=headers) as resp:
                if resp.status != 200:
                    self.logger.warning("CircleCI pipelines API returned %d for %s", resp.status, key)
                    return self._remember(key, 502, {
                        "status": CIStatus.UNKNOWN.value,
                        "pipelineUrl": url,
                        "error": f"CircleCI pipelines API error ({resp.status})",
                    })
                pipelines = await resp.json()

            items = _items(pipelines)
            pipeline_id = items[0].get("id") if items and isinstance(items[0], dict) else None
            if not pipeline_id:
                return self._remember(key, 200, {"status": CIStatus.UNKNOWN.value, "pipelineUrl": url})

            async with session.get(f"{self.api_base_url}/pipeline/{pipeline_id}/workflow", headers=headers) as resp:
                if resp.status != 200:
                    self.logger.warning("CircleCI workflows API returned %d for %s", resp.status, key)
                    return self._remember(key, 502, {
                        "status": CIStatus.UNKNOWN.value,
                        "pipelineUrl": url,
                        "error": f"CircleCI workflows API error ({resp.status})",
                    })
                workflows = _items(await resp.json())
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error("CircleCI request failed for %s: %s", key, e)
            return self._remember(key, 500, {
                "status": CIStatus.UNKNOWN.value,
                "pipelineUrl": url,
                "error": str(e) or type(e).__name__,
            })

        statuses = [w.get("status") for w in workflows if isinstance(w, dict)]
        summary = summarize_status(statuses)
        self.logger.debug("CircleCI %s -> %s (%d workflows)", key, summary.value, len(statuses))
        return self._remember(key, 200, {"status": summary.value, "pipelineUrl": url})
