# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Shared pytest fixtures: a scripted `gh` invoker and fake login subprocesses.

Run from the repo root:
    pytest pr_inbox -v
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from pr_inbox.gh_cli import GhResult


class FakeGh:
    """Answers gh calls by label. Labels match the ones the aggregator uses."""

    def __init__(self, login: str = "alice"):
        self.login = login
        self.notifications: List[Dict[str, Any]] = []
        self.searches: Dict[str, List[Dict[str, Any]]] = {}
        self.pr_views: Dict[str, Dict[str, Any]] = {}
        # label -> (stderr, returncode); applied instead of the scripted answer
        self.failures: Dict[str, Tuple[str, int]] = {}
        self.launch_error: Optional[str] = None
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.gate: Optional[asyncio.Event] = None

    def labels(self) -> List[str]:
        return [label for label, _ in self.calls]

    async def run(self, args: Sequence[str], *, label: str, timeout_s: Optional[float] = None) -> GhResult:
        argv = tuple(str(a) for a in args)
        self.calls.append((label, argv))
        if self.gate is not None:
            await self.gate.wait()
        if self.launch_error:
            return GhResult(label=label, args=argv, ok=False, launch_error=self.launch_error)
        if label in self.failures:
            stderr, rc = self.failures[label]
            return GhResult(label=label, args=argv, ok=False, stderr=stderr, returncode=rc)
        return GhResult(label=label, args=argv, ok=True, stdout=self._answer(label, argv), returncode=0)

    def _answer(self, label: str, argv: Tuple[str, ...]) -> str:
        if label == "user":
            return self.login + "\n"
        if label == "notifications":
            return "".join(json.dumps(n) + "\n" for n in self.notifications)
        if label == "enrich":
            return json.dumps(self.pr_views.get(argv[2], {}))
        if label.startswith("search."):
            return json.dumps(self.searches.get(label[len("search."):], []))
        if label == "health":
            return "gh version 2.60.0 (2024-10-30)\n"
        return ""


class FakeProcess:
    """Stands in for an asyncio subprocess running `gh auth login --web`."""

    def __init__(self, pid: int = 4242, *, exit_on_terminate: bool = True):
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: List[str] = []
        self.exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()

    def write_stdout(self, text: str) -> None:
        self.stdout.feed_data(text.encode("utf-8"))

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def exit(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-9)


class FakeSpawner:
    def __init__(self):
        self.processes: List[FakeProcess] = []
        self.argv: List[Tuple[str, Tuple[str, ...]]] = []
        self.fail_with: Optional[OSError] = None
        self.exit_on_terminate = True

    async def __call__(self, gh_path: str, args: Sequence[str]) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        self.argv.append((gh_path, tuple(args)))
        proc = FakeProcess(pid=1000 + len(self.processes), exit_on_terminate=self.exit_on_terminate)
        self.processes.append(proc)
        return proc


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


def notification(owner_repo: str, number: int, title: str, reason: str = "review_requested") -> Dict[str, Any]:
    return {
        "title": title,
        "reason": reason,
        "url": f"https://api.github.com/repos/{owner_repo}/pulls/{number}",
    }


def search_item(owner_repo: str, number: int, title: str, state: str = "open") -> Dict[str, Any]:
    return {
        "title": title,
        "url": f"https://github.com/{owner_repo}/pull/{number}",
        "state": state,
        "repository": {"name": owner_repo.split("/")[1], "nameWithOwner": owner_repo},
        "number": number,
        "closedAt": None,
    }


@pytest.fixture
def fake_gh() -> FakeGh:
    return FakeGh()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
