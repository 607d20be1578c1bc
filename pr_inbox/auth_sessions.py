# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Device-code (`gh auth login --web`) sessions supervised as subprocesses.

Session state machine:
    starting --(code and/or url parsed)--> waiting --(exit 0)--> completed
    starting/waiting --(exit != 0 | launch error | timeout | cancel | sweep)--> failed

Events (in order, to every subscriber; late subscribers replay the history):
    start, then any of code/url/stderr (code and url at most once each),
    then exactly one terminal event: success or error.

gh writes the one-time code and the URL to stdout or stderr depending on version, and
pipe reads can split a line, so each stream keeps a bounded tail buffer that is fed to
two independent single-shot extractors (code, url). Extractor patterns require a
trailing whitespace so a token cut in half by a chunk boundary is never reported.

Registry invariant: at most one non-terminal session per session id; a terminal one may be
replaced by a new start with the same id. A terminal session removes
itself after `cleanup_grace_s` (so a slow SSE reader still sees the final event);
explicit cleanup and the orphan sweep remove immediately. The subprocess handle is
owned by its session and is signalled before the registry entry goes away for good.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Pattern, Protocol, Sequence, Set

from .config import InboxConfig
from .errors import SessionConflictError, SessionNotRegisteredError
from .types import AuthEventType, AuthState

_logger = logging.getLogger(__name__)

CODE_PATTERNS: Sequence[str] = (
    r"one-time code:\s+([A-Z0-9]+(?:-[A-Z0-9]+)*)(?=\s)",
    r"!\s+One-time code\s+\(([A-Z0-9-]+)\)",
)
URL_PATTERNS: Sequence[str] = (
    r"Open this URL to continue in your web browser:\s+(https://\S+)(?=\s)",
    r"Press Enter to open\s+(https://\S+)\s+in your browser",
)

STREAM_TAIL_CHARS = 4096
READ_CHUNK_BYTES = 4096
REGISTRATION_TTL_S = 5 * 60
# ^ A POST registration must be followed by the SSE start within this long.


class ProcessLike(Protocol):
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]
    returncode: Optional[int]
    pid: int

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


SpawnFn = Callable[[str, Sequence[str]], Awaitable[ProcessLike]]


async def spawn_gh(gh_path: str, args: Sequence[str]) -> ProcessLike:
    return await asyncio.create_subprocess_exec(
        gh_path,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class TokenExtractor:
    """Order- and stream-insensitive single-shot extractor for one token."""

    def __init__(self, name: str, patterns: Sequence[str]):
        self.name = name
        self._patterns: List[Pattern[str]] = [re.compile(p) for p in patterns]
        self.value: Optional[str] = None

    def feed(self, text: str) -> Optional[str]:
        """Return the token the first time it is found, None afterwards."""
        if self.value is not None:
            return None
        for pat in self._patterns:
            m = pat.search(text)
            if m:
                self.value = m.group(1)
                return self.value
        return None


@dataclass(frozen=True)
class AuthEvent:
    type: AuthEventType
    data: Dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.type in (AuthEventType.SUCCESS, AuthEventType.ERROR)

    def to_sse(self) -> bytes:
        return f"event: {self.type.value}\ndata: {json.dumps(self.data)}\n\n".encode("utf-8")


@dataclass(eq=False)
class AuthSession:
    session_id: str
    started_at: float
    process: Optional[ProcessLike] = None
    code: Optional[str] = None
    url: Optional[str] = None
    completed: bool = False
    error: Optional[str] = None
    state: AuthState = AuthState.STARTING
    history: List[AuthEvent] = field(default_factory=list)
    _subscribers: List["asyncio.Queue[AuthEvent]"] = field(default_factory=list, repr=False)
    _timer: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in (AuthState.COMPLETED, AuthState.FAILED)

    def publish(self, event: AuthEvent) -> None:
        self.history.append(event)
        for q in list(self._subscribers):
            q.put_nowait(event)

    def snapshot(self) -> Dict[str, Any]:
        if self.completed:
            status = "completed"
        elif self.state == AuthState.FAILED:
            status = "failed"
        else:
            status = "in_progress"
        return {
            "status": status,
            "state": self.state.value,
            "code": self.code,
            "url": self.url,
            "error": self.error,
        }

    async def events(self) -> AsyncIterator[AuthEvent]:
        """Replay the history, then follow live events until the terminal one."""
        queue: "asyncio.Queue[AuthEvent]" = asyncio.Queue()
        for ev in self.history:
            queue.put_nowait(ev)
        self._subscribers.append(queue)
        try:
            while True:
                ev = await queue.get()
                yield ev
                if ev.is_terminal:
                    return
        finally:
            self._subscribers.remove(queue)


class AuthSessionManager:
    def __init__(
        self,
        config: Optional[InboxConfig] = None,
        *,
        spawn: SpawnFn = spawn_gh,
        clock: Callable[[], float] = time.time,
        on_success: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or InboxConfig()
        self._spawn = spawn
        self._clock = clock
        self._on_success = on_success
        self._sessions: Dict[str, AuthSession] = {}
        self._registrations: Dict[str, float] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self.logger = logging.getLogger(self.__class__.__name__)

    # ----------------------------
    # Registry queries
    # ----------------------------

    def get(self, session_id: str) -> Optional[AuthSession]:
        return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        s = self._sessions.get(session_id)
        return s is not None and not s.terminal

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        s = self._sessions.get(session_id)
        if s is None:
            return {"status": "not_found"}
        return s.snapshot()

    @property
    def session_ids(self) -> List[str]:
        return list(self._sessions)

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def register(self, session_id: str) -> None:
        """First step of the two-call protocol (POST). Rejects ids with an active session."""
        self._prune_registrations()
        if self.is_active(session_id):
            raise SessionConflictError(session_id, "Authentication already in progress")
        self._registrations[session_id] = self._clock()

    async def start(self, session_id: str, *, require_registration: bool = True) -> AuthSession:
        """Spawn the login subprocess. The registry slot is claimed before any await."""
        if self.is_active(session_id):
            raise SessionConflictError(session_id, "Authentication already in progress")
        self._prune_registrations()
        if require_registration and self._registrations.pop(session_id, None) is None:
            raise SessionNotRegisteredError(session_id, "Session not registered")

        session = AuthSession(session_id=session_id, started_at=self._clock())
        self._sessions[session_id] = session
        self.logger.info("Auth session %s starting", session_id)

        try:
            process = await self._spawn(self.config.gh_path, tuple(self.config.auth_login_args))
        except OSError as e:
            self.logger.error("Auth session %s: failed to launch gh: %s", session_id, e)
            session.publish(AuthEvent(AuthEventType.START, {"message": "Authentication process started"}))
            self._finish(session, AuthState.FAILED, str(e))
            return session

        session.process = process
        session.publish(AuthEvent(AuthEventType.START, {"message": "Authentication process started"}))

        code_x = TokenExtractor("code", CODE_PATTERNS)
        url_x = TokenExtractor("url", URL_PATTERNS)
        readers = [
            asyncio.create_task(self._read_stream(session, process.stdout, "stdout", code_x, url_x)),
            asyncio.create_task(self._read_stream(session, process.stderr, "stderr", code_x, url_x)),
        ]
        self._track(asyncio.create_task(self._supervise(session, readers)))
        session._timer = asyncio.create_task(self._expire(session))
        self._track(session._timer)
        return session

    async def end_session(self, session_id: str) -> bool:
        """Explicit cleanup: SIGTERM now, SIGKILL after kill_grace_s. Idempotent."""
        session = self._sessions.pop(session_id, None)
        self._registrations.pop(session_id, None)
        if session is None:
            return False
        self.logger.info("Auth session %s cleaned up on request", session_id)
        self._finish(session, AuthState.FAILED, "Authentication cancelled", schedule_removal=False)
        if self._signal(session.process, force=False):
            self._track(asyncio.create_task(self._escalate(session.process)))
        return True

    async def sweep_orphans(self) -> List[str]:
        """Remove sessions older than orphan_age_s that never completed; kill their processes."""
        now = self._clock()
        cleaned: List[str] = []
        for sid, session in list(self._sessions.items()):
            if session.completed or (now - session.started_at) <= self.config.orphan_age_s:
                continue
            self._sessions.pop(sid, None)
            self._finish(session, AuthState.FAILED, "Authentication session expired", schedule_removal=False)
            await self._terminate(session.process, force=True)
            cleaned.append(sid)
        if cleaned:
            self.logger.warning("Swept %d orphaned auth session(s): %s", len(cleaned), ", ".join(cleaned))
        return cleaned

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._registrations.clear()
        for session in sessions:
            self._finish(session, AuthState.FAILED, "Server shutting down", schedule_removal=False)
        await asyncio.gather(*[self._terminate(s.process, force=False) for s in sessions])
        pending = [t for t in self._background if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ----------------------------
    # Internals
    # ----------------------------

    def _prune_registrations(self) -> None:
        cutoff = self._clock() - REGISTRATION_TTL_S
        for sid, ts in list(self._registrations.items()):
            if ts < cutoff:
                del self._registrations[sid]

    def _track(self, task: "asyncio.Task[Any]") -> None:
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Auth background task failed", exc_info=task.exception())

    def _finish(
        self,
        session: AuthSession,
        state: AuthState,
        error: Optional[str] = None,
        *,
        schedule_removal: bool = True,
    ) -> bool:
        """Enter a terminal state exactly once and emit the terminal event."""
        if session.terminal:
            return False
        session.state = state
        timer = session._timer
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        if state == AuthState.COMPLETED:
            session.completed = True
            self.logger.info("Auth session %s completed", session.session_id)
            session.publish(AuthEvent(AuthEventType.SUCCESS, {"message": "Authentication completed successfully"}))
            if self._on_success is not None:
                self._on_success(session.session_id)
        else:
            session.error = error or "Authentication failed"
            self.logger.error("Auth session %s failed: %s", session.session_id, session.error)
            session.publish(AuthEvent(AuthEventType.ERROR, {"message": session.error}))
        if schedule_removal:
            self._track(asyncio.create_task(self._remove_later(session)))
        return True

    async def _read_stream(
        self,
        session: AuthSession,
        stream: Optional[asyncio.StreamReader],
        name: str,
        code_x: TokenExtractor,
        url_x: TokenExtractor,
    ) -> None:
        if stream is None:
            return
        tail = ""
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            at_eof = not chunk
            text = chunk.decode("utf-8", errors="replace") if chunk else "\n"
            if chunk:
                self.logger.debug("Auth session %s gh %s: %s", session.session_id, name, text.rstrip())
                if name == "stderr" and not session.terminal:
                    session.publish(AuthEvent(AuthEventType.STDERR, {"output": text}))
            tail = (tail + text)[-STREAM_TAIL_CHARS:]
            self._extract(session, tail, code_x, url_x)
            if at_eof:
                return

    def _extract(self, session: AuthSession, text: str, code_x: TokenExtractor, url_x: TokenExtractor) -> None:
        if session.terminal:
            return
        code = code_x.feed(text)
        if code is not None and session.code is None:
            session.code = code
            session.state = AuthState.WAITING
            session.publish(AuthEvent(AuthEventType.CODE, {"code": code}))
        url = url_x.feed(text)
        if url is not None and session.url is None:
            session.url = url
            session.state = AuthState.WAITING
            session.publish(AuthEvent(AuthEventType.URL, {"url": url}))

    async def _supervise(self, session: AuthSession, readers: List["asyncio.Task[None]"]) -> None:
        assert session.process is not None
        rc = await session.process.wait()
        # Drain both pipes first so code/url events precede the terminal event.
        await asyncio.gather(*readers)
        self.logger.info("Auth session %s: gh exited with code %s", session.session_id, rc)
        if rc == 0:
            self._finish(session, AuthState.COMPLETED)
        else:
            self._finish(session, AuthState.FAILED, f"Authentication failed with exit code {rc}")

    async def _expire(self, session: AuthSession) -> None:
        await asyncio.sleep(self.config.auth_timeout_s)
        if self._finish(session, AuthState.FAILED, "Authentication timed out"):
            await self._terminate(session.process, force=False)

    async def _remove_later(self, session: AuthSession) -> None:
        await asyncio.sleep(self.config.cleanup_grace_s)
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            self.logger.debug("Auth session %s removed", session.session_id)
        await self._terminate(session.process, force=False)

    def _signal(self, process: Optional[ProcessLike], *, force: bool) -> bool:
        """SIGKILL if force else SIGTERM. Returns False when there was nothing to signal."""
        if process is None or process.returncode is not None:
            return False
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            self.logger.debug("gh pid %s already exited", process.pid)
            return False
        return True

    async def _terminate(self, process: Optional[ProcessLike], *, force: bool) -> None:
        if self._signal(process, force=force):
            await self._escalate(process)

    async def _escalate(self, process: ProcessLike) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_grace_s)
        except asyncio.TimeoutError:
            self.logger.warning("gh pid %s still running after %.1fs; sending SIGKILL", process.pid, self.config.kill_grace_s)
            try:
                process.kill()
            except ProcessLookupError:
                self.logger.debug("gh pid %s already exited", process.pid)
