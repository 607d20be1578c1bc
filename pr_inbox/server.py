# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""aiohttp application exposing the aggregator and the auth session manager.

Routes:
  GET  /api/notifications                          current PR view (JSON)
  POST /api/auth/login       {sessionId}           register a device-code login
  GET  /api/auth/login?action=start&sessionId=     start it and stream SSE events
  GET  /api/auth/login?sessionId=                  session snapshot
  POST /api/auth/cleanup     {sessionId}           end a session
  GET  /api/auth/cleanup                           sweep orphaned sessions
  POST /api/auth/logout                            gh auth logout
  GET  /api/health                                 gh presence/version/login
  GET  /api/circleci/status?repo=&branch=          CircleCI status of a branch
  GET  /api/worktree?repo=&branch=                  local worktree for a PR branch
  POST /api/worktree         {repo, branch}        create it
  GET  /api/worktree/compare?repo=&branch=          incoming/outgoing commits vs origin
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from .aggregator import NotificationAggregator
from .auth_sessions import AuthSessionManager, SpawnFn, spawn_gh
from .circleci import CircleCIStatusClient
from .config import InboxConfig
from .errors import FetchError, SessionConflictError, SessionNotRegisteredError
from .gh_cli import GhInvoker
from .health import logout_gh, probe_health
from .ip_rate_limit import IpRateLimiter
from .types import FetchErrorKind
from .worktree import WorktreeManager

_logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", InboxConfig)
INVOKER_KEY = web.AppKey("invoker", GhInvoker)
AGGREGATOR_KEY = web.AppKey("aggregator", NotificationAggregator)
AUTH_KEY = web.AppKey("auth_manager", AuthSessionManager)
IP_LIMITER_KEY = web.AppKey("ip_limiter", IpRateLimiter)
CIRCLECI_KEY = web.AppKey("circleci", CircleCIStatusClient)
WORKTREE_KEY = web.AppKey("worktrees", WorktreeManager)

_STATUS_BY_KIND: Dict[FetchErrorKind, int] = {
    FetchErrorKind.UNAUTHENTICATED: 401,
    FetchErrorKind.RATE_LIMITED: 429,
    FetchErrorKind.BACKOFF_ACTIVE: 429,
    FetchErrorKind.TOOL_UNAVAILABLE: 503,
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

routes = web.RouteTableDef()


def client_address(request: web.Request) -> str:
    """First x-forwarded-for hop, then x-real-ip, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.remote or "unknown"


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text="Request body must be JSON")
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="Request body must be a JSON object")
    return data


# ----------------------------
# Notifications
# ----------------------------

@routes.get("/api/notifications")
async def get_notifications(request: web.Request) -> web.Response:
    aggregator = request.app[AGGREGATOR_KEY]
    try:
        view = await aggregator.get_current_view()
    except FetchError as e:
        status = _STATUS_BY_KIND.get(e.kind, 500)
        headers = None
        if status == 429 and e.retry_after_s is not None:
            headers = {"Retry-After": str(int(e.retry_after_s))}
        _logger.warning("GET /api/notifications -> %d (%s): %s", status, e.kind.value, e.detail[:200])
        return web.json_response(e.to_payload(), status=status, headers=headers)
    return web.json_response(view.to_payload())


# ----------------------------
# Auth
# ----------------------------

@routes.post("/api/auth/login")
async def register_login(request: web.Request) -> web.Response:
    limiter = request.app[IP_LIMITER_KEY]
    address = client_address(request)
    if not limiter.allow(address):
        return web.Response(
            status=429,
            text="Rate limit exceeded",
            headers={"Retry-After": str(limiter.retry_after_s(address))},
        )
    body = await _json_body(request)
    session_id = str(body.get("sessionId") or "")
    if not session_id:
        return web.Response(status=400, text="Session ID required")
    try:
        request.app[AUTH_KEY].register(session_id)
    except SessionConflictError as e:
        return web.Response(status=409, text=str(e))
    return web.json_response({"success": True, "sessionId": session_id})


@routes.get("/api/auth/login")
async def login_status_or_stream(request: web.Request) -> web.StreamResponse:
    session_id = request.query.get("sessionId", "")
    if not session_id:
        return web.Response(status=400, text="Session ID required")
    manager = request.app[AUTH_KEY]
    if request.query.get("action") == "start":
        return await _stream_login(request, manager, session_id)
    return web.json_response(manager.snapshot(session_id))


async def _stream_login(request: web.Request, manager: AuthSessionManager, session_id: str) -> web.StreamResponse:
    try:
        session = await manager.start(session_id)
    except SessionConflictError as e:
        return web.Response(status=409, text=str(e))
    except SessionNotRegisteredError as e:
        return web.Response(status=400, text=str(e))

    response = web.StreamResponse(headers=SSE_HEADERS)
    events = session.events()
    terminal_sent = False
    try:
        await response.prepare(request)
        async for event in events:
            await response.write(event.to_sse())
            terminal_sent = event.is_terminal
        await response.write_eof()
    except ConnectionResetError:
        _logger.info("Auth session %s: client disconnected", session_id)
    finally:
        await events.aclose()
        # A reader that goes away before the outcome abandons the login.
        if not terminal_sent and manager.get(session_id) is session:
            await manager.end_session(session_id)
    return response


@routes.post("/api/auth/cleanup")
async def cleanup_session(request: web.Request) -> web.Response:
    body = await _json_body(request)
    session_id = str(body.get("sessionId") or "")
    if not session_id:
        return web.json_response({"error": "Session ID required"}, status=400)
    if await request.app[AUTH_KEY].end_session(session_id):
        return web.json_response({"message": "Process cleaned up successfully"})
    return web.json_response({"message": "No process found for session"})


@routes.get("/api/auth/cleanup")
async def sweep_sessions(request: web.Request) -> web.Response:
    cleaned = await request.app[AUTH_KEY].sweep_orphans()
    return web.json_response({
        "message": f"Cleaned up {len(cleaned)} orphaned processes",
        "cleanedSessions": cleaned,
    })


@routes.post("/api/auth/logout")
async def logout(request: web.Request) -> web.Response:
    status, payload = await logout_gh(request.app[INVOKER_KEY], request.app[CONFIG_KEY])
    if payload.get("success"):
        request.app[AGGREGATOR_KEY].invalidate()
    return web.json_response(payload, status=status)


# ----------------------------
# Health / CI
# ----------------------------

@routes.get("/api/health")
async def health(request: web.Request) -> web.Response:
    status, payload = await probe_health(request.app[INVOKER_KEY])
    return web.json_response(payload, status=status)


@routes.get("/api/circleci/status")
async def circleci_status(request: web.Request) -> web.Response:
    status, payload = await request.app[CIRCLECI_KEY].status(
        request.query.get("repo"), request.query.get("branch")
    )
    return web.json_response(payload, status=status)


# ----------------------------
# Worktrees
# ----------------------------

def _repo_and_branch(data) -> Optional[Tuple[str, str]]:
    repo = str(data.get("repo") or "")
    branch = str(data.get("branch") or "")
    if not repo or not branch:
        return None
    return repo, branch


@routes.get("/api/worktree")
async def check_worktree(request: web.Request) -> web.Response:
    params = _repo_and_branch(request.query)
    if params is None:
        return web.json_response({"error": "Missing repo or branch"}, status=400)
    try:
        payload = await asyncio.to_thread(request.app[WORKTREE_KEY].check, *params)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response(payload)


@routes.post("/api/worktree")
async def create_worktree(request: web.Request) -> web.Response:
    params = _repo_and_branch(await _json_body(request))
    if params is None:
        return web.json_response({"error": "Missing repo or branch"}, status=400)
    try:
        status, payload = await asyncio.to_thread(request.app[WORKTREE_KEY].create, *params)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response(payload, status=status)


@routes.get("/api/worktree/compare")
async def compare_worktree(request: web.Request) -> web.Response:
    params = _repo_and_branch(request.query)
    if params is None:
        return web.json_response({"error": "Missing repo or branch"}, status=400)
    try:
        payload = await asyncio.to_thread(request.app[WORKTREE_KEY].compare, *params)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response(payload)


# ----------------------------
# Application
# ----------------------------

async def _sweep_forever(manager: AuthSessionManager, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await manager.sweep_orphans()
        except Exception:  # keep the sweeper alive; the failure is logged
            _logger.exception("Orphan sweep failed")


async def _background_tasks(app: web.Application):
    interval = app[CONFIG_KEY].sweep_interval_s
    sweeper: Optional[asyncio.Task] = None
    if interval > 0:
        sweeper = asyncio.create_task(_sweep_forever(app[AUTH_KEY], interval))
    yield
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    await app[AUTH_KEY].shutdown()
    await app[CIRCLECI_KEY].close()


def create_app(
    config: Optional[InboxConfig] = None,
    *,
    invoker: Optional[GhInvoker] = None,
    aggregator: Optional[NotificationAggregator] = None,
    auth_manager: Optional[AuthSessionManager] = None,
    spawn: Optional[SpawnFn] = None,
    ip_limiter: Optional[IpRateLimiter] = None,
    circleci: Optional[CircleCIStatusClient] = None,
    worktrees: Optional[WorktreeManager] = None,
) -> web.Application:
    config = config or InboxConfig()
    invoker = invoker or GhInvoker(config.gh_path, default_timeout_s=config.command_timeout_s)
    aggregator = aggregator or NotificationAggregator(invoker, config)

    if auth_manager is None:
        def _on_login(session_id: str) -> None:
            # New identity: the cached view and any rate-limit cool-down belong to the old one.
            aggregator.invalidate()
            aggregator.backoff.clear()

        auth_manager = AuthSessionManager(config, spawn=spawn or spawn_gh, on_success=_on_login)

    app = web.Application()
    app[CONFIG_KEY] = config
    app[INVOKER_KEY] = invoker
    app[AGGREGATOR_KEY] = aggregator
    app[AUTH_KEY] = auth_manager
    app[IP_LIMITER_KEY] = ip_limiter or IpRateLimiter(
        window_s=config.ip_rate_window_s, max_attempts=config.ip_rate_max
    )
    app[CIRCLECI_KEY] = circleci or CircleCIStatusClient(config.circleci_token, ttl_s=config.circleci_ttl_s)
    app[WORKTREE_KEY] = worktrees or WorktreeManager(config.source_base_path)
    app.add_routes(routes)
    app.cleanup_ctx.append(_background_tasks)
    return app


def run_server(config: InboxConfig) -> None:
    _logger.info("Serving pr-inbox on http://%s:%d", config.host, config.port)
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
