# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Error types for the aggregation engine and the auth session manager.

These are intentionally lightweight so the HTTP layer can map them to status codes
(and the UI can choose between "log in again" and "cool-down timer") without
importing the engine modules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from .types import FetchErrorKind

if TYPE_CHECKING:  # pragma: no cover
    from .models import CurrentView


class FetchError(Exception):
    """A failed attempt to produce the current PR view."""

    kind: FetchErrorKind = FetchErrorKind.UNKNOWN

    def __init__(
        self,
        detail: str,
        *,
        kind: Optional[FetchErrorKind] = None,
        retry_after_s: Optional[int] = None,
        partial: Optional["CurrentView"] = None,
    ):
        super().__init__(detail)
        if kind is not None:
            self.kind = kind
        self.detail = str(detail or "")
        self.retry_after_s = retry_after_s
        # Records merged from the categories that did succeed (rate-limited cycles only).
        self.partial = partial

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": "Failed to fetch notifications",
            "kind": self.kind.value,
            "details": self.detail,
        }
        if self.retry_after_s is not None:
            payload["retry_after_s"] = int(self.retry_after_s)
        if self.partial is not None:
            payload["notifications"] = [r.to_dict() for r in self.partial.records]
            payload["total"] = self.partial.total
        return payload


class UnauthenticatedError(FetchError):
    kind = FetchErrorKind.UNAUTHENTICATED


class UpstreamRateLimitedError(FetchError):
    kind = FetchErrorKind.RATE_LIMITED


class BackoffActiveError(FetchError):
    kind = FetchErrorKind.BACKOFF_ACTIVE

    def __init__(self, remaining_s: int):
        super().__init__(
            f"GitHub rate limit backoff active; retry in {int(remaining_s)}s",
            retry_after_s=int(remaining_s),
        )


class ToolUnavailableError(FetchError):
    kind = FetchErrorKind.TOOL_UNAVAILABLE


class CoalescedFetchAbortedError(FetchError):
    """The fetch owner exited without producing a result (e.g. it was cancelled)."""


class AuthSessionError(Exception):
    def __init__(self, session_id: str, message: str):
        super().__init__(message)
        self.session_id = str(session_id or "")


class SessionConflictError(AuthSessionError):
    pass


class SessionNotRegisteredError(AuthSessionError):
    pass
