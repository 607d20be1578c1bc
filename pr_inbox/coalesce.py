# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Single-flight coalescing of concurrent refreshes.

Exactly one caller per cycle becomes the owner; everyone arriving while that cycle is in
flight becomes a waiter on the same future. The owner MUST call `finish()` from a
`finally` block: if it leaves without a result or error (cancellation, unexpected
exception) the waiters are failed with CoalescedFetchAbortedError instead of hanging.

`join_or_become_owner()` has no await inside, so under the asyncio scheduler the
check-and-set of the in-flight future cannot interleave with another caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .errors import CoalescedFetchAbortedError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CoalescerRole(Generic[T]):
    is_owner: bool
    future: "asyncio.Future[T]"

    async def wait(self) -> T:
        """Waiter side: await the owner's outcome.

        Shielded so a waiter that goes away (client disconnect) cannot cancel the
        shared future for the owner and the other waiters.
        """
        return await asyncio.shield(self.future)


class RequestCoalescer(Generic[T]):
    def __init__(self):
        self._inflight: Optional["asyncio.Future[T]"] = None
        self.waiters_joined = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def join_or_become_owner(self) -> CoalescerRole[T]:
        if self._inflight is not None and not self._inflight.done():
            self.waiters_joined += 1
            return CoalescerRole(is_owner=False, future=self._inflight)
        fut: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        self._inflight = fut
        return CoalescerRole(is_owner=True, future=fut)

    def finish(
        self,
        role: CoalescerRole[T],
        *,
        result: Optional[T] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Resolve the cycle and release the owner flag."""
        if not role.is_owner:
            raise ValueError("only the owner can finish a coalesced cycle")
        fut = role.future
        if not fut.done():
            if error is None and result is None:
                error = CoalescedFetchAbortedError("Fetch was aborted before completing")
            if error is not None:
                fut.set_exception(error)
                # Mark retrieved: with no waiters nobody else awaits this future.
                fut.exception()
            else:
                fut.set_result(result)
        if self._inflight is fut:
            self._inflight = None
