"""Request Correlator: pairs asynchronous responses with the calls that issued them.

Each dispatched call registers a PendingRequest under a fresh correlation id.
The entry is removed exactly once, by whichever of these happens first:

- a matching response (``resolve``)
- the per-request deadline timer (``_expire``)
- an explicit or caller-driven cancellation (``cancel``)

Removal happens under a lock and the remover alone completes the waiter, so
a response racing its own timeout settles the request once; the loser is a
no-op. The lock is never held across an ``await``.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from .errors import (
    BridgeError,
    CorrelationCancelledError,
    CorrelationErrorKind,
    CorrelationTimeoutError,
    DuplicateCorrelationError,
    UnknownCorrelationError,
)

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
# Settled results nobody awaited are dropped after this long
UNCLAIMED_RESULT_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one invocation: a value on success, a typed error otherwise.

    Attributes:
        correlation_id: Id of the request this result settles (None when the
            call failed before an id was issued)
        value: Decoded result value (None on failure)
        error: BridgeError describing the failure (None on success)
        elapsed_ms: Time from registration to settlement
    """

    correlation_id: Optional[str]
    value: Any = None
    error: Optional[BridgeError] = None
    elapsed_ms: Optional[int] = None

    @classmethod
    def success(cls, correlation_id: str, value: Any) -> "InvocationResult":
        return cls(correlation_id=correlation_id, value=value)

    @classmethod
    def failure(cls, correlation_id: Optional[str], error: BridgeError) -> "InvocationResult":
        return cls(correlation_id=correlation_id, error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, or raise the typed error."""
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class PendingRequest:
    """Internal tracking for an in-flight request.

    Attributes:
        correlation_id: Wire-level request id
        skill_id: Skill being invoked
        endpoint: Base address of the target endpoint, if known
        issued_at: Wall-clock registration time
        issued_monotonic: Event loop time at registration
        deadline: Event loop time at which the request times out
        timeout_seconds: Configured timeout for this request
        future: Suspension handle completed exactly once
        loop: Loop owning the future and timer
        timer: Deadline timer handle
    """

    correlation_id: str
    skill_id: str
    endpoint: Optional[str]
    issued_at: datetime
    issued_monotonic: float
    deadline: float
    timeout_seconds: float
    future: asyncio.Future[InvocationResult]
    loop: asyncio.AbstractEventLoop
    timer: Optional[asyncio.TimerHandle] = None


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class RequestCorrelator:
    """Tracks pending requests and matches responses to them by correlation id.

    One correlator is shared by every bridge operation that dispatches
    through a given transport.

    Usage:
        correlator = RequestCorrelator(default_timeout_seconds=10)
        correlation_id = correlator.register("multiply_numbers")
        ...  # dispatch; the receive path calls correlator.resolve(...)
        result = await correlator.await_response(correlation_id)
    """

    def __init__(
        self,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        self.default_timeout_seconds = default_timeout_seconds
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._pending: dict[str, PendingRequest] = {}
        self._waiters: dict[str, asyncio.Future[InvocationResult]] = {}
        self._claimed: set[str] = set()
        self._unclaimed_timers: dict[str, asyncio.TimerHandle] = {}
        self._lock = threading.Lock()

    # ==================== Introspection ====================

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._pending

    @property
    def unclaimed_count(self) -> int:
        """Settled results held for a waiter that has not arrived yet."""
        with self._lock:
            return len(self._unclaimed_timers)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def get_pending(self, correlation_id: str) -> Optional[PendingRequest]:
        with self._lock:
            return self._pending.get(correlation_id)

    # ==================== Lifecycle ====================

    def register(
        self,
        skill_id: str,
        timeout_seconds: Optional[float] = None,
        *,
        endpoint: Optional[str] = None,
    ) -> str:
        """Create a PendingRequest and return its fresh correlation id.

        Must be called from within the event loop that will await the result.

        Raises:
            ValueError: If the timeout is not positive
            DuplicateCorrelationError: If the id factory produced a live id
        """
        timeout = self.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        if timeout <= 0:
            raise ValueError("timeout_seconds must be > 0")

        loop = asyncio.get_running_loop()
        correlation_id = self._id_factory()
        now = loop.time()
        entry = PendingRequest(
            correlation_id=correlation_id,
            skill_id=skill_id,
            endpoint=endpoint,
            issued_at=datetime.now(timezone.utc),
            issued_monotonic=now,
            deadline=now + timeout,
            timeout_seconds=timeout,
            future=loop.create_future(),
            loop=loop,
        )

        with self._lock:
            if correlation_id in self._pending or correlation_id in self._waiters:
                raise DuplicateCorrelationError(correlation_id)
            self._pending[correlation_id] = entry
            self._waiters[correlation_id] = entry.future
            entry.timer = loop.call_at(entry.deadline, self._expire, correlation_id)

        logger.debug(
            "bridge_request_registered",
            correlation_id=correlation_id,
            skill_id=skill_id,
            endpoint=endpoint,
            timeout_seconds=timeout,
        )
        return correlation_id

    async def await_response(self, correlation_id: str) -> InvocationResult:
        """Suspend until the request is resolved, times out, or is cancelled.

        If the awaiting task itself is cancelled, the pending request is
        cancelled too and ``CancelledError`` propagates.

        Raises:
            UnknownCorrelationError: If the id was never registered or its
                unclaimed result already expired
        """
        with self._lock:
            future = self._waiters.get(correlation_id)
            if future is not None:
                self._claimed.add(correlation_id)
        if future is None:
            raise UnknownCorrelationError(correlation_id)

        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            self.cancel(correlation_id, reason="waiter cancelled")
            raise
        finally:
            self._drop_waiter(correlation_id, future)

    def resolve(self, correlation_id: str, result: InvocationResult) -> bool:
        """Settle a pending request with ``result``.

        Returns:
            True if a pending request was settled; False for a late,
            duplicate or unknown id (logged, never raised)
        """
        with self._lock:
            entry = self._pending.pop(correlation_id, None)

        if entry is None:
            logger.warning(
                "bridge_unmatched_response",
                correlation_id=correlation_id,
                kind=CorrelationErrorKind.UNMATCHED.value,
                success=result.is_success,
            )
            return False

        self._settle(entry, result)
        logger.debug(
            "bridge_request_resolved",
            correlation_id=correlation_id,
            skill_id=entry.skill_id,
            success=result.is_success,
        )
        return True

    def cancel(self, correlation_id: str, reason: str = "") -> bool:
        """Remove a pending request and wake its waiter with a Cancelled outcome."""
        with self._lock:
            entry = self._pending.pop(correlation_id, None)

        if entry is None:
            return False

        self._settle(
            entry,
            InvocationResult.failure(
                correlation_id, CorrelationCancelledError(correlation_id, reason)
            ),
        )
        logger.info(
            "bridge_request_cancelled",
            correlation_id=correlation_id,
            skill_id=entry.skill_id,
            reason=reason,
        )
        return True

    def discard(self, correlation_id: str) -> bool:
        """Forget a request that was never sent and that nobody awaits."""
        with self._lock:
            entry = self._pending.pop(correlation_id, None)
            if entry is None:
                return False
            self._waiters.pop(correlation_id, None)
        if entry.timer is not None:
            entry.timer.cancel()
        entry.future.cancel()
        return True

    def cancel_endpoint(self, endpoint: str, reason: str = "endpoint deregistered") -> int:
        """Cancel every pending request addressed to ``endpoint``."""
        with self._lock:
            ids = [cid for cid, entry in self._pending.items() if entry.endpoint == endpoint]
        return sum(1 for cid in ids if self.cancel(cid, reason))

    def cancel_all(self, reason: str = "correlator closed") -> int:
        """Cancel every pending request."""
        with self._lock:
            ids = list(self._pending)
        return sum(1 for cid in ids if self.cancel(cid, reason))

    # ==================== Internals ====================

    def _expire(self, correlation_id: str) -> None:
        with self._lock:
            entry = self._pending.pop(correlation_id, None)
        if entry is None:
            return

        logger.warning(
            "bridge_request_timeout",
            correlation_id=correlation_id,
            skill_id=entry.skill_id,
            endpoint=entry.endpoint,
            timeout_seconds=entry.timeout_seconds,
        )
        self._settle(
            entry,
            InvocationResult.failure(
                correlation_id,
                CorrelationTimeoutError(correlation_id, entry.timeout_seconds),
            ),
        )

    def _settle(self, entry: PendingRequest, result: InvocationResult) -> None:
        """Complete the waiter on its own loop. Caller must already own ``entry``."""
        loop = entry.loop

        def complete() -> None:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                elapsed_ms = int((loop.time() - entry.issued_monotonic) * 1000)
                entry.future.set_result(replace(result, elapsed_ms=elapsed_ms))
            with self._lock:
                if (
                    entry.correlation_id in self._claimed
                    or self._waiters.get(entry.correlation_id) is not entry.future
                ):
                    # The waiter drops the future itself once it has the result
                    return
                self._unclaimed_timers[entry.correlation_id] = loop.call_later(
                    UNCLAIMED_RESULT_TTL_SECONDS,
                    self._drop_waiter,
                    entry.correlation_id,
                    entry.future,
                )

        if _running_loop() is loop:
            complete()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(complete)

    def _drop_waiter(
        self,
        correlation_id: str,
        future: asyncio.Future[InvocationResult],
    ) -> None:
        with self._lock:
            if self._waiters.get(correlation_id) is not future:
                return
            del self._waiters[correlation_id]
            self._claimed.discard(correlation_id)
            timer = self._unclaimed_timers.pop(correlation_id, None)
        if timer is not None:
            timer.cancel()
