"""
Execution supervisor for MCP tools.

This module runs handlers under a concurrency limit, a per-class timeout and
explicit cancellation, and turns every outcome into a ToolResult.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from toolhost.mcp.errors import ErrorKind, make_error, map_failure
from toolhost.mcp.tools.models import LOOKUP, CRAWL, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_TIMEOUTS = {LOOKUP: 30.0, CRAWL: 300.0}
DEFAULT_CANCEL_GRACE = 5.0


class DuplicateRequestError(ValueError):
    """A request id is already in flight."""


@dataclass
class InFlightEntry:
    """Cancellation handle for one supervised call."""

    request_id: Hashable
    name: str
    received_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[Any]"] = None
    reason: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class ExecutionSupervisor:
    """Runs operations with bounded concurrency, timeouts and cancellation."""

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        timeouts: Optional[Dict[str, float]] = None,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
    ):
        """
        Initialize the supervisor.

        Args:
            max_concurrency: Maximum number of handlers executing at once
            timeouts: Seconds allowed per timeout class
            cancel_grace: Seconds a cancelled handler gets to stop before its
                slot is released regardless
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.timeouts = dict(DEFAULT_TIMEOUTS)
        self.timeouts.update(timeouts or {})
        self.cancel_grace = cancel_grace
        self._slots = asyncio.Semaphore(max_concurrency)
        self._in_flight: Dict[Hashable, InFlightEntry] = {}
        self._lock = asyncio.Lock()
        self._running = 0
        self._closed_reason: Optional[str] = None
        self.peak_running = 0

    @property
    def running(self) -> int:
        """Number of handlers currently holding a slot."""
        return self._running

    def in_flight(self) -> Dict[Hashable, InFlightEntry]:
        return dict(self._in_flight)

    def timeout_for(self, timeout_class: str) -> float:
        return self.timeouts.get(timeout_class, self.timeouts[LOOKUP])

    async def _register(self, entry: InFlightEntry) -> None:
        async with self._lock:
            if entry.request_id in self._in_flight:
                raise DuplicateRequestError(f"Request id {entry.request_id!r} is already in flight")
            self._in_flight[entry.request_id] = entry

    async def _unregister(self, request_id: Hashable) -> None:
        async with self._lock:
            self._in_flight.pop(request_id, None)

    async def cancel(self, request_id: Hashable, reason: str = "cancelled by client") -> bool:
        """
        Cancel an in-flight request.

        Args:
            request_id: The id of the request to cancel
            reason: Why the request is cancelled

        Returns:
            True if a request with that id was in flight
        """
        async with self._lock:
            entry = self._in_flight.get(request_id)
        if entry is None:
            logger.debug(f"Cancel for unknown request id {request_id!r} ignored")
            return False
        logger.info(f"Cancelling request {request_id!r} ({entry.name}): {reason}")
        entry.reason = reason
        entry.cancel_event.set()
        return True

    async def cancel_all(self, reason: str = "server shutting down") -> int:
        """Cancel every in-flight request; used on connection teardown."""
        async with self._lock:
            entries = list(self._in_flight.values())
        for entry in entries:
            entry.reason = reason
            entry.cancel_event.set()
        return len(entries)

    async def close(self, reason: str = "server shutting down") -> int:
        """Cancel every in-flight request and refuse new ones with Cancelled."""
        self._closed_reason = reason
        return await self.cancel_all(reason)

    async def _acquire_slot(self, entry: InFlightEntry, cancel_wait: "asyncio.Future[Any]") -> bool:
        """Wait for a free slot; returns False if cancelled while queued."""
        acquire = asyncio.ensure_future(self._slots.acquire())
        try:
            await asyncio.wait({acquire, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._discard_acquire(acquire)
            raise
        if not acquire.done():
            # Semaphore.acquire undoes its bookkeeping when cancelled after wake-up
            acquire.cancel()
            return False
        if entry.cancel_event.is_set():
            self._slots.release()
            return False
        return True

    def _discard_acquire(self, acquire: "asyncio.Future[Any]") -> None:
        if acquire.done() and not acquire.cancelled():
            self._slots.release()
        else:
            acquire.cancel()

    async def _abandon(self, entry: InFlightEntry, task: "asyncio.Task[Any]") -> None:
        """Cancel a handler and wait at most cancel_grace for it to stop."""
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.cancel_grace)
        if not done:
            logger.warning(
                f"Handler for request {entry.request_id!r} ({entry.name}) ignored cancellation; "
                f"releasing its slot after {self.cancel_grace}s"
            )
            task.add_done_callback(_consume_result)

    async def run(
        self,
        request_id: Hashable,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        timeout_class: str = LOOKUP,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ToolResult:
        """
        Execute an operation under supervision.

        Args:
            request_id: Correlation id of the request
            name: Name of the tool or method being executed (for logs)
            operation: Zero-argument coroutine factory doing the work
            timeout_class: Which configured timeout applies
            parameters: The validated arguments, recorded on the result

        Returns:
            Exactly one ToolResult: success, error or cancellation

        Raises:
            DuplicateRequestError: If the request id is already in flight
        """
        outcome = ToolResult(tool_name=name, request_id=request_id, parameters=dict(parameters or {}))
        if self._closed_reason is not None:
            outcome.error = make_error(ErrorKind.CANCELLED, f"Request cancelled: {self._closed_reason}")
            return outcome
        entry = InFlightEntry(request_id=request_id, name=name)
        await self._register(entry)
        cancel_wait = asyncio.ensure_future(entry.cancel_event.wait())
        try:
            if not await self._acquire_slot(entry, cancel_wait):
                outcome.error = make_error(ErrorKind.CANCELLED, f"Request cancelled: {entry.reason}")
                return outcome
            try:
                self._running += 1
                self.peak_running = max(self.peak_running, self._running)
                entry.started_at = outcome.started_at = time.monotonic()
                await self._execute(entry, operation, timeout_class, outcome, cancel_wait)
            finally:
                self._running -= 1
                self._slots.release()
                outcome.finished_at = time.monotonic()
            return outcome
        finally:
            cancel_wait.cancel()
            await self._unregister(request_id)

    async def _execute(self, entry, operation, timeout_class, outcome, cancel_wait) -> None:
        timeout = self.timeout_for(timeout_class)
        logger.info(f"Executing {entry.name} (request {entry.request_id!r}, timeout {timeout}s)")
        task = asyncio.ensure_future(operation())
        entry.task = task
        try:
            await asyncio.wait({task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # the supervising task itself was cancelled; take the handler down with it
            await self._abandon(entry, task)
            raise

        if entry.cancel_event.is_set():
            # a cancel wins over a result that raced with it
            if task.done():
                task.add_done_callback(_consume_result)
            else:
                await self._abandon(entry, task)
            outcome.error = make_error(ErrorKind.CANCELLED, f"Request cancelled: {entry.reason}")
            return

        if task.done():
            if task.cancelled():
                outcome.error = make_error(ErrorKind.CANCELLED, "Handler was cancelled")
            elif task.exception() is not None:
                exc = task.exception()
                outcome.error = map_failure(exc)
                if outcome.error.kind == ErrorKind.INTERNAL:
                    logger.error(f"Handler fault in {entry.name}: {exc!r}", exc_info=exc)
                else:
                    logger.warning(f"{entry.name} failed: {outcome.error.kind.value}: {outcome.error.message}")
            else:
                outcome.result = task.result()
                logger.info(f"Tool execution completed: {entry.name}")
            return

        await self._abandon(entry, task)
        logger.warning(f"{entry.name} timed out after {timeout}s")
        outcome.error = make_error(
            ErrorKind.TIMEOUT, f"'{entry.name}' timed out after {timeout}s", timeout_class=timeout_class
        )


def _consume_result(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned handler finished with {task.exception()!r}")
