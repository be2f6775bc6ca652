"""In-flight engine calls: execution, delivery, and cancellation.

A call moves through ``BUILT -> SENT`` and ends in exactly one of
``COMPLETED``, ``FAILED`` or ``CANCELLED``. Streaming calls pass through
``STREAMING`` once their ``ResponseStream`` is delivered; the stream stays
owned by the call until it is drained, closed, or cancelled.

Every terminal transition goes through ``_transition`` under one lock, so
natural completion, failure, explicit cancellation, and timeout expiry race
safely and only the first of them wins. The outcome future is settled at
most once, which makes callback delivery exactly-once.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
from collections.abc import Awaitable, Callable, Generator
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp

from .errors import (
    CallCancelledError,
    CallTimeoutError,
    DockwireError,
    InvocationError,
)
from .response import ResponseStream, ResultKind, decode, raise_for_status

if TYPE_CHECKING:
    from .catalog import OperationSpec
    from .connection import Connection
    from .request import HttpRequest

_LOGGER = logging.getLogger(__name__)

_CALL_IDS = itertools.count(1)


class CallState(Enum):
    """Lifecycle states of an in-flight call."""

    BUILT = "built"
    SENT = "sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({CallState.COMPLETED, CallState.FAILED, CallState.CANCELLED})


class InFlightCall:
    """Handle to one executing invocation.

    Await the call (or use ``result()`` once ``done()``) to obtain its
    outcome, and ``cancel()`` it from any thread at any time.
    """

    def __init__(
        self,
        operation: OperationSpec,
        request: HttpRequest,
        result_kind: ResultKind,
        *,
        loop: asyncio.AbstractEventLoop,
        callback: CallCallback | None = None,
    ) -> None:
        self.id = next(_CALL_IDS)
        self.operation = operation
        self.request = request
        self.result_kind = result_kind

        self._loop = loop
        self._callback = callback
        self._lock = threading.Lock()
        self._state = CallState.BUILT
        self._outcome: asyncio.Future[Any] = loop.create_future()
        self._task: asyncio.Task[None] | None = None
        self._delivery_task: asyncio.Task[None] | None = None
        self._stream: ResponseStream | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._write_watchdog: asyncio.TimerHandle | None = None
        self._last_write = 0.0
        self._writing = False

    def __repr__(self) -> str:
        return f"<InFlightCall #{self.id} {self.operation.name} {self._state.value}>"

    def __str__(self) -> str:
        return f"{self.operation.name}#{self.id}"

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> CallState:
        return self._state

    def done(self) -> bool:
        """Whether the outcome (value, stream, or error) has been delivered."""
        return self._outcome.done()

    def finished(self) -> bool:
        """Whether the call reached a terminal state."""
        return self._state in TERMINAL_STATES

    def cancelled(self) -> bool:
        return self._state is CallState.CANCELLED

    def result(self) -> Any:
        """Return the delivered result, raising the delivered error if any."""
        return self._outcome.result()

    def exception(self) -> BaseException | None:
        return self._outcome.exception()

    def __await__(self) -> Generator[Any, None, Any]:
        # shielded so a cancelled awaiter never cancels the shared outcome
        return asyncio.shield(self._outcome).__await__()

    def cancel(self, error: CallCancelledError | None = None) -> bool:
        """Abort the call.

        A pending call is settled with ``CallCancelledError``. A streaming
        call has its stream severed: blocked and later reads raise instead
        of reporting end-of-file. Cancelling a finished call is a no-op.

        Returns:
            True if this invocation performed the cancellation.
        """
        if error is None:
            error = CallCancelledError(f"{self.operation.name} call was cancelled")
        if not self._transition(CallState.CANCELLED):
            return False
        _LOGGER.debug("[%s] Cancelled: %s", self, error)
        self._in_loop(self._after_cancel, error)
        return True

    # -------------------------------------------------------------------------
    # Engine side
    # -------------------------------------------------------------------------

    def start(self, connection: Connection, *, call_timeout: int = 0) -> None:
        """Schedule the exchange on the call's event loop."""
        if call_timeout:
            self._deadline = self._loop.call_later(
                call_timeout / 1000, self._expire, call_timeout
            )
        self._task = self._loop.create_task(
            self._run(connection), name=f"dockwire-{self}"
        )

    async def _run(self, connection: Connection) -> None:
        response: aiohttp.ClientResponse | None = None
        request = self.request
        try:
            data: Any = request.body
            if request.stream is not None:
                data = request.stream.payload(self._note_write)
                if not request.stream.is_buffered and connection.write_timeout:
                    self._arm_write_watchdog(connection.write_timeout)

            if not self._transition(CallState.SENT):
                return
            _LOGGER.debug("[%s] %s %s", self, request.method, request.path)

            response = await connection.session().request(
                request.method,
                connection.url(request.path),
                params=list(request.query),
                headers=dict(request.headers),
                data=data,
            )
            self._writes_done()
            _LOGGER.debug("[%s] HTTP %s", self, response.status)

            if self.result_kind is ResultKind.STREAM:
                await raise_for_status(response)
                stream = ResponseStream(response, on_finish=self._stream_finished)
                self._stream = stream
                if not self._transition(CallState.STREAMING):
                    stream.close()
                    return
                response = None
                self._settle(result=stream)
                return

            result = await decode(response, self.result_kind)
            if self._transition(CallState.COMPLETED):
                self._settle(result=result)
        except asyncio.CancelledError:
            self.cancel()
            raise
        except DockwireError as err:
            self._fail(err)
        except TimeoutError as err:
            self._fail(_chain(CallTimeoutError(f"{self.operation.name} timed out"), err))
        except (aiohttp.ClientError, OSError) as err:
            self._fail(
                _chain(InvocationError(f"{self.operation.name} failed: {err}"), err)
            )
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self, err)
            self._fail(_chain(InvocationError(f"{self.operation.name} failed"), err))
        finally:
            self._writes_done()
            if response is not None:
                if self._state is CallState.CANCELLED:
                    response.close()
                else:
                    response.release()

    def _transition(self, target: CallState) -> bool:
        with self._lock:
            current = self._state
            if current in TERMINAL_STATES:
                return False
            if target is CallState.SENT and current is not CallState.BUILT:
                return False
            _LOGGER.debug("[%s] State: %s → %s", self, current.value, target.value)
            self._state = target
        if target in TERMINAL_STATES:
            self._in_loop(self._clear_timers)
        return True

    def _fail(self, error: BaseException) -> None:
        if self._transition(CallState.FAILED):
            _LOGGER.debug("[%s] Failed: %s", self, error)
            self._settle(error=error)

    def _after_cancel(self, error: BaseException) -> None:
        if self._stream is not None:
            self._stream.abort(error)
        if self._task is not None and not self._task.done():
            if self._task is not asyncio.current_task():
                self._task.cancel()
        self._settle(error=error)

    def _expire(self, timeout: int) -> None:
        self._deadline = None
        _LOGGER.warning("[%s] Call timed out after %d ms", self, timeout)
        self.cancel(CallTimeoutError(f"{self.operation.name} exceeded {timeout} ms"))

    def _stream_finished(self, error: BaseException | None) -> None:
        if error is None:
            self._transition(CallState.COMPLETED)
        else:
            self._transition(CallState.FAILED)

    def _settle(self, *, result: Any = None, error: BaseException | None = None) -> None:
        if self._outcome.done():
            return
        if error is not None:
            self._outcome.set_exception(error)
            # surfaced to the awaiter or the callback, never dropped
            self._outcome.exception()
        else:
            self._outcome.set_result(result)
        if self._callback is not None:
            self._delivery_task = self._loop.create_task(
                self._deliver(), name=f"dockwire-deliver-{self}"
            )

    async def _deliver(self) -> None:
        assert self._callback is not None
        try:
            outcome = self._callback(self)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            _LOGGER.exception("[%s] Callback raised", self)

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _arm_write_watchdog(self, timeout: int) -> None:
        self._writing = True
        self._last_write = self._loop.time()
        self._write_watchdog = self._loop.call_later(
            timeout / 1000, self._check_writes, timeout
        )

    def _note_write(self, _size: int) -> None:
        self._last_write = self._loop.time()

    def _writes_done(self) -> None:
        self._writing = False
        if self._write_watchdog is not None:
            self._write_watchdog.cancel()
            self._write_watchdog = None

    def _check_writes(self, timeout: int) -> None:
        if not self._writing:
            return
        idle_until = self._last_write + timeout / 1000
        if self._loop.time() >= idle_until:
            self._write_watchdog = None
            _LOGGER.warning("[%s] Request body stalled for %d ms", self, timeout)
            self.cancel(
                CallTimeoutError(f"{self.operation.name} write timed out after {timeout} ms")
            )
            return
        self._write_watchdog = self._loop.call_at(idle_until, self._check_writes, timeout)

    def _clear_timers(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        self._writes_done()

    def _in_loop(self, func: Callable[..., None], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            func(*args)
        else:
            self._loop.call_soon_threadsafe(func, *args)


CallCallback = Callable[[InFlightCall], Awaitable[None] | None]


def _chain(error: InvocationError, cause: BaseException) -> InvocationError:
    error.__cause__ = cause
    return error
