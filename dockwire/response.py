"""Decoding of engine responses into values, strings, or live streams."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

import aiohttp

from .errors import (
    CallCancelledError,
    CallTimeoutError,
    DecodeError,
    HttpStatusError,
    InvocationError,
)

_LOGGER = logging.getLogger(__name__)


class ResultKind(Enum):
    """Shape a caller wants an operation's result in."""

    VALUE = "value"
    STRING = "string"
    STREAM = "stream"

    @classmethod
    def coerce(cls, kind: ResultKind | str) -> ResultKind:
        if isinstance(kind, cls):
            return kind
        try:
            return cls(kind)
        except ValueError:
            raise ValueError(f"Unknown result kind: {kind!r}") from None


def _is_success(status: int) -> bool:
    return 200 <= status < 300


def _error_message(status: int, body: str) -> str:
    # the engine reports failures as {"message": "..."}
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return f"HTTP {status}: {payload['message']}"
    return f"HTTP {status}: {body}" if body else f"HTTP {status}"


async def raise_for_status(response: aiohttp.ClientResponse) -> None:
    """Raise ``HttpStatusError`` with the body of a non-2xx response."""
    if _is_success(response.status):
        return
    body = await response.text(errors="replace")
    raise HttpStatusError(response.status, body, _error_message(response.status, body))


async def decode(response: aiohttp.ClientResponse, kind: ResultKind) -> Any:
    """Buffer and decode a response as a JSON value or literal string."""
    if kind is ResultKind.STREAM:
        raise ValueError("Streaming results are bound by the owning call")

    await raise_for_status(response)
    raw = await response.read()

    if kind is ResultKind.STRING:
        return raw.decode("utf-8", errors="replace")

    if not raw.strip():
        raise DecodeError(f"Expected a JSON body, got an empty one (HTTP {response.status})")
    try:
        return json.loads(raw)
    except ValueError as err:
        raise DecodeError(f"Response body is not valid JSON: {err}") from err


class ResponseStream:
    """Readable byte stream bound to a still-open engine response.

    Reads are delivered in the order the engine sent them. Draining the
    stream to end-of-file completes the owning call; ``close`` ends it early.
    ``abort`` severs the stream: any read that is blocked, and every read
    after it, raises the abort error instead of reporting end-of-file.
    """

    def __init__(
        self,
        response: aiohttp.ClientResponse,
        *,
        on_finish: Callable[[BaseException | None], None] | None = None,
    ) -> None:
        self._response = response
        self._content = response.content
        self._on_finish = on_finish
        self._error: BaseException | None = None
        self._closed = False
        self._finished = False

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def headers(self) -> Any:
        return self._response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    def at_eof(self) -> bool:
        return self._content.at_eof()

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes, or everything until EOF when ``n`` is -1."""
        return await self._guarded(self._content.read, n)

    async def readany(self) -> bytes:
        return await self._guarded(self._content.readany)

    async def readline(self) -> bytes:
        return await self._guarded(self._content.readline)

    async def readexactly(self, n: int) -> bytes:
        return await self._guarded(self._content.readexactly, n)

    async def iter_chunked(self, n: int) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read(n)
            if not chunk:
                return
            yield chunk

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[bytes]:
        while True:
            line = await self.readline()
            if not line:
                return
            yield line

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the response, closing the connection if it is not drained."""
        if self._closed:
            return
        self._closed = True
        if self._content.at_eof():
            self._response.release()
        else:
            self._response.close()
        self._finish(None)

    def abort(self, error: BaseException) -> None:
        """Sever the stream so outstanding and future reads raise ``error``."""
        if self._error is not None:
            return
        self._error = error
        self._closed = True
        self._finished = True
        self._content.set_exception(error)
        self._response.close()

    async def _guarded(self, reader: Callable[..., Any], *args: Any) -> bytes:
        if self._error is not None:
            raise self._error
        if self._closed:
            raise InvocationError("Response stream is closed")
        try:
            data = await reader(*args)
        except CallCancelledError:
            raise
        except TimeoutError as err:
            if self._error is not None:
                raise self._error from err
            error = CallTimeoutError("Timed out reading response stream")
            self._fail(error)
            raise error from err
        except (aiohttp.ClientError, OSError) as err:
            if self._error is not None:
                raise self._error from err
            error = InvocationError(f"Response stream failed: {err}")
            self._fail(error)
            raise error from err
        if self._content.at_eof():
            self._finish(None)
        return data

    def _fail(self, error: BaseException) -> None:
        self._error = error
        self._closed = True
        self._response.close()
        self._finish(error)

    def _finish(self, error: BaseException | None) -> None:
        if self._finished:
            return
        self._finished = True
        if self._on_finish is not None:
            self._on_finish(error)
