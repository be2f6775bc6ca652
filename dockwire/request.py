"""Construction of concrete HTTP requests from operation specs."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final
from urllib.parse import quote

from .catalog import OperationSpec, ParamLocation
from .errors import (
    ConflictingBodyError,
    MissingParameterError,
    UnknownParameterError,
)

CHUNK_SIZE: Final = 64 * 1024
JSON_CONTENT_TYPE: Final = "application/json"
STREAM_CONTENT_TYPE: Final = "application/octet-stream"

_PATH_PARAM_RE: Final = re.compile(r"\{([^}]+)\}")


class StreamBody:
    """Raw byte source sent verbatim as a request body.

    Accepts ``bytes``-like objects, binary file objects, and sync or async
    iterables of ``bytes``. Non-bytes sources are sent chunked.
    """

    def __init__(self, source: Any) -> None:
        if isinstance(source, str):
            raise TypeError("Stream parameters take bytes, not str")
        if not (
            isinstance(source, (bytes, bytearray, memoryview))
            or hasattr(source, "read")
            or isinstance(source, (AsyncIterable, Iterable))
        ):
            raise TypeError(f"Unsupported stream source: {type(source).__name__}")
        self._source = source

    @property
    def is_buffered(self) -> bool:
        return isinstance(self._source, (bytes, bytearray, memoryview))

    def payload(self, on_progress: Callable[[int], None] | None = None) -> Any:
        """Return data suitable for ``aiohttp`` request ``data=``."""
        if self.is_buffered:
            return bytes(self._source)
        return self._chunks(on_progress)

    async def _chunks(
        self, on_progress: Callable[[int], None] | None
    ) -> AsyncIterator[bytes]:
        async for chunk in self._iter_source():
            if not chunk:
                continue
            yield bytes(chunk)
            # resumed once the transport has accepted the chunk
            if on_progress is not None:
                on_progress(len(chunk))

    async def _iter_source(self) -> AsyncIterator[bytes]:
        source = self._source
        if hasattr(source, "read"):
            loop = asyncio.get_running_loop()
            while True:
                chunk = await loop.run_in_executor(None, source.read, CHUNK_SIZE)
                if not chunk:
                    return
                yield chunk
        elif isinstance(source, AsyncIterable):
            async for chunk in source:
                yield chunk
        else:
            for chunk in source:
                yield chunk


@dataclass(frozen=True, slots=True)
class HttpRequest:
    """Fully resolved request for one invocation."""

    operation: str
    method: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None
    stream: StreamBody | None = None


def encode_query_value(value: Any) -> list[str]:
    """Encode one query value the way the engine expects it."""
    if isinstance(value, bool):
        return ["true" if value else "false"]
    if isinstance(value, Mapping):
        return [json.dumps(value, separators=(",", ":"))]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [item for entry in value for item in encode_query_value(entry)]
    return [str(value)]


def _expand_path(operation: OperationSpec, values: Mapping[str, Any]) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        return quote(str(values[name]), safe="/:")

    return _PATH_PARAM_RE.sub(substitute, operation.path)


def build(
    operation: OperationSpec,
    params: Mapping[str, Any] | None = None,
    *,
    base_path: str = "",
) -> HttpRequest:
    """Validate ``params`` against ``operation`` and build its request.

    Raises:
        UnknownParameterError: A supplied name is not declared.
        MissingParameterError: A required parameter is absent.
        ConflictingBodyError: Both a JSON body and a stream were supplied.
    """
    supplied = {k: v for k, v in (params or {}).items() if v is not None}

    unknown = [name for name in supplied if operation.param(name) is None]
    if unknown:
        raise UnknownParameterError(operation.name, unknown)

    for param in operation.params:
        if param.required and param.name not in supplied:
            raise MissingParameterError(operation.name, param.name)

    body_param = next(
        (p for p in operation.params_in(ParamLocation.BODY) if p.name in supplied), None
    )
    stream_param = next(
        (p for p in operation.params_in(ParamLocation.STREAM) if p.name in supplied), None
    )
    if body_param is not None and stream_param is not None:
        raise ConflictingBodyError(operation.name, body_param.name, stream_param.name)

    path_values = {
        p.name: supplied[p.name] for p in operation.params_in(ParamLocation.PATH)
    }
    query = tuple(
        (p.name, encoded)
        for p in operation.params_in(ParamLocation.QUERY)
        if p.name in supplied
        for encoded in encode_query_value(supplied[p.name])
    )
    headers = {
        p.name: str(supplied[p.name])
        for p in operation.params_in(ParamLocation.HEADER)
        if p.name in supplied
    }

    body: bytes | None = None
    stream: StreamBody | None = None
    if body_param is not None:
        body = json.dumps(supplied[body_param.name]).encode("utf-8")
        _set_content_type(headers, JSON_CONTENT_TYPE)
    elif stream_param is not None:
        stream = StreamBody(supplied[stream_param.name])
        _set_content_type(headers, STREAM_CONTENT_TYPE)

    return HttpRequest(
        operation=operation.name,
        method=operation.method,
        path=base_path + _expand_path(operation, path_values),
        query=query,
        headers=headers,
        body=body,
        stream=stream,
    )


def _set_content_type(headers: dict[str, str], content_type: str) -> None:
    # an explicit header parameter (e.g. ImageBuild's Content-type) wins
    if any(name.lower() == "content-type" for name in headers):
        return
    headers["Content-Type"] = content_type
