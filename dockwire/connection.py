"""Transport connection to the engine over a Unix socket or TCP."""

from __future__ import annotations

import logging
import os
from typing import Final
from urllib.parse import urlsplit

import aiohttp

from .catalog import DEFAULT_CACHE, CatalogCache
from .errors import UnsupportedTransportError

_LOGGER = logging.getLogger(__name__)

DEFAULT_HOST: Final = "unix:///var/run/docker.sock"
DEFAULT_TCP_PORT: Final = 2375
DEFAULT_CONNECT_TIMEOUT_MS: Final = 10_000
DEFAULT_READ_TIMEOUT_MS: Final = 10_000
DEFAULT_WRITE_TIMEOUT_MS: Final = 10_000
DEFAULT_CALL_TIMEOUT_MS: Final = 0

# the host part of the URL is ignored by the engine on a Unix socket
_UNIX_BASE_URL: Final = "http://localhost"


def _seconds(millis: int) -> float | None:
    """Convert a millisecond timeout to seconds; zero disables the bound."""
    return millis / 1000 if millis else None


def _checked_timeout(name: str, value: int | None, default: int) -> int:
    if value is None:
        return default
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return int(value)


class Connection:
    """Configured, shareable transport to one engine endpoint.

    Configuration is fixed at creation. The underlying ``aiohttp`` session is
    created on first use, inside the running event loop, and is shared by all
    concurrent invocations made through this connection.
    """

    def __init__(
        self,
        uri: str,
        *,
        base_url: str,
        socket_path: str | None = None,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_MS,
        read_timeout: int = DEFAULT_READ_TIMEOUT_MS,
        write_timeout: int = DEFAULT_WRITE_TIMEOUT_MS,
        call_timeout: int = DEFAULT_CALL_TIMEOUT_MS,
        catalog: CatalogCache | None = None,
    ) -> None:
        self._uri = uri
        self._base_url = base_url
        self._socket_path = socket_path
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._call_timeout = call_timeout
        self._catalog = catalog or DEFAULT_CACHE
        self._session: aiohttp.ClientSession | None = None

    def __repr__(self) -> str:
        return f"<Connection {self._uri}>"

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def socket_path(self) -> str | None:
        return self._socket_path

    @property
    def connect_timeout(self) -> int:
        """Connect timeout in milliseconds."""
        return self._connect_timeout

    @property
    def read_timeout(self) -> int:
        """Socket read timeout in milliseconds."""
        return self._read_timeout

    @property
    def write_timeout(self) -> int:
        """Idle timeout for streamed request bodies in milliseconds."""
        return self._write_timeout

    @property
    def call_timeout(self) -> int:
        """Overall per-invocation deadline in milliseconds, 0 for none."""
        return self._call_timeout

    @property
    def catalog(self) -> CatalogCache:
        return self._catalog

    def client_timeout(self) -> aiohttp.ClientTimeout:
        # the overall deadline is enforced per call, not by aiohttp
        return aiohttp.ClientTimeout(
            total=None,
            connect=_seconds(self._connect_timeout),
            sock_read=_seconds(self._read_timeout),
        )

    def url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def session(self) -> aiohttp.ClientSession:
        """Return the shared session, creating it in the running loop."""
        if self._session is not None and not self._session.closed:
            return self._session

        if self._socket_path is not None:
            connector: aiohttp.BaseConnector = aiohttp.UnixConnector(path=self._socket_path)
        else:
            connector = aiohttp.TCPConnector()
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=self.client_timeout(),
        )
        _LOGGER.info("Opened engine session to %s", self._uri)
        return self._session

    async def close(self) -> None:
        """Close the shared session and every pooled connection."""
        if self._session is None:
            return
        session, self._session = self._session, None
        if not session.closed:
            await session.close()
            _LOGGER.info("Closed engine session to %s", self._uri)

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def connect(
    uri: str,
    *,
    connect_timeout: int | None = None,
    read_timeout: int | None = None,
    write_timeout: int | None = None,
    call_timeout: int | None = None,
    catalog: CatalogCache | None = None,
) -> Connection:
    """Create a connection to the engine at ``uri``.

    ``uri`` is either ``unix:///path/to/engine.sock`` or ``tcp://host:port``.
    Timeouts are in milliseconds. No I/O happens here; the endpoint is first
    contacted by the first invocation.

    Raises:
        UnsupportedTransportError: The scheme is not ``unix`` or ``tcp``, or
            the URI is malformed for its scheme.
        ValueError: A timeout is negative.
    """
    parts = urlsplit(uri)
    options = {
        "connect_timeout": _checked_timeout(
            "connect_timeout", connect_timeout, DEFAULT_CONNECT_TIMEOUT_MS
        ),
        "read_timeout": _checked_timeout(
            "read_timeout", read_timeout, DEFAULT_READ_TIMEOUT_MS
        ),
        "write_timeout": _checked_timeout(
            "write_timeout", write_timeout, DEFAULT_WRITE_TIMEOUT_MS
        ),
        "call_timeout": _checked_timeout(
            "call_timeout", call_timeout, DEFAULT_CALL_TIMEOUT_MS
        ),
    }

    if parts.scheme == "unix":
        if parts.netloc or not parts.path.startswith("/"):
            raise UnsupportedTransportError(uri)
        return Connection(
            uri,
            base_url=_UNIX_BASE_URL,
            socket_path=parts.path,
            catalog=catalog,
            **options,
        )

    if parts.scheme == "tcp":
        try:
            port = parts.port or DEFAULT_TCP_PORT
        except ValueError:
            raise UnsupportedTransportError(uri) from None
        if not parts.hostname:
            raise UnsupportedTransportError(uri)
        host = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
        return Connection(
            uri,
            base_url=f"http://{host}:{port}",
            catalog=catalog,
            **options,
        )

    raise UnsupportedTransportError(uri)


def connect_from_env(**kwargs: object) -> Connection:
    """Connect to the engine named by ``DOCKER_HOST``, or the default socket."""
    uri = os.environ.get("DOCKER_HOST") or DEFAULT_HOST
    _LOGGER.debug("Resolved engine endpoint %s", uri)
    return connect(uri, **kwargs)  # type: ignore[arg-type]
