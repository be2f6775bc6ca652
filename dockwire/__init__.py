"""Data-driven asyncio client for the container engine HTTP API."""

__version__ = "0.1.0"

from .call import CallState, InFlightCall
from .catalog import (
    CatalogCache,
    OperationSpec,
    ParamLocation,
    ParamSpec,
    available_versions,
    categories,
    describe,
    latest_version,
    list_operations,
)
from .dispatch import Client
from .connection import Connection, connect, connect_from_env
from .errors import (
    CallCancelledError,
    CallTimeoutError,
    CatalogError,
    ConflictingBodyError,
    DecodeError,
    DockwireError,
    HttpStatusError,
    InvocationError,
    MissingParameterError,
    ParameterError,
    UnknownCategoryError,
    UnknownOperationError,
    UnknownParameterError,
    UnsupportedTransportError,
    UnsupportedVersionError,
)
from .response import ResponseStream, ResultKind


def client(
    category: str, conn: Connection, api_version: str | None = None
) -> Client:
    """Bind ``category`` of an API version (latest by default) to ``conn``."""
    return Client(category, conn, api_version)


__all__ = [
    "CallCancelledError",
    "CallState",
    "CallTimeoutError",
    "CatalogCache",
    "CatalogError",
    "Client",
    "ConflictingBodyError",
    "Connection",
    "DecodeError",
    "DockwireError",
    "HttpStatusError",
    "InFlightCall",
    "InvocationError",
    "MissingParameterError",
    "OperationSpec",
    "ParamLocation",
    "ParamSpec",
    "ParameterError",
    "ResponseStream",
    "ResultKind",
    "UnknownCategoryError",
    "UnknownOperationError",
    "UnknownParameterError",
    "UnsupportedTransportError",
    "UnsupportedVersionError",
    "__version__",
    "available_versions",
    "categories",
    "client",
    "connect",
    "connect_from_env",
    "describe",
    "latest_version",
    "list_operations",
]
