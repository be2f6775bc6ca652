"""Error types raised by the dockwire engine client."""

from __future__ import annotations

from collections.abc import Iterable


class DockwireError(Exception):
    """Base error for dockwire client failures."""


class UnsupportedTransportError(DockwireError, ValueError):
    """Connection URI uses a scheme the client cannot speak."""

    def __init__(self, uri: str) -> None:
        super().__init__(f"Unsupported transport in URI: {uri!r}")
        self.uri = uri


class CatalogError(DockwireError):
    """Operation catalog lookup failed."""


class UnsupportedVersionError(CatalogError):
    """No bundled catalog exists for the requested API version."""

    def __init__(self, version: str) -> None:
        super().__init__(f"No API catalog bundled for version {version!r}")
        self.version = version


class UnknownCategoryError(CatalogError):
    """Category is not present in the API version."""

    def __init__(self, category: str, version: str) -> None:
        super().__init__(f"Unknown category {category!r} in API {version}")
        self.category = category
        self.version = version


class UnknownOperationError(CatalogError):
    """Operation is not present in the category."""

    def __init__(self, operation: str, category: str, version: str) -> None:
        super().__init__(
            f"Unknown operation {operation!r} in category {category!r} of API {version}"
        )
        self.operation = operation
        self.category = category
        self.version = version


class ParameterError(DockwireError, ValueError):
    """Invocation parameters do not match the operation."""


class MissingParameterError(ParameterError):
    """Required parameter was not supplied."""

    def __init__(self, operation: str, name: str) -> None:
        super().__init__(f"{operation}: missing required parameter {name!r}")
        self.operation = operation
        self.name = name


class UnknownParameterError(ParameterError):
    """Parameters were supplied that the operation does not declare."""

    def __init__(self, operation: str, names: Iterable[str]) -> None:
        self.names = tuple(sorted(names))
        super().__init__(
            f"{operation}: unknown parameter(s) {', '.join(self.names)}"
        )
        self.operation = operation


class ConflictingBodyError(ParameterError):
    """Both a JSON body and a streamed body were supplied."""

    def __init__(self, operation: str, body: str, stream: str) -> None:
        super().__init__(
            f"{operation}: body parameter {body!r} and stream parameter "
            f"{stream!r} are mutually exclusive"
        )
        self.operation = operation


class InvocationError(DockwireError):
    """Exchange with the engine failed."""


class HttpStatusError(InvocationError):
    """Engine answered with a non-2xx status."""

    def __init__(self, code: int, body: str, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {code}: {body}")
        self.code = code
        self.body = body


class DecodeError(InvocationError):
    """Response body could not be decoded into the requested shape."""


class CallCancelledError(InvocationError):
    """Call was cancelled before or while its result was consumed."""


class CallTimeoutError(CallCancelledError, TimeoutError):
    """Call exceeded one of its configured timeouts."""
