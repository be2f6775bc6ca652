"""Category-scoped client that invokes engine operations by name."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from .call import CallCallback, InFlightCall
from .catalog import Catalog, OperationSpec
from .connection import Connection
from .request import build
from .response import ResultKind

_LOGGER = logging.getLogger(__name__)


class Client:
    """Operations of one category, in one API version, over one connection.

    Usage:
        conn = connect("unix:///var/run/docker.sock")
        containers = Client("containers", conn)
        listing = await containers.invoke("ContainerList", {"all": True})
        call = containers.submit("ContainerWait", {"id": "web"}, callback=on_exit)
    """

    def __init__(
        self,
        category: str,
        connection: Connection,
        api_version: str | None = None,
    ) -> None:
        self._catalog: Catalog = connection.catalog.get(api_version)
        # fail on an unknown category here rather than on first invoke
        self._catalog.operations(category)
        self.category = category
        self.connection = connection

    def __repr__(self) -> str:
        return f"<Client {self.category} {self.api_version} via {self.connection.uri}>"

    @property
    def api_version(self) -> str:
        return self._catalog.version

    def ops(self) -> set[str]:
        """Names of the operations this client can invoke."""
        return self._catalog.operations(self.category)

    def doc(self, name: str) -> dict[str, Any]:
        """Documentation and parameter descriptors of an operation."""
        return self._catalog.describe(self.category, name)

    def operation(self, name: str) -> OperationSpec:
        return self._catalog.operation(self.category, name)

    async def invoke(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        result_kind: ResultKind | str | None = None,
    ) -> Any:
        """Invoke an operation and wait for its result.

        Returns the decoded JSON value, the body as a string, or an open
        ``ResponseStream`` depending on ``result_kind``; by default the shape
        documented for the operation.

        Raises:
            ParameterError: Parameters do not match the operation.
            UnknownOperationError: No such operation in this category.
            InvocationError: The exchange failed, including non-2xx statuses,
                undecodable bodies, cancellation, and timeouts.
        """
        call = self._start(name, params, result_kind, callback=None)
        try:
            return await call
        except asyncio.CancelledError:
            call.cancel()
            raise

    def submit(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        callback: CallCallback,
        result_kind: ResultKind | str | None = None,
    ) -> InFlightCall:
        """Start an operation and return its in-flight handle immediately.

        ``callback`` receives the ``InFlightCall`` exactly once, when its
        result or error is available; it runs in a task on the event loop and
        may be a plain function or a coroutine function. Parameter and
        catalog errors are raised here, before anything is sent.
        """
        return self._start(name, params, result_kind, callback=callback)

    def _start(
        self,
        name: str,
        params: Mapping[str, Any] | None,
        result_kind: ResultKind | str | None,
        *,
        callback: CallCallback | None,
    ) -> InFlightCall:
        loop = asyncio.get_running_loop()
        operation = self.operation(name)
        kind = (
            operation.default_result_kind
            if result_kind is None
            else ResultKind.coerce(result_kind)
        )
        request = build(operation, params, base_path=self._catalog.base_path)
        call = InFlightCall(operation, request, kind, loop=loop, callback=callback)
        _LOGGER.debug("[%s] Submitting as %s", call, kind.value)
        call.start(self.connection, call_timeout=self.connection.call_timeout)
        return call
