"""Pytest configuration and fixtures for dockwire tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import dockwire
from dockwire.catalog import CatalogCache

API = "/v1.40"

PULL_EVENT: dict[str, Any] = {
    "status": "pull",
    "id": "busybox:musl",
    "Type": "image",
    "Action": "pull",
    "Actor": {"ID": "busybox:musl", "Attributes": {"name": "busybox"}},
    "scope": "local",
    "time": 1700000000,
    "timeNano": 1700000000000000000,
}


@dataclass
class FakeEngine:
    """In-process stand-in for the engine API, recording what it receives."""

    containers: dict[str, dict[str, Any]] = field(default_factory=dict)
    archives: dict[str, bytes] = field(default_factory=dict)
    requests: list[web.Request] = field(default_factory=list)
    content_types: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=lambda: [PULL_EVENT, PULL_EVENT])
    slow_delay: float = 0.3
    release: asyncio.Event = field(default_factory=asyncio.Event)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(f"{API}/_ping", self.ping)
        app.router.add_post(f"{API}/containers/create", self.create_container)
        app.router.add_put(f"{API}/containers/{{id}}/archive", self.put_archive)
        app.router.add_post(f"{API}/containers/{{id}}/start", self.start_container)
        app.router.add_delete(f"{API}/containers/{{id}}", self.delete_container)
        app.router.add_post(f"{API}/containers/{{id}}/wait", self.wait_container)
        app.router.add_get(f"{API}/images/json", self.list_images)
        app.router.add_get(f"{API}/events", self.events_feed)
        app.router.add_get(f"{API}/info", self.broken_info)
        return app

    async def ping(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        return web.Response(text="OK")

    async def create_container(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        self.content_types.append(request.headers.get("Content-Type", ""))
        body = await request.json()
        name = request.query.get("name", "anonymous")
        if "Image" not in body:
            return web.json_response({"message": "no image specified"}, status=400)
        self.containers[name] = body
        return web.json_response({"Id": f"id-{name}", "Warnings": []}, status=201)

    async def put_archive(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        self.content_types.append(request.headers.get("Content-Type", ""))
        container = request.match_info["id"]
        if container not in self.containers:
            return web.json_response(
                {"message": f"No such container: {container}"}, status=404
            )
        self.archives[container] = await request.read()
        return web.Response(status=200)

    async def start_container(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        return web.Response(status=204)

    async def delete_container(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        container = request.match_info["id"]
        if self.containers.pop(container, None) is None:
            return web.json_response(
                {"message": f"No such container: {container}"}, status=404
            )
        return web.Response(status=204)

    async def wait_container(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        await asyncio.sleep(self.slow_delay)
        return web.json_response({"StatusCode": 0})

    async def list_images(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        image = {"Id": "sha256:deadbeef", "Created": 1700000000, "RepoTags": ["busybox:musl"]}
        if request.query.get("digests") == "true":
            image["RepoDigests"] = ["busybox@sha256:deadbeef"]
        return web.json_response([image])

    async def events_feed(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request)
        response = web.StreamResponse()
        response.content_type = "application/json"
        await response.prepare(request)
        for event in self.events:
            await response.write(json.dumps(event).encode() + b"\n")
        # keep the feed open like a live event stream
        await self.release.wait()
        return response

    async def broken_info(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        return web.Response(text="not json at all", content_type="application/json")


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
async def engine_server(engine: FakeEngine) -> AsyncIterator[TestServer]:
    """Run the fake engine on a local TCP port."""
    server = TestServer(engine.app())
    await server.start_server()
    yield server
    engine.release.set()
    await server.close()


@pytest.fixture
async def unix_engine(engine: FakeEngine, tmp_path) -> AsyncIterator[str]:
    """Run the fake engine on a Unix socket and yield its URI."""
    path = tmp_path / "engine.sock"
    runner = web.AppRunner(engine.app())
    await runner.setup()
    site = web.UnixSite(runner, str(path))
    await site.start()
    yield f"unix://{path}"
    engine.release.set()
    await runner.cleanup()


@pytest.fixture
async def conn(engine_server: TestServer) -> AsyncIterator[dockwire.Connection]:
    """Connection to the TCP fake engine, closed after the test."""
    connection = dockwire.connect(f"tcp://{engine_server.host}:{engine_server.port}")
    yield connection
    await connection.close()


@pytest.fixture
def catalog() -> CatalogCache:
    """Fresh catalog cache over the bundled documents."""
    return CatalogCache()


def create_mock_response(
    status: int = 200,
    read_data: bytes = b"",
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock aiohttp response.

    Args:
        status: HTTP status code
        read_data: Data to return from read() call
        text_data: Data to return from text() call, defaults to read_data

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status
    response.read.return_value = read_data
    response.text.return_value = (
        text_data if text_data is not None else read_data.decode("utf-8")
    )
    response.release = MagicMock()
    response.close = MagicMock()
    return response
