"""Local aiohttp servers for tests that need a real socket."""

import asyncio
import contextlib
from typing import AsyncIterator, List

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer


@contextlib.asynccontextmanager
async def serve(app: web.Application, *gates: asyncio.Event) -> AsyncIterator[TestServer]:
    """Run ``app`` on a free port; gates are released before shutdown so blocked handlers exit."""

    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        for gate in gates:
            gate.set()
        await server.close()


@contextlib.asynccontextmanager
async def client_for(app: web.Application) -> AsyncIterator[TestClient]:
    client = TestClient(TestServer(app))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


def page_app(routes: dict, hits: List[web.Request]) -> web.Application:
    """Serve ``{path: (status, body)}`` and record every request."""

    async def handler(request: web.Request) -> web.Response:
        hits.append(request)
        status, body = routes.get(request.path, (404, "missing"))
        return web.Response(status=status, text=body, content_type="text/html")

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    return app
