"""
Reverse proxy that adds a fixed delay to every request before forwarding it.

Used to approximate network latency between the replicating client and the
remote CouchDB server. Run standalone with:

    COUCH_HOST=http://localhost:5984 PROXY_LATENCY_MS=100 python proxy.py
"""
from __future__ import annotations

import asyncio
import logging
import os
import socket

import fastapi
import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.concurrency import asynccontextmanager

from config import PROXY_PORT, couch_host

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "COPY", "OPTIONS", "PATCH"]

# Headers that describe a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def _forwardable(items, drop: set[str]) -> list[tuple[str, str]]:
    return [(k, v) for k, v in items if k.lower() not in HOP_BY_HOP_HEADERS | drop]


def create_proxy_app(target: str, added_latency_ms: float, client: httpx.AsyncClient | None = None) -> FastAPI:
    """Build an app forwarding every request to `target` after `added_latency_ms`.

    The request path goes upstream byte for byte, so escaped ids such as
    a%2Fb stay one path segment.
    """
    delay_s = added_latency_ms / 1000

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = client is None
        app.state.client = client or httpx.AsyncClient(base_url=target, timeout=None)
        yield
        if owned:
            await app.state.client.aclose()

    app = fastapi.FastAPI(lifespan=lifespan)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def forward(request: Request, path: str):
        await asyncio.sleep(delay_s)
        raw_path = request.scope["raw_path"].decode("ascii")
        upstream_client: httpx.AsyncClient = request.app.state.client
        upstream_request = upstream_client.build_request(
            request.method,
            httpx.URL(path=raw_path, query=request.url.query.encode()),
            headers=_forwardable(request.headers.items(), {"host", "content-length"}),
            content=await request.body(),
        )
        try:
            upstream = await upstream_client.send(upstream_request)
        except httpx.HTTPError as e:
            logger.error(f"Forwarding {request.method} {raw_path} to {target} failed: {e}")
            raise
        response = Response(content=upstream.content, status_code=upstream.status_code)
        # httpx has already decoded the body, so the encoding/length headers no longer apply.
        # Repeated headers such as Set-Cookie are kept as separate lines.
        response.raw_headers.extend(
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in _forwardable(upstream.headers.multi_items(), {"content-encoding", "content-length"})
        )
        return response

    return app


class AppServer:
    """Serve an ASGI app with uvicorn inside the running event loop.

    The listening socket is bound before uvicorn starts so a busy port raises
    OSError here. Port 0 picks a free port.
    """

    def __init__(self, app: FastAPI, host: str = "127.0.0.1", port: int = 0):
        self.app = app
        self.host = host
        self.port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def __aenter__(self) -> AppServer:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", lifespan="on")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError(f"Server on {self.url} exited during startup")
            await asyncio.sleep(0.01)
        logger.debug(f"Serving on {self.url}")

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._socket.close()
            self._server = None
            self._task = None
            self._socket = None
        logger.debug(f"Stopped server on {self.url}")


class ThrottleProxy(AppServer):
    """Latency-injecting reverse proxy in front of one upstream origin."""

    def __init__(
        self,
        target: str,
        added_latency_ms: float,
        host: str = "127.0.0.1",
        port: int = PROXY_PORT,
    ):
        upstream = httpx.URL(target)
        self.target = f"{upstream.scheme}://{upstream.netloc.decode()}"
        self.added_latency_ms = added_latency_ms
        super().__init__(create_proxy_app(self.target, added_latency_ms), host=host, port=port)

    def proxied_url(self, url: str) -> str:
        """Rewrite a URL on the upstream origin to go through this proxy."""
        remote = httpx.URL(url)
        return str(remote.copy_with(scheme="http", host=self.host, port=self.port))

    async def start(self) -> None:
        await super().start()
        logger.info(f"Throttle proxy {self.url} -> {self.target} (+{self.added_latency_ms}ms)")


async def _serve_forever(target: str, added_latency_ms: float, port: int) -> None:
    async with ThrottleProxy(target, added_latency_ms, host="0.0.0.0", port=port):
        await asyncio.Event().wait()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    latency = float(os.environ.get("PROXY_LATENCY_MS", "10"))
    asyncio.run(_serve_forever(couch_host(), latency, PROXY_PORT))
