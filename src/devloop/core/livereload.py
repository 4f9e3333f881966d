"""Browser live reload over a websocket."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import Response

from devloop.errors import DevloopError
from devloop.models.project import LiveReloadConfig

logger = logging.getLogger(__name__)

RELOAD_MESSAGE = "full_reload"
ENDPOINT = "/livereload"
SCRIPT_PATH = "/livereload.js"

# Include with <script src="http://localhost:35729/livereload.js"></script>.
# The client does not reconnect once the socket closes.
_CLIENT_SCRIPT = """(function () {
    const scheme = document.location.protocol == "https:" ? "wss" : "ws";
    const endpoint = scheme + "://" + document.location.hostname + ":%(port)d%(endpoint)s";

    w = new WebSocket(endpoint);
    w.onopen = function () {
        console.info("LiveReload: initialization");
    };
    w.onclose = function () {
        console.info("LiveReload: terminated");
    };
    w.onmessage = function (message) {
        window.location.reload();
    };
}());"""


def client_script(port: int) -> str:
    return _CLIENT_SCRIPT % {"port": port, "endpoint": ENDPOINT}


class LiveReloadNotifier:
    """Serve the reload endpoint and broadcast reload signals to browsers.

    Disabled configurations and non-positive ports make every method a no-op.
    """

    def __init__(self, config: LiveReloadConfig, *, host: str = "0.0.0.0") -> None:
        self._config = config
        self._host = host
        self._clients: set[WebSocket] = set()
        self._clients_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: uvicorn.Server | None = None
        self._server_lock = threading.Lock()
        self._stopping = False
        self.app = self._create_app()

    @property
    def enabled(self) -> bool:
        return not self._config.disable and self._config.port > 0

    @property
    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    def listen_and_serve(self) -> None:
        """Serve until ``shutdown``; returns immediately when disabled."""
        if not self.enabled:
            return
        config = uvicorn.Config(
            self.app,
            host=self._host,
            port=self._config.port,
            log_level="warning",
            lifespan="on",
        )
        with self._server_lock:
            if self._stopping:
                return
            self._server = uvicorn.Server(config)
        logger.info("live reload listening on :%d", self._config.port)
        try:
            self._server.run()
        except SystemExit as exc:
            # uvicorn exits the process when it cannot bind.
            msg = f"live reload: cannot listen on port {self._config.port}"
            raise DevloopError(msg) from exc

    def shutdown(self) -> None:
        with self._server_lock:
            self._stopping = True
            if self._server is not None:
                self._server.should_exit = True

    def send_reload_signal(self) -> None:
        """Tell every connected browser to reload; safe to call from any thread."""
        if not self.enabled:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(self.broadcast(RELOAD_MESSAGE))
            return
        future = asyncio.run_coroutine_threadsafe(self.broadcast(RELOAD_MESSAGE), loop)
        try:
            future.result(timeout=5)
        except TimeoutError:
            logger.warning("live reload signal timed out")

    async def broadcast(self, message: str) -> None:
        with self._clients_lock:
            clients = list(self._clients)
        for client in clients:
            try:
                await client.send_text(message)
            except (WebSocketDisconnect, RuntimeError, OSError):
                self._discard(client)

    def _discard(self, websocket: WebSocket) -> None:
        with self._clients_lock:
            self._clients.discard(websocket)

    def _create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(_: FastAPI) -> AsyncIterator[None]:
            self._loop = asyncio.get_running_loop()
            yield

        app = FastAPI(
            title="devloop live reload",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=lifespan,
        )
        script = client_script(self._config.port)

        @app.get(SCRIPT_PATH)
        async def livereload_js() -> Response:
            return Response(content=script, media_type="application/javascript")

        @app.websocket(ENDPOINT)
        async def livereload(websocket: WebSocket) -> None:
            await websocket.accept()
            self._loop = asyncio.get_running_loop()
            with self._clients_lock:
                self._clients.add(websocket)
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return
            finally:
                self._discard(websocket)

        return app
