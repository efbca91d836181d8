"""Local OAuth callback listener.

Serves ``GET <callback_path>?code=...&state=...`` on a loopback port and
hands the first complete callback of an attempt to whoever awaits it.
Every other method or path answers 404.
"""

import asyncio
import contextlib
import socket
from dataclasses import dataclass
from typing import Iterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.errors import CallbackBindError
from shared.logging import get_logger

logger = get_logger(__name__)

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authorization complete</title></head>
  <body>
    <h1>Authorization successful!</h1>
    <p>You may close this window and return to your MCP client.</p>
    <script>setTimeout(() => window.close(), 1000)</script>
  </body>
</html>
"""


@dataclass(frozen=True)
class CallbackResult:
    """Query parameters delivered to the callback endpoint."""
    code: str
    state: Optional[str]


def create_callback_app(callback_path: str, listener: "CallbackListener") -> FastAPI:
    """Build the ASGI app serving the callback endpoint."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        # Unknown paths and wrong methods look identical to the outside
        return PlainTextResponse("Not found", status_code=404)

    @app.get(callback_path, response_class=HTMLResponse)
    async def oauth_callback(request: Request):
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        if not code:
            error = request.query_params.get("error", "missing authorization code")
            logger.warning("Callback received without authorization code", error=error)
            return PlainTextResponse("Error: No authorization code received", status_code=400)

        listener.deliver(CallbackResult(code=code, state=state))
        return HTMLResponse(SUCCESS_PAGE)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the caller."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class CallbackListener:
    """
    Loopback HTTP listener for authorization callbacks.

    Each attempt calls ``expect()`` to obtain a fresh single-resolution
    future; the next callback resolves it and later callbacks are ignored
    until a new attempt starts.
    """

    def __init__(
        self,
        port: int,
        host: str = "localhost",
        callback_path: str = "/oauth/callback"
    ) -> None:
        self.port = port
        self.host = host
        self.callback_path = callback_path
        self.app = create_callback_app(callback_path, self)

        self._socket: Optional[socket.socket] = None
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _bind(self) -> socket.socket:
        bind_host = "127.0.0.1" if self.host == "localhost" else self.host
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((bind_host, self.port))
            sock.listen(16)
        except OSError as e:
            sock.close()
            raise CallbackBindError(
                f"Cannot bind OAuth callback listener on port {self.port}: {e.strerror}",
                port=self.port
            ) from e
        return sock

    async def start(self) -> None:
        """
        Bind the port and begin serving.

        Raises:
            CallbackBindError: If the port is unavailable
        """
        if self.is_running:
            return

        self._socket = self._bind()
        self.port = self._socket.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        logger.info(
            "OAuth callback listener started",
            port=self.port,
            path=self.callback_path
        )

    def expect(self) -> asyncio.Future:
        """Open a new attempt and return the future its callback resolves."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_future()
        return self._pending

    def deliver(self, result: CallbackResult) -> None:
        """Resolve the current attempt, if one is waiting."""
        if self._pending is None or self._pending.done():
            logger.debug("Ignoring callback with no pending authorization attempt")
            return
        self._pending.set_result(result)

    async def close(self) -> None:
        """Stop serving and release the port."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._server = None
        logger.debug("OAuth callback listener closed", port=self.port)
