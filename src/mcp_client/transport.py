"""Transport sessions for remote MCP servers.

A transport session is an open duplex channel of JSON-RPC messages.
Remote sessions own their HTTP client and every background stream; the
local stdio session lives in ``mcp_proxy.stdio`` on the same base class.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional, Union
from urllib.parse import urljoin, urlsplit

import httpx

from mcp_client.sse import iter_sse
from shared.errors import (
    ProxyError,
    TransportClosedError,
    TransportRejectedError,
    UnauthorizedError,
)
from shared.logging import get_logger
from shared.models import TransportKind

logger = get_logger(__name__)

JSONMessage = Union[dict[str, Any], list[Any]]

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "mcp-session-id"
EVENT_STREAM = "text/event-stream"

_CLOSED = object()


class TransportSession(ABC):
    """
    Base class for duplex message sessions.

    Inbound messages are queued and read with ``receive()`` or
    ``async for``; a failure of the underlying channel is raised to the
    reader, and a clean close ends the iteration.
    """

    kind: str = "session"

    def __init__(self) -> None:
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Establish the session."""

    @abstractmethod
    async def send(self, message: JSONMessage) -> None:
        """Send one message to the peer."""

    async def close(self) -> None:
        """Close the session and wake any reader."""
        if self._closed:
            return
        self._closed = True
        self._finish()

    async def receive(self) -> Optional[JSONMessage]:
        """
        Wait for the next inbound message.

        Returns:
            The message, or None once the session has closed

        Raises:
            Exception: Whatever broke the underlying channel
        """
        item = await self._inbound.get()
        if item is _CLOSED:
            self._inbound.put_nowait(_CLOSED)
            return None
        if isinstance(item, BaseException):
            self._inbound.put_nowait(_CLOSED)
            raise item
        return item

    def __aiter__(self) -> AsyncIterator[JSONMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[JSONMessage]:
        while True:
            message = await self.receive()
            if message is None:
                return
            yield message

    def _deliver(self, message: JSONMessage) -> None:
        self._inbound.put_nowait(message)

    def _fail(self, error: BaseException) -> None:
        self._inbound.put_nowait(error)

    def _finish(self) -> None:
        self._inbound.put_nowait(_CLOSED)

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransportClosedError(f"{self.kind} session is closed")


async def check_response(response: httpx.Response, kind: str) -> None:
    """
    Classify an HTTP status for a transport request.

    Raises:
        UnauthorizedError: On 401 after the auth flow already retried
        TransportRejectedError: On any other 4xx
        httpx.HTTPStatusError: On 5xx
    """
    if response.status_code < 400:
        return

    await response.aclose()
    if response.status_code == 401:
        raise UnauthorizedError(f"Remote rejected credentials for {kind} transport")
    if response.status_code < 500:
        raise TransportRejectedError(
            f"Remote rejected {kind} transport with HTTP {response.status_code}",
            kind=kind,
            status_code=response.status_code
        )
    response.raise_for_status()


def _content_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";")[0].strip().lower()


class _HTTPTransport(TransportSession):
    """Shared plumbing for HTTP-based sessions."""

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        super().__init__()
        self.url = url
        self.client = client
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _stream_timeout(self) -> httpx.Timeout:
        """Client timeouts without a read limit, for responses that may idle."""
        timeout = self.client.timeout
        return httpx.Timeout(connect=timeout.connect, read=None, write=timeout.write, pool=timeout.pool)

    async def _consume_events(self, response: httpx.Response, fatal: bool = True) -> None:
        try:
            async for event in iter_sse(response.aiter_lines()):
                if event.event == "message" and event.data:
                    self._deliver(json.loads(event.data))
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            if fatal:
                logger.error("Remote event stream failed", transport=self.kind, error=str(e))
                self._fail(e)
            else:
                logger.warning("Remote event stream dropped", transport=self.kind, error=str(e))
        finally:
            await response.aclose()

    async def _shutdown_http(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.client.aclose()


class StreamableHTTPTransport(_HTTPTransport):
    """
    Streamable HTTP transport.

    Each outbound message is a POST; replies arrive as a JSON body or as
    an event stream on that response. Server-initiated messages use an
    optional GET stream once the remote has assigned a session id.
    """

    kind = TransportKind.STREAMABLE_HTTP.value

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        super().__init__(url, client)
        self.session_id: Optional[str] = None
        self._listening = False
        self._established = False

    def _headers(self, accept: str, session_id: Optional[str] = None) -> dict[str, str]:
        headers = {"Accept": accept}
        session_id = session_id or self.session_id
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    async def _post(
        self,
        message: JSONMessage,
        session_id: Optional[str] = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT
    ) -> httpx.Response:
        request = self.client.build_request(
            "POST",
            self.url,
            json=message,
            headers=self._headers(f"application/json, {EVENT_STREAM}", session_id),
            timeout=timeout,
        )
        return await self.client.send(request, stream=True)

    async def start(self) -> None:
        """
        Negotiate by running an initialize handshake in a throwaway session.

        Raises:
            TransportRejectedError: If the remote refuses this transport
        """
        handshake = {
            "jsonrpc": "2.0",
            "id": "negotiate-0",
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "mcp-remote-fallback-test", "version": "0.0.0"},
            },
        }
        response = await self._post(handshake)
        await check_response(response, self.kind)
        negotiation_session = response.headers.get(SESSION_HEADER)
        content_type = _content_type(response)
        await response.aclose()

        if content_type not in ("application/json", EVENT_STREAM):
            raise TransportRejectedError(
                f"Unexpected content type '{content_type}' from streamable HTTP endpoint",
                kind=self.kind
            )

        if negotiation_session:
            await self._terminate(negotiation_session)
        logger.debug("Streamable HTTP transport negotiated", url=self.url)

    async def send(self, message: JSONMessage) -> None:
        """
        POST one message.

        The first exchange completes inline so the session id is known
        before anything else is sent. Later exchanges run in the
        background and their replies are queued as they arrive.
        """
        self._ensure_open()
        if not self._established:
            await self._exchange(message)
            self._established = True
            return
        self._spawn(self._exchange_in_background(message))

    async def _exchange_in_background(self, message: JSONMessage) -> None:
        try:
            await self._exchange(message)
        except asyncio.CancelledError:
            raise
        except (ProxyError, httpx.HTTPError, ValueError) as e:
            logger.error("Remote request failed", transport=self.kind, error=str(e))
            self._fail(e)

    async def _exchange(self, message: JSONMessage) -> None:
        response = await self._post(message, timeout=self._stream_timeout())
        streaming = False
        try:
            if response.status_code == 404 and self.session_id:
                raise TransportClosedError("Remote session expired")
            await check_response(response, self.kind)

            session_id = response.headers.get(SESSION_HEADER)
            if session_id and self.session_id is None:
                self.session_id = session_id
                self._start_listening()

            if response.status_code == 202:
                return

            content_type = _content_type(response)
            if content_type == "application/json":
                body = await response.aread()
                if body:
                    self._deliver(json.loads(body))
            elif content_type == EVENT_STREAM:
                streaming = True
                self._spawn(self._consume_events(response))
        finally:
            if not streaming:
                await response.aclose()

    def _start_listening(self) -> None:
        if self._listening:
            return
        self._listening = True
        self._spawn(self._listen())

    async def _listen(self) -> None:
        request = self.client.build_request(
            "GET",
            self.url,
            headers=self._headers(EVENT_STREAM),
            timeout=self._stream_timeout()
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Could not open server event stream", error=str(e))
            return

        if response.status_code == 405 or _content_type(response) != EVENT_STREAM:
            logger.debug("Remote offers no server event stream", status_code=response.status_code)
            await response.aclose()
            return
        await self._consume_events(response, fatal=False)

    async def _terminate(self, session_id: str) -> None:
        try:
            response = await self.client.delete(self.url, headers={SESSION_HEADER: session_id})
            if response.status_code not in (200, 202, 204, 405):
                logger.debug("Session termination refused", status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.debug("Session termination failed", error=str(e))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.session_id:
            await self._terminate(self.session_id)
        await self._shutdown_http()
        self._finish()


class SSETransport(_HTTPTransport):
    """
    Event-stream transport.

    A long-lived GET stream announces the message endpoint and then
    carries every inbound message; outbound messages are POSTed to that
    endpoint.
    """

    kind = TransportKind.SSE.value

    def __init__(self, url: str, client: httpx.AsyncClient, endpoint_timeout: float = 30.0) -> None:
        super().__init__(url, client)
        self.endpoint_timeout = endpoint_timeout
        self.endpoint: Optional[str] = None
        self._response: Optional[httpx.Response] = None

    async def start(self) -> None:
        """
        Open the event stream and wait for the endpoint announcement.

        Raises:
            TransportRejectedError: If the remote refuses or never announces
        """
        request = self.client.build_request(
            "GET",
            self.url,
            headers={"Accept": EVENT_STREAM},
            timeout=self._stream_timeout()
        )
        # The stream itself may idle forever, its response headers may not
        try:
            response = await asyncio.wait_for(self.client.send(request, stream=True), self.endpoint_timeout)
        except asyncio.TimeoutError:
            raise httpx.ReadTimeout("Event stream request timed out", request=request) from None
        await check_response(response, self.kind)
        if _content_type(response) != EVENT_STREAM:
            await response.aclose()
            raise TransportRejectedError("Remote did not return an event stream", kind=self.kind)
        self._response = response

        events = iter_sse(response.aiter_lines())
        try:
            self.endpoint = await asyncio.wait_for(self._await_endpoint(events), self.endpoint_timeout)
        except asyncio.TimeoutError:
            raise TransportRejectedError("Remote never announced a message endpoint", kind=self.kind) from None

        self._spawn(self._read(events))
        logger.debug("SSE transport negotiated", url=self.url, endpoint=self.endpoint)

    async def _await_endpoint(self, events: AsyncIterator[Any]) -> str:
        async for event in events:
            if event.event != "endpoint":
                continue
            endpoint = urljoin(self.url, event.data.strip())
            if urlsplit(endpoint)[:2] != urlsplit(self.url)[:2]:
                raise ProxyError(f"Endpoint origin does not match connection origin: {endpoint}")
            return endpoint
        raise TransportRejectedError("Event stream ended before endpoint announcement", kind=self.kind)

    async def _read(self, events: AsyncIterator[Any]) -> None:
        try:
            async for event in events:
                if event.event == "message" and event.data:
                    self._deliver(json.loads(event.data))
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Remote event stream failed", transport=self.kind, error=str(e))
            self._fail(e)
            return
        logger.info("Remote closed the event stream")
        self._finish()

    async def send(self, message: JSONMessage) -> None:
        self._ensure_open()
        if self.endpoint is None:
            raise TransportClosedError("SSE session has not been started")
        response = await self.client.post(self.endpoint, json=message)
        await check_response(response, self.kind)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._shutdown_http()
        if self._response is not None:
            await self._response.aclose()
        self._finish()
