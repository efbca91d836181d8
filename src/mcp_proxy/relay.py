"""Bidirectional message relay between the local client and the remote.

The relay reads only the routing fields needed to filter tool calls.
Everything else passes through unmodified in both directions. When
either side closes or fails, both sides are closed.
"""

import asyncio
import fnmatch
from typing import Any, Iterable, Optional

from mcp_client.transport import JSONMessage, TransportSession
from shared.logging import get_logger

logger = get_logger(__name__)

TOOL_CALL_METHOD = "tools/call"
TOOL_UNAVAILABLE_CODE = -32601


class MessageRelay:
    """
    Forwards messages between two sessions until either ends.

    Ignored tools accept shell-style wildcards; a matching ``tools/call``
    request is answered locally with a JSON-RPC error and never reaches
    the remote side.
    """

    def __init__(
        self,
        local: TransportSession,
        remote: TransportSession,
        ignored_tools: Iterable[str] = ()
    ) -> None:
        self.local = local
        self.remote = remote
        self.ignored_tools = list(ignored_tools)

    def is_ignored(self, tool_name: str) -> bool:
        return any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in self.ignored_tools)

    def intercept(self, message: JSONMessage) -> Optional[dict[str, Any]]:
        """
        Return a synthetic rejection if the message calls an ignored tool.

        Args:
            message: Message from the local client

        Returns:
            The JSON-RPC error response to send back, or None to forward
        """
        if not self.ignored_tools or not isinstance(message, dict):
            return None
        if message.get("method") != TOOL_CALL_METHOD:
            return None
        params = message.get("params")
        tool_name = params.get("name") if isinstance(params, dict) else None
        if not isinstance(tool_name, str) or not self.is_ignored(tool_name):
            return None

        logger.info("Blocked call to ignored tool", tool=tool_name)
        return {
            "jsonrpc": "2.0",
            "id": message.get("id"),
            "error": {
                "code": TOOL_UNAVAILABLE_CODE,
                "message": f"Tool '{tool_name}' is not available through this proxy",
            },
        }

    async def _local_to_remote(self) -> None:
        async for message in self.local:
            rejection = self.intercept(message)
            if rejection is not None:
                # Notifications get no response
                if "id" in message:
                    await self.local.send(rejection)
                continue
            await self.remote.send(message)
        logger.info("Local side closed")

    async def _remote_to_local(self) -> None:
        async for message in self.remote:
            await self.local.send(message)
        logger.info("Remote side closed")

    async def _close_all(self) -> None:
        for side, session in (("remote", self.remote), ("local", self.local)):
            try:
                await session.close()
            except Exception as e:
                logger.warning("Error while closing session", side=side, error=str(e))

    async def run(self) -> None:
        """
        Relay until either side closes or fails, then tear both down.

        Raises:
            Exception: The first error raised by either direction
        """
        tasks = {
            asyncio.create_task(self._local_to_remote(), name="local->remote"),
            asyncio.create_task(self._remote_to_local(), name="remote->local"),
        }
        error: Optional[BaseException] = None
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None and error is None:
                    error = task.exception()
                    logger.error(
                        "Relay direction failed",
                        direction=task.get_name(),
                        error=str(error) or type(error).__name__
                    )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._close_all()

        if error is not None:
            raise error


async def bridge(
    local: TransportSession,
    remote: TransportSession,
    ignored_tools: Iterable[str] = ()
) -> None:
    """Relay between two sessions until either side ends."""
    await MessageRelay(local, remote, ignored_tools).run()
