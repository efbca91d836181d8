"""Local stdio transport.

Newline-delimited JSON-RPC on the process's stdin/stdout, as spoken by
MCP clients that launch the proxy as a subprocess.
"""

import asyncio
import json
import sys
from typing import Any, Optional

from mcp_client.transport import JSONMessage, TransportSession
from shared.logging import get_logger

logger = get_logger(__name__)

# Tool results can be large; asyncio's 64 KiB default line limit is too small
STREAM_LIMIT = 16 * 1024 * 1024


class StdioTransport(TransportSession):
    """Duplex session over a stream reader and writer."""

    kind = "stdio"

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[Any] = None
    ) -> None:
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._task: Optional[asyncio.Task] = None

    async def _open_std_streams(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        transport, protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        self._reader = reader
        self._writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    async def start(self) -> None:
        if self._reader is None or self._writer is None:
            await self._open_std_streams()
        self._task = asyncio.create_task(self._read_loop())
        logger.debug("Local stdio transport started")

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.warning("Dropping malformed message from local client", size=len(line))
                    continue
                self._deliver(message)
        except asyncio.CancelledError:
            raise
        except (OSError, ValueError) as e:
            self._fail(e)
            return
        logger.info("Local client closed its input")
        self._finish()

    async def send(self, message: JSONMessage) -> None:
        self._ensure_open()
        data = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
        self._writer.write(data.encode("utf-8") + b"\n")
        await self._writer.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._finish()
