"""
MCP server loop.

Reads requests from a transport, handles each one in its own task so slow
tools never block the reader, and writes every response as soon as it is
ready.
"""

import logging
from typing import Any, AsyncIterator, Dict, Protocol

import anyio

from toolhost.mcp.dispatcher import RequestDispatcher

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def messages(self) -> AsyncIterator[str]:
        ...

    async def send(self, message: Dict[str, Any]) -> None:
        ...


class MCPServer:
    """Connects a transport to a request dispatcher."""

    def __init__(self, dispatcher: RequestDispatcher):
        self.dispatcher = dispatcher

    async def serve(self, transport: Transport) -> None:
        """
        Serve until the transport reaches EOF.

        On EOF every in-flight request is cancelled; each of them still
        receives its Cancelled response before this returns.
        """
        logger.info(f"Serving {len(self.dispatcher.registry)} tool(s)")
        async with anyio.create_task_group() as tg:
            async for line in transport.messages():
                tg.start_soon(self._handle_line, transport, line)
            await self.dispatcher.shutdown()
        logger.info("Transport closed, server stopped")

    async def _handle_line(self, transport: Transport, line: str) -> None:
        response = await self.dispatcher.handle(line)
        if response is None:
            return
        try:
            await transport.send(response.to_wire())
        except (OSError, anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.error(f"Failed to write response for request {response.id!r}: {e}")
