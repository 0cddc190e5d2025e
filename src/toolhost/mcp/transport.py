"""
Newline-delimited JSON-RPC transport over stdin/stdout.
"""

import json
import logging
import sys
from typing import Any, AsyncIterator, Dict, Optional, TextIO

import anyio

logger = logging.getLogger(__name__)


class StdioTransport:
    """Reads one message per line and writes one message per line."""

    def __init__(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None):
        self._stdin = anyio.wrap_file(stdin or sys.stdin)
        self._stdout = anyio.wrap_file(stdout or sys.stdout)
        self._write_lock = anyio.Lock()

    async def messages(self) -> AsyncIterator[str]:
        """Yield incoming lines until EOF; blank lines are skipped."""
        async for line in self._stdin:
            line = line.strip()
            if line:
                yield line
        logger.debug("stdin reached EOF")

    async def send(self, message: Dict[str, Any]) -> None:
        """Write one message; concurrent senders never interleave."""
        data = json.dumps(message, ensure_ascii=False, separators=(",", ":"), default=str)
        async with self._write_lock:
            await self._stdout.write(data + "\n")
            await self._stdout.flush()
