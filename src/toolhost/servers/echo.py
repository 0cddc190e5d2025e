"""
Echo tool for MCP protocol.

The smallest possible server; useful to check a client's wiring.
"""

from typing import Any, Dict

from toolhost.config import Config
from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.servers.base import ServerComponents


async def echo_handler(text: str) -> Dict[str, Any]:
    """Return the text unchanged."""
    return {"text": text}


class EchoTool:
    """Echo tool returning its input."""

    @staticmethod
    def create() -> Tool:
        """
        Create an echo tool.

        Returns:
            A Tool instance echoing its ``text`` argument
        """
        return Tool(
            name="echo",
            description="Returns the given text unchanged",
            parameters=[
                ToolParameter(
                    name="text",
                    description="Text to echo back",
                    type="string",
                    required=True,
                )
            ],
            handler=echo_handler,
            output_schema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        )


def create_server(config: Config) -> ServerComponents:
    return ServerComponents(name="echo", tools=[EchoTool.create()], instructions="Call 'echo' with some text.")
