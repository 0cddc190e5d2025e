"""
Servers hosted by toolhost.

Each module exposes ``create_server(config)`` returning its tools and
resource providers.
"""

from typing import Callable, Dict

from toolhost.config import Config
from toolhost.servers import echo, filesystem, kg, spider, tavily
from toolhost.servers.base import ServerComponents

SERVERS: Dict[str, Callable[[Config], ServerComponents]] = {
    "echo": echo.create_server,
    "filesystem": filesystem.create_server,
    "kg": kg.create_server,
    "spider": spider.create_server,
    "tavily": tavily.create_server,
}


def build_server(name: str, config: Config) -> ServerComponents:
    """
    Build the named server.

    Raises:
        KeyError: If no server has that name
        MissingCredentialError: If the server needs a credential that is not configured
    """
    return SERVERS[name](config)
