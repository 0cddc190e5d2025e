"""
Shared fixtures for the toolhost tests.
"""

import asyncio

import pytest

from toolhost.mcp.tools.models import CRAWL, Tool, ToolParameter


async def echo_handler(text: str):
    return {"text": text}


def make_echo_tool() -> Tool:
    return Tool(
        name="echo",
        description="Echo text",
        parameters=[ToolParameter(name="text", description="Text", type="string", required=True)],
        handler=echo_handler,
    )


class CrawlSpy:
    """Crawl handler recording whether it was ever reached."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, url: str, max_pages: int = 10):
        self.calls += 1
        return {"url": url, "max_pages": max_pages}


def make_crawl_tool(handler) -> Tool:
    return Tool(
        name="crawl",
        description="Crawl a site",
        parameters=[
            ToolParameter(name="url", description="Start URL", type="string", required=True),
            ToolParameter(
                name="max_pages", description="Page budget", type="integer", default=10, minimum=1, maximum=100
            ),
        ],
        handler=handler,
        timeout_class=CRAWL,
    )


class SlowHandler:
    """Handler sleeping for a while and recording start/finish times."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.started = []
        self.finished = []

    async def __call__(self, label: str):
        loop = asyncio.get_running_loop()
        self.started.append((label, loop.time()))
        await asyncio.sleep(self.delay)
        self.finished.append((label, loop.time()))
        return {"label": label}


def make_slow_tool(handler, name: str = "slow") -> Tool:
    return Tool(
        name=name,
        description="Sleeps before answering",
        parameters=[ToolParameter(name="label", description="Label", type="string", required=True)],
        handler=handler,
    )


@pytest.fixture
def echo_tool():
    return make_echo_tool()


@pytest.fixture
def crawl_spy():
    return CrawlSpy()


@pytest.fixture
def crawl_tool_factory():
    return make_crawl_tool


@pytest.fixture
def slow_handler():
    return SlowHandler()


@pytest.fixture
def slow_tool_factory():
    return make_slow_tool
