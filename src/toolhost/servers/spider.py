"""
Web crawling tools for MCP protocol.

Pages are fetched with aiohttp and parsed with BeautifulSoup. Crawls stay on
the start URL's host, honour robots.txt unless told otherwise, and every
fetched page is kept in a bounded page store served as ``page://`` resources.
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import unquote, urldefrag, urljoin, urlsplit
from urllib.robotparser import RobotFileParser

import aiohttp
from bs4 import BeautifulSoup

from toolhost.config import Config
from toolhost.mcp.errors import InvalidParamsError, NotImplementedToolError, ResourceNotFoundError, map_failure
from toolhost.mcp.messages import ResourceContent, ResourceInfo
from toolhost.mcp.resources import ResourceURI
from toolhost.mcp.tools.models import CRAWL, Tool, ToolParameter
from toolhost.servers.base import ServerComponents

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "toolhost-spider"
DEFAULT_MAX_PAGE_BYTES = 2_000_000
DEFAULT_REQUEST_TIMEOUT = 20.0
DEFAULT_STORE_SIZE = 500
# get_links never fetches more pages than this, whatever the depth
MAX_LINK_PAGES = 50

HTML_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchedPage:
    """Raw HTTP response of one page."""

    url: str
    status: int
    content_type: str
    body: str


@dataclass
class Page:
    """A parsed page."""

    url: str
    status: int
    title: Optional[str]
    text: str
    links: List[str] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "title": self.title,
            "text": self.text,
            "links": list(self.links),
        }


def normalize_url(url: str) -> str:
    """Drop the fragment; an empty path becomes ``/``."""
    url, _ = urldefrag(url)
    parts = urlsplit(url)
    if not parts.path:
        url = parts._replace(path="/").geturl()
    return url


def check_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise InvalidParamsError("url", f"not a valid URL: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidParamsError("url", "must be an absolute http(s) URL")
    return normalize_url(url)


def parse_html(url: str, status: int, html: str) -> Page:
    """
    Extract title, visible text and outgoing links from HTML.

    Args:
        url: URL the HTML was fetched from, used to resolve relative links
        status: HTTP status of the response
        html: The page source

    Returns:
        The parsed Page; links are absolute http(s) URLs without fragments,
        in document order and without duplicates
    """
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None

    links: List[str] = []
    seen: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:")):
            continue
        try:
            absolute = normalize_url(urljoin(url, href))
        except ValueError:
            logger.debug(f"Skipping malformed link {href!r} on {url}")
            continue
        if urlsplit(absolute).scheme not in ("http", "https") or absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)

    for element in soup(["script", "style", "noscript", "template"]):
        element.decompose()
    text = " ".join(soup.get_text(" ", strip=True).split())

    return Page(url=url, status=status, title=title or None, text=text, links=links)


def page_key(url: str) -> str:
    parts = urlsplit(url)
    key = parts.netloc + unquote(parts.path or "/")
    return f"{key}?{parts.query}" if parts.query else key


class PageStore:
    """In-memory, least-recently-stored-first bounded store of fetched pages."""

    def __init__(self, max_pages: int = DEFAULT_STORE_SIZE):
        self.max_pages = max_pages
        self._pages: "OrderedDict[str, Page]" = OrderedDict()

    def put(self, page: Page) -> str:
        """Store a page and return its ``page://`` URI."""
        key = page_key(page.url)
        self._pages.pop(key, None)
        self._pages[key] = page
        while len(self._pages) > self.max_pages:
            self._pages.popitem(last=False)
        return f"page://{key}"

    def get(self, key: str) -> Optional[Page]:
        return self._pages.get(key)

    def __len__(self) -> int:
        return len(self._pages)

    def list_resources(self) -> List[ResourceInfo]:
        return [
            ResourceInfo(uri=f"page://{key}", name=page.title or page.url, description=page.url, mime_type="text/plain")
            for key, page in self._pages.items()
        ]

    async def read(self, uri: ResourceURI) -> ResourceContent:
        key = f"{uri.path}?{uri.query}" if uri.query else uri.path
        page = self.get(key)
        if page is None:
            raise ResourceNotFoundError(f"No scraped page for {uri}; scrape or crawl it first", uri=str(uri))
        return ResourceContent(uri=str(uri), mime_type="text/plain", text=page.text)


class Spider:
    """Fetches, parses and crawls pages."""

    def __init__(
        self,
        store: PageStore,
        user_agent: str = DEFAULT_USER_AGENT,
        max_page_bytes: int = DEFAULT_MAX_PAGE_BYTES,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.store = store
        self.user_agent = user_agent
        self.max_page_bytes = max_page_bytes
        self.request_timeout = request_timeout

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            headers={"User-Agent": self.user_agent},
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
        )

    async def fetch(self, session: aiohttp.ClientSession, url: str) -> FetchedPage:
        """
        Fetch one page, reading at most max_page_bytes of its body.

        Raises:
            aiohttp.ClientResponseError: If the server answers with an error status
        """
        logger.debug(f"GET {url}")
        async with session.get(url, allow_redirects=True, max_redirects=5) as response:
            response.raise_for_status()
            raw = await response.content.read(self.max_page_bytes)
            try:
                body = raw.decode(response.charset or "utf-8", errors="replace")
            except LookupError:
                body = raw.decode("utf-8", errors="replace")
            return FetchedPage(
                url=str(response.url),
                status=response.status,
                content_type=response.content_type,
                body=body,
            )

    async def fetch_robots(self, session: aiohttp.ClientSession, url: str) -> RobotFileParser:
        """Load robots.txt for the URL's origin; an unreachable file allows everything."""
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        parser = RobotFileParser(robots_url)
        try:
            async with session.get(robots_url) as response:
                if response.status in (401, 403):
                    parser.disallow_all = True
                elif response.status == 200:
                    parser.parse((await response.text(errors="replace")).splitlines())
                else:
                    parser.allow_all = True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not load {robots_url}: {e}; treating every path as allowed")
            parser.allow_all = True
        return parser

    async def _get_page(self, session: aiohttp.ClientSession, url: str) -> Tuple[Page, str]:
        fetched = await self.fetch(session, url)
        if fetched.content_type and fetched.content_type not in HTML_TYPES:
            page = Page(url=fetched.url, status=fetched.status, title=None, text=fetched.body)
        else:
            page = parse_html(fetched.url, fetched.status, fetched.body)
        return page, self.store.put(page)

    async def scrape_page(self, url: str, render_javascript: bool = False) -> Dict[str, Any]:
        """Fetch and parse a single page."""
        url = check_url(url)
        if render_javascript:
            raise NotImplementedToolError("JavaScript rendering is not supported by this server", url=url)
        async with self._session() as session:
            page, uri = await self._get_page(session, url)
        logger.info(f"Scraped {page.url} ({len(page.text)} characters, {len(page.links)} links)")
        result = page.to_dict()
        result["resource_uri"] = uri
        return result

    async def crawl(self, url: str, max_pages: int = 10, respect_robots: bool = True) -> Dict[str, Any]:
        """
        Breadth-first crawl of the start URL's host.

        The start page must load; failures on later pages are reported in
        ``errors`` and the crawl goes on.
        """
        start_url = check_url(url)
        host = urlsplit(start_url).netloc
        started = time.monotonic()
        queue: Deque[str] = deque([start_url])
        seen: Set[str] = {start_url}
        pages: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        skipped: List[str] = []

        async with self._session() as session:
            robots = await self.fetch_robots(session, start_url) if respect_robots else None
            while queue and len(pages) < max_pages:
                current = queue.popleft()
                if robots is not None and not robots.can_fetch(self.user_agent, current):
                    logger.debug(f"robots.txt disallows {current}")
                    skipped.append(current)
                    continue
                try:
                    page, uri = await self._get_page(session, current)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    if current == start_url:
                        raise
                    failure = map_failure(e)
                    errors.append({"url": current, "error": failure.message, "kind": failure.kind.value})
                    continue

                pages.append(
                    {
                        "url": page.url,
                        "title": page.title,
                        "status": page.status,
                        "resource_uri": uri,
                        "links_found": len(page.links),
                    }
                )
                for link in page.links:
                    if link not in seen and urlsplit(link).netloc == host:
                        seen.add(link)
                        queue.append(link)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Crawl of {start_url} finished: {len(pages)} pages, {len(errors)} failed in {duration_ms}ms")
        return {
            "start_url": start_url,
            "pages": pages,
            "pages_crawled": len(pages),
            "pages_failed": len(errors),
            "errors": errors,
            "skipped_by_robots": skipped,
            "duration_ms": duration_ms,
        }

    async def get_links(self, url: str, max_depth: int = 1) -> Dict[str, Any]:
        """Collect links reachable from a page, following same-host links up to max_depth."""
        start_url = check_url(url)
        host = urlsplit(start_url).netloc
        found: Dict[str, int] = {}
        frontier = [start_url]
        visited: Set[str] = set()

        async with self._session() as session:
            for depth in range(1, max_depth + 1):
                next_frontier: List[str] = []
                for current in frontier:
                    if current in visited or len(visited) >= MAX_LINK_PAGES:
                        continue
                    visited.add(current)
                    try:
                        page, _ = await self._get_page(session, current)
                    except (aiohttp.ClientError, asyncio.TimeoutError):
                        if current == start_url:
                            raise
                        logger.debug(f"Skipping unreachable {current}")
                        continue
                    for link in page.links:
                        if link not in found:
                            found[link] = depth
                            if urlsplit(link).netloc == host:
                                next_frontier.append(link)
                frontier = next_frontier

        links = [{"url": link, "depth": depth, "internal": urlsplit(link).netloc == host} for link, depth in found.items()]
        return {"url": start_url, "max_depth": max_depth, "links": links, "pages_visited": len(visited)}


def _url_parameter(description: str) -> ToolParameter:
    return ToolParameter(name="url", description=description, type="string", required=True, min_length=1)


class SpiderTools:
    """Factory for the crawling tools."""

    @staticmethod
    def create(spider: Spider) -> List[Tool]:
        return [
            Tool(
                name="crawl",
                description="Crawl a website breadth-first, staying on the start URL's host",
                parameters=[
                    _url_parameter("URL to start crawling from"),
                    ToolParameter(
                        name="max_pages",
                        description="Maximum number of pages to fetch",
                        type="integer",
                        default=10,
                        minimum=1,
                        maximum=100,
                    ),
                    ToolParameter(
                        name="respect_robots",
                        description="Skip pages disallowed by robots.txt",
                        type="boolean",
                        default=True,
                    ),
                ],
                handler=spider.crawl,
                strict=True,
                timeout_class=CRAWL,
            ),
            Tool(
                name="scrape_page",
                description="Fetch one page and return its title, text and links",
                parameters=[
                    _url_parameter("URL of the page to scrape"),
                    ToolParameter(
                        name="render_javascript",
                        description="Render the page with JavaScript before extracting (not supported)",
                        type="boolean",
                        default=False,
                    ),
                ],
                handler=spider.scrape_page,
                strict=True,
                timeout_class=CRAWL,
            ),
            Tool(
                name="get_links",
                description="List the links reachable from a page up to a given depth",
                parameters=[
                    _url_parameter("URL of the page to start from"),
                    ToolParameter(
                        name="max_depth",
                        description="How many link hops to follow on the same host",
                        type="integer",
                        default=1,
                        minimum=1,
                        maximum=5,
                    ),
                ],
                handler=spider.get_links,
                strict=True,
                timeout_class=CRAWL,
            ),
        ]


def create_server(config: Config) -> ServerComponents:
    settings = config.get_server_settings("spider")
    store = PageStore(int(settings.get("store_size", DEFAULT_STORE_SIZE)))
    spider = Spider(
        store,
        user_agent=settings.get("user_agent", DEFAULT_USER_AGENT),
        max_page_bytes=int(settings.get("max_page_bytes", DEFAULT_MAX_PAGE_BYTES)),
        request_timeout=float(settings.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
    )
    return ServerComponents(
        name="spider",
        tools=SpiderTools.create(spider),
        providers={"page": store},
        instructions="Scraped and crawled pages stay readable as page://<host>/<path> resources.",
    )
