"""
Tavily search tools for MCP protocol.

This module calls the Tavily REST API and keeps recent search results as
``tavily://search/<query>`` resources.
"""

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from toolhost.config import Config
from toolhost.mcp.errors import MissingCredentialError, ResourceNotFoundError, upstream_error_for_status
from toolhost.mcp.messages import ResourceContent, ResourceInfo
from toolhost.mcp.resources import ResourceURI
from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.servers.base import ServerComponents

logger = logging.getLogger(__name__)

TAVILY_API_BASE_URL = "https://api.tavily.com"
DEFAULT_MAX_RESULTS = 5
DEFAULT_NEWS_DAYS = 7
DEFAULT_CACHE_SIZE = 100


def _search_result(data: Dict[str, Any], query: str) -> Dict[str, Any]:
    """Keep the fields clients rely on from a Tavily search response."""
    results = []
    for item in data.get("results", []):
        entry = {
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "content": item.get("content", ""),
            "score": item.get("score", 0.0),
            "published_date": item.get("published_date"),
        }
        if item.get("raw_content") is not None:
            entry["raw_content"] = item["raw_content"]
        results.append(entry)
    return {
        "query": data.get("query", query),
        "answer": data.get("answer"),
        "results": results,
        "response_time": data.get("response_time"),
    }


class SearchCache:
    """Bounded cache of recent search results, served as resources."""

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    @staticmethod
    def uri_for(query: str) -> str:
        return f"tavily://search/{quote(query, safe='')}"

    def put(self, query: str, result: Dict[str, Any]) -> str:
        self._entries.pop(query, None)
        self._entries[query] = result
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return self.uri_for(query)

    def get(self, query: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(query)

    def list_resources(self) -> List[ResourceInfo]:
        return [
            ResourceInfo(
                uri=self.uri_for(query),
                name=f"Tavily search: {query}",
                description="Cached search results for a specific query",
                mime_type="application/json",
            )
            for query in self._entries
        ]

    async def read(self, uri: ResourceURI) -> ResourceContent:
        section, _, query = uri.path.partition("/")
        result = self.get(query) if section == "search" else None
        if result is None:
            raise ResourceNotFoundError(f"No cached search results for {uri}", uri=str(uri))
        return ResourceContent(uri=str(uri), mime_type="application/json", text=json.dumps(result, indent=2))


class TavilyClient:
    """Thin async client for the Tavily REST API."""

    def __init__(self, api_key: str, cache: SearchCache, base_url: str = TAVILY_API_BASE_URL):
        self.api_key = api_key
        self.cache = cache
        self.base_url = base_url.rstrip("/")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a JSON payload to the API.

        Raises:
            ToolError: The error kind matching a non-200 status
        """
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    detail = await response.text()
                    raise upstream_error_for_status(response.status, f"Tavily API error {response.status}: {detail}")
                return await response.json()

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = DEFAULT_MAX_RESULTS,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
        include_answer: bool = True,
        include_raw_content: bool = False,
    ) -> Dict[str, Any]:
        """Run a web search."""
        logger.info(f"Performing Tavily search: {query}")
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
            "include_raw_content": include_raw_content,
        }
        if include_domains:
            payload["include_domains"] = include_domains
        if exclude_domains:
            payload["exclude_domains"] = exclude_domains

        result = _search_result(await self._post("/search", payload), query)
        result["resource_uri"] = self.cache.put(query, result)
        return result

    async def search_news(
        self,
        query: str,
        days: int = DEFAULT_NEWS_DAYS,
        max_results: int = DEFAULT_MAX_RESULTS,
        include_answer: bool = True,
    ) -> Dict[str, Any]:
        """Search recent news articles."""
        logger.info(f"Performing Tavily news search: {query}")
        payload = {
            "query": query,
            "topic": "news",
            "days": days,
            "max_results": max_results,
            "include_answer": include_answer,
        }
        result = _search_result(await self._post("/search", payload), query)
        result["resource_uri"] = self.cache.put(query, result)
        return result

    async def get_extract(self, url: str) -> Dict[str, Any]:
        """Extract the content of one URL."""
        logger.info(f"Extracting content from URL: {url}")
        data = await self._post("/extract", {"urls": [url]})
        results = data.get("results") or []
        if not results:
            failed = data.get("failed_results") or []
            reason = failed[0].get("error", "extraction failed") if failed else "no content returned"
            raise ResourceNotFoundError(f"Could not extract {url}: {reason}", url=url)
        item = results[0]
        return {
            "url": item.get("url", url),
            "content": item.get("raw_content", ""),
            "images": item.get("images", []),
        }


def _max_results_parameter() -> ToolParameter:
    return ToolParameter(
        name="max_results",
        description="Maximum number of results to return",
        type="integer",
        default=DEFAULT_MAX_RESULTS,
        minimum=1,
        maximum=20,
    )


def _include_answer_parameter(description: str) -> ToolParameter:
    return ToolParameter(name="include_answer", description=description, type="boolean", default=True)


class TavilyTools:
    """Factory for the Tavily tools."""

    @staticmethod
    def create(client: TavilyClient) -> List[Tool]:
        """
        Create the Tavily tools.

        Args:
            client: The API client the handlers call

        Returns:
            The search, search_news and get_extract tools
        """
        domains = {"type": "string"}
        return [
            Tool(
                name="search",
                description="Perform AI-powered web search using Tavily API",
                parameters=[
                    ToolParameter(name="query", description="The search query", type="string", required=True, min_length=1),
                    ToolParameter(
                        name="search_depth",
                        description="basic for quick results, advanced for comprehensive search",
                        type="string",
                        default="basic",
                        enum=("basic", "advanced"),
                    ),
                    _max_results_parameter(),
                    ToolParameter(
                        name="include_domains", description="Domains to include in search", type="array", items=domains
                    ),
                    ToolParameter(
                        name="exclude_domains", description="Domains to exclude from search", type="array", items=domains
                    ),
                    _include_answer_parameter("Whether to include an AI-generated answer"),
                    ToolParameter(
                        name="include_raw_content",
                        description="Whether to include raw content from pages",
                        type="boolean",
                        default=False,
                    ),
                ],
                handler=client.search,
            ),
            Tool(
                name="search_news",
                description="Search for recent news articles using Tavily",
                parameters=[
                    ToolParameter(
                        name="query", description="The news search query", type="string", required=True, min_length=1
                    ),
                    ToolParameter(
                        name="days",
                        description="How many days back to search",
                        type="integer",
                        default=DEFAULT_NEWS_DAYS,
                        minimum=1,
                        maximum=30,
                    ),
                    _max_results_parameter(),
                    _include_answer_parameter("Whether to include an AI-generated summary"),
                ],
                handler=client.search_news,
            ),
            Tool(
                name="get_extract",
                description="Extract content from a specific URL using Tavily",
                parameters=[
                    ToolParameter(
                        name="url", description="The URL to extract content from", type="string", required=True, min_length=1
                    )
                ],
                handler=client.get_extract,
            ),
        ]


def create_server(config: Config) -> ServerComponents:
    """
    Build the Tavily server.

    Raises:
        MissingCredentialError: If no Tavily API key is configured
    """
    api_key = config.get_credential("tavily")
    if not api_key:
        raise MissingCredentialError("A Tavily API key is required: set TAVILY_API_KEY or pass --api-key")
    settings = config.get_server_settings("tavily")
    cache = SearchCache(int(settings.get("cache_size", DEFAULT_CACHE_SIZE)))
    client = TavilyClient(api_key, cache, base_url=settings.get("base_url", TAVILY_API_BASE_URL))
    return ServerComponents(
        name="tavily",
        tools=TavilyTools.create(client),
        providers={"tavily": cache},
        instructions="Search results stay readable as tavily://search/<query> resources.",
    )
