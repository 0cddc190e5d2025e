"""
Resource locator for the MCP protocol.

Resolves scheme-qualified URIs (``file://``, ``page://``, ``kg://``, ``tavily://``) to
the provider able to produce their content.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple
from urllib.parse import unquote, urlsplit

from toolhost.mcp.errors import InvalidParamsError
from toolhost.mcp.messages import ResourceContent, ResourceInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceURI:
    """A parsed resource identifier: scheme, path and optional query."""

    scheme: str
    path: str
    query: Optional[str] = None
    raw: str = ""

    @classmethod
    def parse(cls, uri: str) -> "ResourceURI":
        """
        Parse a resource URI.

        Args:
            uri: The URI string, e.g. ``page://example.com/about?rev=2``

        Returns:
            The parsed ResourceURI

        Raises:
            InvalidParamsError: If the URI is malformed or has no scheme or path
        """
        try:
            parts = urlsplit(uri)
        except ValueError as e:
            raise InvalidParamsError("uri", f"'{uri}' is not a valid URI: {e}") from e
        if not parts.scheme:
            raise InvalidParamsError("uri", f"'{uri}' has no scheme")

        path = unquote(parts.netloc + parts.path)
        if not path:
            raise InvalidParamsError("uri", f"'{uri}' has no path")

        return cls(scheme=parts.scheme.lower(), path=path, query=parts.query or None, raw=uri)

    def __str__(self) -> str:
        return self.raw or f"{self.scheme}://{self.path}" + (f"?{self.query}" if self.query else "")


class ResourceProvider(Protocol):
    """A collaborator producing read-only content for one scheme."""

    def list_resources(self) -> List[ResourceInfo]:
        ...

    async def read(self, uri: ResourceURI) -> ResourceContent:
        ...


class ResourceLocator:
    """Maps URI schemes to resource providers."""

    def __init__(self):
        self._providers: Dict[str, ResourceProvider] = {}

    def register(self, scheme: str, provider: ResourceProvider) -> None:
        """
        Register the provider for a scheme.

        Raises:
            ValueError: If a provider is already registered for the scheme
        """
        scheme = scheme.lower()
        if scheme in self._providers:
            raise ValueError(f"A provider for scheme '{scheme}' is already registered")
        self._providers[scheme] = provider

    @property
    def schemes(self) -> List[str]:
        return sorted(self._providers)

    def resolve(self, uri: str) -> Tuple[ResourceURI, ResourceProvider]:
        parsed = ResourceURI.parse(uri)
        provider = self._providers.get(parsed.scheme)
        if provider is None:
            raise InvalidParamsError("uri", f"unsupported scheme '{parsed.scheme}'")
        return parsed, provider

    async def read(self, uri: str) -> List[ResourceContent]:
        """
        Read the content behind a URI.

        Args:
            uri: The resource URI

        Returns:
            The content blocks for ``resources/read``
        """
        parsed, provider = self.resolve(uri)
        logger.info(f"Reading resource {parsed}")
        return [await provider.read(parsed)]

    def list(self) -> List[ResourceInfo]:
        resources: List[ResourceInfo] = []
        for scheme in self.schemes:
            resources.extend(self._providers[scheme].list_resources())
        return resources
