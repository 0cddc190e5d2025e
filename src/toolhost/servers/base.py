"""
Common shape of a toolhost server: its tools, resource providers and hint.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from toolhost.mcp.resources import ResourceProvider
from toolhost.mcp.tools.models import Tool


@dataclass
class ServerComponents:
    """Everything the runtime needs to host one server."""

    name: str
    tools: List[Tool]
    providers: Dict[str, ResourceProvider] = field(default_factory=dict)
    instructions: Optional[str] = None
