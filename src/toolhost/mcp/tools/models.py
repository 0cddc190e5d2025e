"""
Tool models for the MCP protocol.

This module provides data models for tools and tool execution results.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from toolhost.mcp.errors import ErrorKind, ErrorObject

# Timeout classes understood by the supervisor
LOOKUP = "lookup"
CRAWL = "crawl"

_UNSET = object()


@dataclass(frozen=True)
class ToolParameter:
    """Parameter definition for a tool."""

    name: str
    description: str
    type: str
    required: bool = False
    default: Any = _UNSET
    enum: Optional[Tuple[Any, ...]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    items: Optional[Dict[str, Any]] = None
    properties: Optional[Dict[str, Any]] = None

    @property
    def has_default(self) -> bool:
        return self.default is not _UNSET

    def to_dict(self) -> Dict[str, Any]:
        """Convert parameter to dictionary representation."""
        result = {"name": self.name, "description": self.description, "type": self.type}

        if self.required:
            result["required"] = self.required

        if self.enum is not None:
            result["enum"] = list(self.enum)

        if self.has_default:
            result["default"] = self.default

        return result

    def to_schema(self) -> Dict[str, Any]:
        """Convert parameter to JSON Schema."""
        schema: Dict[str, Any] = {"type": self.type, "description": self.description}

        if self.enum is not None:
            schema["enum"] = list(self.enum)

        if self.has_default:
            schema["default"] = self.default

        constraints = (
            ("minimum", self.minimum),
            ("maximum", self.maximum),
            ("minLength", self.min_length),
            ("maxLength", self.max_length),
            ("minItems", self.min_items),
            ("maxItems", self.max_items),
        )
        for key, value in constraints:
            if value is not None:
                schema[key] = value

        if self.properties is not None and self.type == "object":
            schema["properties"] = self.properties

        if self.items is not None and self.type == "array":
            schema["items"] = self.items

        return schema


Handler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    """
    Tool definition for MCP protocol.

    The handler is called with the validated arguments as keyword arguments,
    so its signature documents the types it accepts.
    """

    name: str
    description: str
    parameters: Sequence[ToolParameter]
    handler: Handler
    strict: bool = False
    timeout_class: str = LOOKUP
    output_schema: Optional[Dict[str, Any]] = None
    _schema: Dict[str, Any] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        """Freeze parameters and generate the input schema."""
        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "_schema", self._generate_schema())

    def _generate_schema(self) -> Dict[str, Any]:
        """Generate JSON Schema for the tool parameters."""
        properties = {}
        required = []

        for param in self.parameters:
            properties[param.name] = param.to_schema()
            if param.required:
                required.append(param.name)

        schema: Dict[str, Any] = {"type": "object", "properties": properties, "required": required}
        if self.strict:
            schema["additionalProperties"] = False
        return schema

    @property
    def schema(self) -> Dict[str, Any]:
        """Get the input schema (a copy, the tool itself stays immutable)."""
        return json.loads(json.dumps(self._schema))

    @property
    def defaults(self) -> Dict[str, Any]:
        return {param.name: param.default for param in self.parameters if param.has_default}

    def to_descriptor(self) -> Dict[str, Any]:
        """Describe the tool for capability discovery."""
        descriptor = {"name": self.name, "description": self.description, "inputSchema": self.schema}
        if self.output_schema is not None:
            descriptor["outputSchema"] = json.loads(json.dumps(self.output_schema))
        return descriptor

    async def execute(self, arguments: Dict[str, Any]) -> Any:
        """
        Execute the tool with already validated arguments.

        Args:
            arguments: Keyword arguments to pass to the handler

        Returns:
            The result of the tool execution
        """
        return await self.handler(**arguments)


@dataclass
class ToolResult:
    """Outcome of one supervised execution: success, error or cancellation."""

    tool_name: str
    request_id: Any = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[ErrorObject] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary representation."""
        result_dict = {
            "name": self.tool_name,
            "parameters": self.parameters,
            "result": self.result,
            "success": self.success,
        }

        if self.error is not None:
            result_dict["error"] = self.error.to_dict()

        return result_dict


def describe_parameters(tool: Tool) -> List[Dict[str, Any]]:
    """List parameter dictionaries for display."""
    return [param.to_dict() for param in tool.parameters]
