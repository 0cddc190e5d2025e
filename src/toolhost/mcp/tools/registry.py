"""
Tool registry for MCP protocol.

This module provides a registry for registering tools at startup. Once
frozen, the registry is a read-only snapshot shared by concurrent calls.
"""

from types import MappingProxyType
from typing import Any, Dict, List, Mapping

from toolhost.mcp.tools.models import Tool


class DuplicateToolError(ValueError):
    """A tool with the same name is already registered."""


class ToolNotFoundError(ValueError):
    """No tool with the requested name is registered."""


class RegistryFrozenError(RuntimeError):
    """The registry no longer accepts registrations."""


class ToolRegistry:
    """Registry for MCP tools."""

    def __init__(self):
        """Initialize an empty registry."""
        self._tools: Dict[str, Tool] = {}
        self._snapshot: Mapping[str, Tool] = MappingProxyType(self._tools)
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, tool: Tool) -> None:
        """
        Register a tool with the registry.

        Args:
            tool: The tool to register

        Raises:
            DuplicateToolError: If a tool with the same name is already registered
            RegistryFrozenError: If the registry has been frozen
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{tool.name}': registry is frozen")

        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool with name '{tool.name}' is already registered")

        self._tools[tool.name] = tool

    def register_all(self, tools: List[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def freeze(self) -> "ToolRegistry":
        """Take an immutable snapshot; later registrations are refused."""
        if not self._frozen:
            self._snapshot = MappingProxyType(dict(self._tools))
            self._frozen = True
        return self

    def get_tool(self, tool_name: str) -> Tool:
        """
        Get a tool by name.

        Args:
            tool_name: The name of the tool to get

        Returns:
            The requested tool

        Raises:
            ToolNotFoundError: If no tool with the given name is registered
        """
        try:
            return self._snapshot[tool_name]
        except KeyError:
            raise ToolNotFoundError(f"No tool with name '{tool_name}' is registered") from None

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def list_tools(self) -> List[str]:
        """
        List all registered tool names.

        Returns:
            A list of all registered tool names
        """
        return list(self._snapshot.keys())

    def get_all_tools(self) -> List[Tool]:
        """
        Get all registered tools.

        Returns:
            A list of all registered tools
        """
        return list(self._snapshot.values())

    def get_schemas(self) -> List[Dict[str, Any]]:
        """
        Get descriptors for all registered tools, in registration order.

        Returns:
            A list of tool descriptors as served by ``tools/list``
        """
        return [tool.to_descriptor() for tool in self._snapshot.values()]
