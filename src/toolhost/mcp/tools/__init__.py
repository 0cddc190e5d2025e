"""
Tool execution framework for MCP protocol.

This module provides classes for tool registration, validation and execution.
"""

from .formatter import ToolResponseFormatter
from .models import CRAWL, LOOKUP, Tool, ToolParameter, ToolResult
from .registry import ToolRegistry
from .supervisor import ExecutionSupervisor
from .validator import SchemaValidator
