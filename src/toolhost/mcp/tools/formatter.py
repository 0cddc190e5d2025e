"""
Tool response formatter for MCP protocol.

This module provides functionality for formatting tool execution results.
"""

import json
from typing import Any, Dict

from toolhost.mcp.tools.models import ToolResult


class ToolResponseFormatter:
    """Formatter for MCP tool responses."""

    def format_result(self, result: ToolResult) -> Dict[str, Any]:
        """
        Format a successful tool result as MCP call-tool content.

        Args:
            result: The tool result to format

        Returns:
            A dictionary with text content, structured content and the error flag
        """
        payload = self._prepare_result_for_json(result.result)
        if isinstance(payload, str):
            text = payload
        else:
            text = json.dumps(payload, indent=2, ensure_ascii=False, default=str)

        formatted = {"content": [{"type": "text", "text": text}], "isError": False}
        if isinstance(payload, dict):
            formatted["structuredContent"] = payload
        return formatted

    def _prepare_result_for_json(self, result: Any) -> Any:
        """
        Prepare a result for JSON serialization.

        Args:
            result: The result to prepare

        Returns:
            The prepared result
        """
        if hasattr(result, "model_dump") and callable(result.model_dump):
            return result.model_dump(by_alias=True)

        if hasattr(result, "to_dict") and callable(result.to_dict):
            return result.to_dict()

        if isinstance(result, (list, tuple)):
            return [self._prepare_result_for_json(item) for item in result]
        elif isinstance(result, dict):
            return {k: self._prepare_result_for_json(v) for k, v in result.items()}

        if result is None or isinstance(result, (str, int, float, bool)):
            return result

        if hasattr(result, "__dict__"):
            return {k: v for k, v in vars(result).items() if not k.startswith("_")}

        return result
