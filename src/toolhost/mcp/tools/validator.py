"""
Argument validation for MCP tools.

Arguments are checked centrally against the tool's JSON Schema before any
handler runs; handlers receive the normalized arguments only.
"""

import logging
from typing import Any, Dict, List, Optional

import jsonschema
from jsonschema.exceptions import relevance

from toolhost.mcp.errors import InvalidParamsError
from toolhost.mcp.tools.models import Tool

logger = logging.getLogger(__name__)


def _field_for(error: jsonschema.ValidationError, instance: Dict[str, Any], reported: set) -> Optional[str]:
    """Name the top-level field a validation error is about."""
    if error.path:
        return str(error.path[0])

    if error.validator == "required":
        # one error per missing property, all sharing the same validator_value
        missing = [name for name in error.validator_value if name not in instance and name not in reported]
        return missing[0] if missing else None

    if error.validator == "additionalProperties":
        allowed = error.schema.get("properties", {})
        extras = sorted(name for name in instance if name not in allowed)
        return extras[0] if extras else None

    return None


def _reason_for(error: jsonschema.ValidationError, field: Optional[str]) -> str:
    if error.validator == "required":
        return "is required"
    if error.validator == "additionalProperties":
        return "is not accepted by this tool"
    return error.message


class SchemaValidator:
    """Validates call arguments against tool input schemas."""

    def __init__(self):
        self._validators: Dict[str, Any] = {}

    def _validator_for(self, tool: Tool):
        validator = self._validators.get(tool.name)
        if validator is None:
            schema = tool.schema
            cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft7Validator)
            cls.check_schema(schema)
            validator = cls(schema)
            self._validators[tool.name] = validator
        return validator

    def errors(self, tool: Tool, arguments: Any) -> List[Dict[str, Any]]:
        """
        Collect every violation of the tool's schema.

        Args:
            tool: The tool whose schema applies
            arguments: The raw call arguments

        Returns:
            A list of ``{"field", "reason"}`` dictionaries, most relevant first
        """
        if not isinstance(arguments, dict):
            return [{"field": None, "reason": "arguments must be an object"}]

        found = sorted(self._validator_for(tool).iter_errors(arguments), key=relevance, reverse=True)
        violations = []
        reported = set()
        for error in found:
            field = _field_for(error, arguments, reported)
            reported.add(field)
            violations.append({"field": field, "reason": _reason_for(error, field)})
        return violations

    def validate(self, tool: Tool, arguments: Any) -> Dict[str, Any]:
        """
        Validate and normalize arguments for a tool.

        Args:
            tool: The tool to validate arguments for
            arguments: The raw call arguments

        Returns:
            The arguments with defaults filled in and, for non-strict tools,
            undeclared fields dropped

        Raises:
            InvalidParamsError: If the arguments violate the schema
        """
        violations = self.errors(tool, arguments)
        if violations:
            first = violations[0]
            logger.warning(f"Parameter validation failed for tool '{tool.name}': {first['field']} {first['reason']}")
            raise InvalidParamsError(first["field"], first["reason"], errors=violations)

        declared = {param.name for param in tool.parameters}
        normalized = dict(tool.defaults)
        normalized.update({name: value for name, value in arguments.items() if name in declared})
        return normalized
