"""
Tests for the tool registry.
"""

import unittest
from unittest.mock import AsyncMock

from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.mcp.tools.registry import DuplicateToolError, RegistryFrozenError, ToolNotFoundError, ToolRegistry


class TestToolRegistry(unittest.TestCase):
    """Tests for the ToolRegistry class."""

    def setUp(self):
        """Set up test fixtures."""
        self.registry = ToolRegistry()
        self.test_tool = Tool(
            name="test_tool",
            description="Test tool",
            parameters=[ToolParameter(name="param1", description="Parameter 1", type="string", required=True)],
            handler=AsyncMock(return_value={"result": "success"}),
        )
        self.second_tool = Tool(
            name="second_tool",
            description="Second test tool",
            parameters=[],
            handler=AsyncMock(return_value={"status": "done"}),
        )

    def test_init(self):
        """Test registry initialization."""
        self.assertEqual(len(self.registry), 0)
        self.assertEqual(self.registry.get_all_tools(), [])
        self.assertEqual(self.registry.get_schemas(), [])
        self.assertFalse(self.registry.frozen)

    def test_register_tool(self):
        self.registry.register(self.test_tool)

        self.assertIn("test_tool", self.registry)
        self.assertIs(self.registry.get_tool("test_tool"), self.test_tool)

    def test_register_duplicate_tool(self):
        self.registry.register(self.test_tool)

        with self.assertRaises(DuplicateToolError) as context:
            self.registry.register(self.test_tool)

        self.assertIn("is already registered", str(context.exception))
        self.assertIsInstance(context.exception, ValueError)

    def test_get_unknown_tool(self):
        with self.assertRaises(ToolNotFoundError):
            self.registry.get_tool("missing")

    def test_register_all_keeps_order(self):
        self.registry.register_all([self.second_tool, self.test_tool])

        self.assertEqual(self.registry.list_tools(), ["second_tool", "test_tool"])
        self.assertEqual([schema["name"] for schema in self.registry.get_schemas()], ["second_tool", "test_tool"])

    def test_freeze_refuses_registration(self):
        self.registry.register(self.test_tool)
        self.assertIs(self.registry.freeze(), self.registry)

        with self.assertRaises(RegistryFrozenError):
            self.registry.register(self.second_tool)
        self.assertEqual(self.registry.list_tools(), ["test_tool"])

    def test_freeze_is_idempotent(self):
        self.registry.register(self.test_tool)
        self.registry.freeze()
        self.registry.freeze()

        self.assertTrue(self.registry.frozen)
        self.assertEqual(len(self.registry), 1)

    def test_schemas_are_descriptors(self):
        self.registry.register(self.test_tool)
        schema = self.registry.get_schemas()[0]

        self.assertEqual(schema["description"], "Test tool")
        self.assertEqual(schema["inputSchema"]["required"], ["param1"])
