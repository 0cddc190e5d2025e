"""
toolhost: MCP tool servers over stdio.
"""

__version__ = "0.3.0"
