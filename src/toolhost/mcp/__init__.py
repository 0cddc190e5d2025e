"""
MCP protocol runtime: envelopes, dispatch, resources and the stdio server.
"""
