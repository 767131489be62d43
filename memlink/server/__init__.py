"""Embedded local MCP server launched by ``memlink.local.ConnectionManager``."""
