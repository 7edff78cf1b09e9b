"""mcpgate - OAuth 2.1 authorization for MCP servers."""

__version__ = "0.3.0"
