"""Session-managed MCP server over streamable HTTP for the Recall agent toolkit."""

__version__ = "0.1.0"
