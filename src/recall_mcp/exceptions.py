"""Custom exceptions for the Recall MCP server."""

from typing import Any

from recall_mcp.types.json_rpc import ErrorData


class RecallMCPError(Exception):
    """Base error for the Recall MCP server."""


class ProvisioningError(RecallMCPError):
    """A session dispatcher could not be constructed.

    Raised when required configuration, such as the Recall private key, is
    missing. Every request that needs a new session fails with this error until
    the configuration is fixed; the process itself keeps running.
    """


class ToolError(RecallMCPError):
    """Error in tool operations, reported to the client as a tool result."""


class JSONRPCError(RecallMCPError):
    """Raised by a request handler to answer with a specific JSON-RPC error.

    Attributes:
        error: The ErrorData sent back to the client
    """

    error: ErrorData

    def __init__(self, code: int, message: str, data: Any | None = None) -> None:
        super().__init__(message)
        self.error = ErrorData(code=code, message=message, data=data)
