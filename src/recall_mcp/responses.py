"""JSON-RPC error envelopes returned at the HTTP layer."""

from __future__ import annotations

from collections.abc import Mapping
from http import HTTPStatus

from starlette.responses import JSONResponse

from recall_mcp.types.json_rpc import (
    CONNECTION_ERROR,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    ErrorData,
    JSONRPCErrorResponse,
)

INVALID_SESSION_MESSAGE = "Invalid or missing session ID"
UNSUPPORTED_MEDIA_TYPE_MESSAGE = "Content-Type must be application/json"
NOT_ACCEPTABLE_MESSAGE = "Accept header must include text/event-stream"
INTERNAL_ERROR_MESSAGE = "Internal server error"


def jsonrpc_error_response(
    status_code: int,
    code: int,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Build a ``{"jsonrpc": "2.0", "error": {...}, "id": null}`` response."""
    body = JSONRPCErrorResponse(id=None, error=ErrorData(code=code, message=message))
    return JSONResponse(body.envelope(), status_code=status_code, headers=headers)


def invalid_session() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.BAD_REQUEST, CONNECTION_ERROR, INVALID_SESSION_MESSAGE)


def unsupported_media_type() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, CONNECTION_ERROR, UNSUPPORTED_MEDIA_TYPE_MESSAGE)


def not_acceptable() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.NOT_ACCEPTABLE, CONNECTION_ERROR, NOT_ACCEPTABLE_MESSAGE)


def parse_error() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.BAD_REQUEST, PARSE_ERROR, "Parse error")


def invalid_request() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.BAD_REQUEST, INVALID_REQUEST, "Invalid Request")


def internal_error() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.INTERNAL_SERVER_ERROR, INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE)


def payload_too_large() -> JSONResponse:
    return jsonrpc_error_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, CONNECTION_ERROR, "Request body too large")
