"""OAuth middleware for the /mcp endpoint.

Handshake and capability listing pass without a token so that a client can
connect and discover the server before it has finished the OAuth flow.
Everything else (tools/call in particular) needs a Bearer token that is in
the valid-token store.
"""

import json
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.endpoints import resource_metadata_url
from oauth.stores import valid_tokens

logger = logging.getLogger(__name__)

PUBLIC_METHODS = frozenset({
    "initialize",
    "ping",
    "notifications/initialized",
    "tools/list",
    "prompts/list",
    "resources/list",
})


def rpc_methods(body: bytes) -> list[str]:
    """JSON-RPC method names in a request body (single message or batch)."""
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return []

    messages = payload if isinstance(payload, list) else [payload]
    methods = []
    for message in messages:
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            return []
        methods.append(message["method"])
    return methods


def requires_token(http_method: str, methods: list[str]) -> bool:
    """Decide whether a /mcp request must carry a valid Bearer token."""
    if http_method == "GET":
        return False
    if methods and all(m in PUBLIC_METHODS for m in methods):
        return False
    return True


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def unauthorized_response(request: Request, error_description: str) -> JSONResponse:
    """Return 401 with WWW-Authenticate header pointing to resource metadata (RFC 9728)."""
    return JSONResponse(
        {"error": "unauthorized", "error_description": error_description},
        status_code=401,
        headers={"WWW-Authenticate": f'Bearer resource_metadata="{resource_metadata_url(request)}"'}
    )


class MCPOAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to validate OAuth Bearer tokens for Streamable HTTP MCP endpoint."""

    async def dispatch(self, request: Request, call_next):
        methods = []
        if request.method == "POST":
            methods = rpc_methods(await request.body())

        if not requires_token(request.method, methods):
            return await call_next(request)

        token = bearer_token(request)
        if token is None:
            logger.info(f"[AUTH] Request rejected: no Bearer token ({', '.join(methods) or request.method})")
            return unauthorized_response(request, "Missing or invalid Authorization header")

        if token not in valid_tokens:
            logger.info("[AUTH] Request rejected: invalid token")
            return unauthorized_response(request, "Invalid or expired token")

        return await call_next(request)
