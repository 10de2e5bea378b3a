"""youtube-mcp remote server.

It handles:
- MCP tools (get_video, get_playlist, get_available_languages) via tools.py
- MCP protocol endpoint via Streamable HTTP (/mcp), one session per client
- OAuth 2.1 authorization server for MCP clients (oauth/)

MCP clients (Claude, etc.) connect to this server over HTTPS, usually
through a reverse proxy that sets X-Forwarded-* headers.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import Config, load_config
from logging_config import setup_logging
from oauth.endpoints import get_base_url, init_oauth_routes, router as oauth_router
from oauth.guard import abuse_guard
from oauth.middleware import MCPOAuthMiddleware
from oauth.stores import authorization_codes
from sessions import SessionRegistry
from tools import SERVER_NAME, init_tools, lowlevel_server

VERSION = "1.1.0"
HOUSEKEEPING_INTERVAL = 60  # seconds

logger = logging.getLogger(__name__)


async def sweep_oauth_state(interval: float = HOUSEKEEPING_INTERVAL):
    """Periodically drop expired authorization codes and stale failed-attempt records."""
    while True:
        await anyio.sleep(interval)
        codes = authorization_codes.sweep()
        records = abuse_guard.sweep()
        if codes or records:
            logger.debug(f"[CLEANUP] Removed {codes} expired code(s), {records} failed-attempt record(s)")


def create_app(config: Config) -> FastAPI:
    """Build the FastAPI app for remote (HTTP + OAuth) mode."""
    init_oauth_routes(config)
    init_tools(config)

    registry = SessionRegistry(
        lowlevel_server(),
        json_response=config.json_response,
        idle_timeout=config.session_idle_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with anyio.create_task_group() as tg, registry.run():
            tg.start_soon(sweep_oauth_state)
            logger.info(f"[STARTUP] {SERVER_NAME} {VERSION} ready")
            yield
            tg.cancel_scope.cancel()
        logger.info("[SHUTDOWN] Server stopped")

    app = FastAPI(
        title="YouTube MCP Server",
        description="YouTube transcripts and metadata over MCP, with OAuth 2.1",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.registry = registry

    # Add CORS middleware for browser-based MCP client access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    app.include_router(oauth_router)

    # Plain route rather than a mount so /mcp is served without a redirect to /mcp/
    app.add_route("/mcp", MCPOAuthMiddleware(registry), methods=["GET", "POST", "DELETE"])

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": VERSION}

    @app.get("/")
    async def root(request: Request):
        """Root endpoint with server info."""
        base_url = get_base_url(request)
        return {
            "name": SERVER_NAME,
            "version": VERSION,
            "endpoints": {
                "mcp": "/mcp",
                "health": "/health",
                "authorize": "/authorize",
                "token": "/token",
                "register": "/register",
            },
            "tools": ["get_video", "get_playlist", "get_available_languages"],
            "oauth": {
                "protected_resource": f"{base_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{base_url}/.well-known/oauth-authorization-server",
            },
        }

    return app


def load_app() -> FastAPI:
    """Load .env and config, set up logging and build the app (uvicorn factory)."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    config = load_config()
    setup_logging(config.log_level, config.log_format)
    logger.info(f"[STARTUP] Config loaded - valid: {config.is_valid()}")
    return create_app(config)


if __name__ == "__main__":
    import uvicorn

    config = load_config()
    uvicorn.run(load_app(), host=config.host, port=config.port)
