"""Shared fixtures for the youtube-mcp test suite.

Key fixtures:
- config: a complete remote-mode Config with a known client and password
- app: the FastAPI app built from that config
- client: an httpx.AsyncClient wired to the app (in-memory, no network)
- clock: a controllable clock installed into the code store and abuse guard

The OAuth stores are module-level singletons, so they are cleared around
every test.
"""

import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from config import Config, hash_password
from main import create_app
from oauth.guard import abuse_guard
from oauth.stores import authorization_codes, valid_tokens

CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"
PASSWORD = "correct horse battery staple"
REDIRECT_URI = "https://client.example.com/callback"

# Hashing is slow on purpose; do it once per session
PASSWORD_HASH = hash_password(PASSWORD)

MCP_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


def rpc(method: str, request_id=1, params: dict = None) -> dict:
    message = {"jsonrpc": "2.0", "method": method}
    if request_id is not None:
        message["id"] = request_id
    if params is not None:
        message["params"] = params
    return message


def initialize_request(request_id=1) -> dict:
    return rpc("initialize", request_id, {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "0.0.1"},
    })


def query_params(location: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


@pytest.fixture(autouse=True)
def reset_oauth_state():
    valid_tokens.clear()
    authorization_codes.clear()
    abuse_guard.clear()
    yield
    valid_tokens.clear()
    authorization_codes.clear()
    abuse_guard.clear()


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(authorization_codes, "clock", fake)
    monkeypatch.setattr(abuse_guard, "clock", fake)
    return fake


@pytest.fixture
def config():
    return Config({
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "password_hash": PASSWORD_HASH,
        "trust_proxy_headers": "true",
        "json_response": "true",
        "session_idle_timeout": "0",
    })


@pytest.fixture
def app(config):
    return create_app(config)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
