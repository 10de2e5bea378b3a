"""OAuth 2.1 endpoints for MCP server authentication.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/*)
- Client registration (/register)
- Consent flow (/authorize, /authorize/approve)
- Token endpoint (/token)

There is exactly one client identity (OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET).
Consent is gated by the operator password, with per-IP lockout.
"""

import base64
import binascii
import hmac
import logging
import math
import time
from typing import Optional
from urllib.parse import unquote, urlencode

from fastapi import APIRouter, Request, Form
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse, HTMLResponse

from config import Config, verify_password
from oauth.guard import abuse_guard, get_client_ip
from oauth.pkce import SUPPORTED_METHODS, verify_code_verifier
from oauth.stores import authorization_codes, valid_tokens
from oauth.templates import render_consent_page, render_error_page

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

SCOPE = "mcp"
TOKEN_EXPIRES_IN = 86400  # advertised only, tokens are not expired server-side
DEFAULT_REDIRECT_URI = "https://claude.ai/api/mcp/auth_callback"
GRANT_TYPES = ["authorization_code", "refresh_token"]

# Set by init_oauth_routes()
_config: Config = Config()


def init_oauth_routes(config: Config):
    """Initialize OAuth routes with the server config.

    Must be called before including the router in the app.
    """
    global _config
    _config = config


def get_base_url(request: Request) -> str:
    """Externally observed scheme://host of this request."""
    scheme = request.url.scheme
    host = request.headers.get("host") or request.url.netloc

    if _config.trust_proxy_headers:
        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        if forwarded_proto:
            scheme = forwarded_proto.split(",")[0].strip()
        forwarded_host = request.headers.get("x-forwarded-host", "")
        if forwarded_host:
            host = forwarded_host.split(",")[0].strip()

    return f"{scheme}://{host}"


def resource_metadata_url(request: Request) -> str:
    return f"{get_base_url(request)}/.well-known/oauth-protected-resource"


def _secrets_match(supplied: str, expected: Optional[str]) -> bool:
    return bool(expected) and hmac.compare_digest(supplied.encode(), expected.encode())


# ============== OAuth 2.1 Discovery Endpoints ==============

@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(request: Request):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    base_url = get_base_url(request)
    return {
        "resource": base_url,
        "authorization_servers": [base_url],
        "bearer_methods_supported": ["header"],
        "scopes_supported": [SCOPE],
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(request: Request):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    base_url = get_base_url(request)
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/authorize",
        "token_endpoint": f"{base_url}/token",
        "registration_endpoint": f"{base_url}/register",
        "response_types_supported": ["code"],
        "grant_types_supported": GRANT_TYPES,
        "code_challenge_methods_supported": list(SUPPORTED_METHODS),
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"],
        "scopes_supported": [SCOPE],
    }


# ============== Client Registration ==============

@router.post("/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591).

    Compatibility shim: every caller gets the single provisioned client.
    """
    try:
        data = await request.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    redirect_uris = data.get("redirect_uris") or [DEFAULT_REDIRECT_URI]
    logger.info(f"[REGISTER] Returned provisioned client to {data.get('client_name', 'unnamed client')}")

    return JSONResponse({
        "client_id": _config.client_id,
        "client_secret": _config.client_secret,
        "client_id_issued_at": int(time.time()),
        "redirect_uris": redirect_uris,
        "grant_types": GRANT_TYPES,
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_post",
        "scope": SCOPE,
    }, status_code=201)


# ============== Authorization Flow ==============

def _validate_authorization_params(
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    code_challenge_method: str,
) -> Optional[str]:
    """Return an error description, or None if the parameters are usable."""
    if not client_id or not _secrets_match(client_id, _config.client_id):
        return "Unknown client_id."
    if not redirect_uri:
        return "Missing redirect_uri."
    if not code_challenge:
        return "Missing code_challenge (PKCE is required)."
    if code_challenge_method not in SUPPORTED_METHODS:
        return f"Unsupported code_challenge_method: {code_challenge_method}"
    return None


def _invalid_request_page(message: str) -> HTMLResponse:
    return HTMLResponse(render_error_page("Invalid Request", message), status_code=400)


def _lockout_page(remaining_seconds: float) -> HTMLResponse:
    minutes = max(1, math.ceil(remaining_seconds / 60))
    message = (
        f"Too many failed attempts. This address is locked out; "
        f"try again in {minutes} minute{'s' if minutes != 1 else ''}."
    )
    return HTMLResponse(
        render_error_page("Locked Out", message),
        status_code=429,
        headers={"Retry-After": str(math.ceil(remaining_seconds))},
    )


@router.get("/authorize")
async def authorize(
    response_type: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    code_challenge: str = "",
    code_challenge_method: str = "plain",
    state: str = "",
):
    """OAuth 2.0 Authorization Endpoint - renders the consent page."""
    if response_type != "code":
        return _invalid_request_page("Unsupported response_type, expected 'code'.")

    error = _validate_authorization_params(client_id, redirect_uri, code_challenge, code_challenge_method)
    if error:
        logger.info(f"[AUTHORIZE] Rejected authorization request: {error}")
        return _invalid_request_page(error)

    return HTMLResponse(render_consent_page(
        client_id=client_id,
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        state=state,
    ))


def _append_query(url: str, **params) -> str:
    params = {k: v for k, v in params.items() if v}
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


@router.post("/authorize/approve")
async def approve(
    request: Request,
    client_id: str = Form(""),
    redirect_uri: str = Form(""),
    code_challenge: str = Form(""),
    code_challenge_method: str = Form("plain"),
    state: str = Form(""),
    password: str = Form(""),
):
    """Handle consent form submission."""
    error = _validate_authorization_params(client_id, redirect_uri, code_challenge, code_challenge_method)
    if error:
        return _invalid_request_page(error)

    ip = get_client_ip(request, _config.trust_proxy_headers)

    # One password check per IP at a time
    async with abuse_guard.attempt(ip):
        locked_for = abuse_guard.is_locked_out(ip)
        if locked_for is not None:
            logger.warning(f"[APPROVE] Rejected attempt from locked out IP {ip}")
            return _lockout_page(locked_for)

        password_ok = await run_in_threadpool(verify_password, _config.password_hash, password)

        locked_for = abuse_guard.is_locked_out(ip)
        if locked_for is not None:
            logger.warning(f"[APPROVE] IP {ip} was locked out during the password check")
            return _lockout_page(locked_for)

        if not password_ok:
            record = abuse_guard.record_failed_attempt(ip)
            logger.warning(f"[APPROVE] Failed password attempt {record.count} from {ip}")

            locked_for = abuse_guard.is_locked_out(ip)
            if locked_for is not None:
                return _lockout_page(locked_for)

            left = abuse_guard.remaining_attempts(ip)
            return HTMLResponse(
                render_error_page(
                    "Incorrect Password",
                    f"Incorrect password. {left} attempt{'s' if left != 1 else ''} remaining.",
                ),
                status_code=403,
            )

        abuse_guard.clear_on_success(ip)

    record = authorization_codes.issue(
        client_id=client_id,
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    logger.info(f"[APPROVE] Authorization approved from {ip}")

    return RedirectResponse(
        url=_append_query(redirect_uri, code=record.code, state=state),
        status_code=302,
    )


# ============== Token Endpoint ==============

def _basic_credentials(request: Request) -> tuple[Optional[str], Optional[str]]:
    """client_id/client_secret from an HTTP Basic Authorization header."""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        return None, None
    return unquote(client_id), unquote(client_secret)


def _token_error(error: str, description: str = None) -> JSONResponse:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return JSONResponse(body, status_code=400, headers={"Cache-Control": "no-store"})


def _token_response(access_token: str, refresh_token: str) -> JSONResponse:
    return JSONResponse({
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": TOKEN_EXPIRES_IN,
        "refresh_token": refresh_token,
        "scope": SCOPE,
    }, headers={"Cache-Control": "no-store"})


@router.post("/token")
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    client_secret: str = Form(None),
    code_verifier: str = Form(None),
    refresh_token: str = Form(None)
):
    """OAuth 2.0 Token Endpoint."""
    # Handle form data or JSON
    if grant_type is None:
        try:
            data = await request.json()
        except ValueError:
            return _token_error("invalid_request", "Body must be form-encoded or JSON")
        if not isinstance(data, dict):
            return _token_error("invalid_request", "Body must be an object")
        grant_type = data.get("grant_type")
        code = data.get("code")
        redirect_uri = data.get("redirect_uri")
        client_id = data.get("client_id")
        client_secret = data.get("client_secret")
        code_verifier = data.get("code_verifier")
        refresh_token = data.get("refresh_token")

    basic_id, basic_secret = _basic_credentials(request)
    client_id = basic_id or client_id
    client_secret = basic_secret or client_secret

    logger.debug(f"[TOKEN] grant_type: {grant_type}")

    if grant_type == "authorization_code":
        if not code:
            return _token_error("invalid_request", "Missing code")

        record = authorization_codes.get(code)
        if record is None:
            logger.info("[TOKEN] Rejected unknown or expired authorization code")
            return _token_error("invalid_grant", "Invalid or expired authorization code")

        if not client_id or not _secrets_match(client_id, record.client_id):
            return _token_error("invalid_client", "Client mismatch")
        if client_secret and not _secrets_match(client_secret, _config.client_secret):
            return _token_error("invalid_client", "Invalid client credentials")
        if redirect_uri and redirect_uri != record.redirect_uri:
            return _token_error("invalid_grant", "redirect_uri mismatch")

        if not code_verifier:
            return _token_error("invalid_request", "Missing code_verifier")
        if not verify_code_verifier(code_verifier, record.code_challenge, record.code_challenge_method):
            logger.info("[TOKEN] PKCE verification failed")
            return _token_error("invalid_grant", "PKCE verification failed")

        # Single use
        authorization_codes.pop(code)
        new_access_token, new_refresh_token = valid_tokens.issue_pair()
        logger.info("[TOKEN] Issued tokens for authorization_code grant")
        return _token_response(new_access_token, new_refresh_token)

    elif grant_type == "refresh_token":
        if not refresh_token or refresh_token not in valid_tokens:
            logger.info("[TOKEN] Rejected unknown refresh token")
            return _token_error("invalid_grant", "Invalid refresh token")

        # The presented token stays valid; no rotation.
        new_access_token, new_refresh_token = valid_tokens.issue_pair()
        logger.info("[TOKEN] Issued tokens for refresh_token grant")
        return _token_response(new_access_token, new_refresh_token)

    return _token_error("unsupported_grant_type")
