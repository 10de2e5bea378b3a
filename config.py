"""Config management for youtube-mcp.

Values come from ~/.youtube-mcp/config.json and the environment; the
environment always wins.
"""
import json
import os
from pathlib import Path
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError


CONFIG_DIR = Path.home() / ".youtube-mcp"
CONFIG_FILE = CONFIG_DIR / "config.json"

# config key -> environment variable
ENV_KEYS = {
    "client_id": "OAUTH_CLIENT_ID",
    "client_secret": "OAUTH_CLIENT_SECRET",
    "password_hash": "OAUTH_PASSWORD_HASH",
    "password": "OAUTH_PASSWORD",
    "host": "MCP_HOST",
    "port": "MCP_PORT",
    "trust_proxy_headers": "TRUST_PROXY_HEADERS",
    "session_idle_timeout": "SESSION_IDLE_TIMEOUT",
    "json_response": "MCP_JSON_RESPONSE",
    "ytdlp_path": "YTDLP_PATH",
    "ytdlp_timeout": "YTDLP_TIMEOUT",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
}

_password_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Hash a password with argon2id for OAUTH_PASSWORD_HASH."""
    return _password_hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Constant-time argon2 check. Slow on purpose; call it off the event loop."""
    if not password_hash or not password:
        return False
    try:
        return _password_hasher.verify(password_hash, password)
    except (InvalidHash, VerificationError):
        return False


def _as_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    @property
    def client_id(self) -> Optional[str]:
        return self.data.get("client_id")

    @property
    def client_secret(self) -> Optional[str]:
        return self.data.get("client_secret")

    @property
    def password_hash(self) -> Optional[str]:
        """Stored argon2 hash; a plain OAUTH_PASSWORD is hashed on first access."""
        if not self.data.get("password_hash") and self.data.get("password"):
            self.data["password_hash"] = hash_password(self.data.pop("password"))
        return self.data.get("password_hash")

    @property
    def host(self) -> str:
        return self.data.get("host") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.data.get("port") or 3000)

    @property
    def trust_proxy_headers(self) -> bool:
        return _as_bool(self.data.get("trust_proxy_headers"), True)

    @property
    def session_idle_timeout(self) -> float:
        value = self.data.get("session_idle_timeout")
        return float(3600 if value is None or value == "" else value)

    @property
    def json_response(self) -> bool:
        return _as_bool(self.data.get("json_response"), False)

    @property
    def ytdlp_path(self) -> str:
        return self.data.get("ytdlp_path") or "yt-dlp"

    @property
    def ytdlp_timeout(self) -> float:
        return float(self.data.get("ytdlp_timeout") or 300)

    @property
    def log_level(self) -> str:
        return (self.data.get("log_level") or "INFO").upper()

    @property
    def log_format(self) -> str:
        return (self.data.get("log_format") or "plain").lower()

    def is_valid(self) -> bool:
        """Check if config has what remote mode needs."""
        return bool(self.client_id and self.client_secret and self.password_hash)


def load_config(env: dict = None) -> Config:
    """Load config from file, then overlay environment variables."""
    env = os.environ if env is None else env
    data = {}

    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError):
            data = {}

    for key, env_name in ENV_KEYS.items():
        value = env.get(env_name)
        if value:
            data[key] = value

    return Config(data)


def save_config(**values) -> None:
    """Merge values into the config file."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    data = {}
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError):
            data = {}
    data.update(values)

    with open(CONFIG_FILE, "w") as f:
        json.dump(data, f, indent=2)

    # Set restrictive permissions (owner read/write only)
    os.chmod(CONFIG_FILE, 0o600)
