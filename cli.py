"""CLI entry point for youtube-mcp.

Runs the tool server over stdio (local MCP clients) or as a remote HTTP
server with OAuth, and manages the operator password.
"""
import argparse
import getpass
import sys
from pathlib import Path

import requests
import uvicorn
from dotenv import load_dotenv

from config import CONFIG_FILE, hash_password, load_config, save_config
from logging_config import setup_logging

VERSION = "1.1.0"


def _load_env():
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)


def _prompt_new_password() -> str:
    password = getpass.getpass("New password: ")
    if not password:
        print("[ERROR] Password must not be empty.", file=sys.stderr)
        sys.exit(1)
    if getpass.getpass("Repeat password: ") != password:
        print("[ERROR] Passwords do not match.", file=sys.stderr)
        sys.exit(1)
    return password


# ============== Commands ==============

def cmd_stdio():
    """Serve the tools over stdin/stdout. No auth: the client owns the process."""
    from tools import init_tools, mcp

    config = load_config()
    setup_logging(config.log_level, config.log_format)
    init_tools(config)
    mcp.run("stdio")


def cmd_serve(host: str = None, port: int = None):
    """Run the remote HTTP server with OAuth."""
    from main import create_app

    config = load_config()
    setup_logging(config.log_level, config.log_format)

    if not config.is_valid():
        print("[ERROR] Remote mode needs OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET and a password.", file=sys.stderr)
        print("  Set OAUTH_PASSWORD_HASH (see 'youtube-mcp hash-password')", file=sys.stderr)
        print("  or run 'youtube-mcp set-password'.", file=sys.stderr)
        sys.exit(1)

    host = host or config.host
    port = port or config.port
    print(f"\n  youtube-mcp v{VERSION}", file=sys.stderr)
    print(f"  MCP endpoint: http://{host}:{port}/mcp\n", file=sys.stderr)
    uvicorn.run(create_app(config), host=host, port=port, log_level=config.log_level.lower())


def cmd_hash_password():
    """Print an argon2id hash for OAUTH_PASSWORD_HASH."""
    print(hash_password(_prompt_new_password()))


def cmd_set_password():
    """Store the operator password hash in the config file."""
    save_config(password_hash=hash_password(_prompt_new_password()))
    print(f"Password hash saved to {CONFIG_FILE}")


def cmd_status(host: str = None, port: int = None):
    """Query /health of a running server."""
    config = load_config()
    host = host or config.host
    if host == "0.0.0.0":
        host = "127.0.0.1"
    url = f"http://{host}:{port or config.port}/health"

    print("\n" + "=" * 50)
    print("  YouTube MCP Server Status")
    print("=" * 50)

    print("\n[Server]")
    try:
        response = requests.get(url, timeout=5)
        response.raise_for_status()
        print(f"  Status:   Running (v{response.json().get('version', '?')})")
    except requests.RequestException as e:
        print(f"  Status:   Not reachable ({e.__class__.__name__})")
    print(f"  URL:      {url}")

    print("\n[Config]")
    print(f"  File:     {CONFIG_FILE}")
    print(f"  Exists:   {CONFIG_FILE.exists()}")
    print(f"  Remote:   {'ready' if config.is_valid() else 'incomplete'}")
    print(f"  yt-dlp:   {config.ytdlp_path}")

    print("\n" + "=" * 50 + "\n")


def cmd_version():
    """Show version information."""
    print(f"youtube-mcp v{VERSION}")


def cmd_help():
    """Show detailed help."""
    print("""
YouTube MCP Server - YouTube transcripts and metadata for MCP clients

USAGE:
    youtube-mcp [command] [--host HOST] [--port PORT]

COMMANDS:
    stdio          Serve over stdin/stdout (default, for local clients)
    serve          Run the remote HTTP server with OAuth 2.1
    hash-password  Print an argon2 hash for OAUTH_PASSWORD_HASH
    set-password   Store the operator password hash in the config file
    status         Check a running server
    version        Show version information
    help           Show this help message

ENVIRONMENT:
    OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET   Pre-provisioned OAuth client
    OAUTH_PASSWORD_HASH                    Operator password (argon2 hash)
    MCP_HOST, MCP_PORT                     Bind address (default 0.0.0.0:3000)
    YTDLP_PATH, YTDLP_TIMEOUT              yt-dlp binary and timeout (s)
    LOG_LEVEL, LOG_FORMAT                  INFO/DEBUG..., plain/json

EXAMPLES:
    youtube-mcp serve --port 3000
    youtube-mcp status
""")


# ============== Main Entry Point ==============

def main():
    """Main entry point for CLI."""
    _load_env()

    parser = argparse.ArgumentParser(
        prog="youtube-mcp",
        description="YouTube MCP Server - transcripts and metadata via yt-dlp",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  stdio          Serve over stdin/stdout (default)
  serve          Run the remote HTTP server with OAuth
  hash-password  Print a password hash
  set-password   Store a password hash in the config file
  status         Check a running server
  version        Show version
  help           Show detailed help
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="stdio",
        choices=["stdio", "serve", "hash-password", "set-password", "status", "version", "help"],
        help="Command to run (default: stdio)"
    )
    parser.add_argument("--host", help="Bind/connect host (default: MCP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port (default: MCP_PORT or 3000)")

    # Legacy flags for backward compatibility
    parser.add_argument("--remote", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--version", "-v", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args()

    if args.version:
        cmd_version()
    elif args.remote or args.command == "serve":
        cmd_serve(args.host, args.port)
    elif args.command == "stdio":
        cmd_stdio()
    elif args.command == "hash-password":
        cmd_hash_password()
    elif args.command == "set-password":
        cmd_set_password()
    elif args.command == "status":
        cmd_status(args.host, args.port)
    elif args.command == "version":
        cmd_version()
    elif args.command == "help":
        cmd_help()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
