"""CLI entry point for lyrion-auth-relay.

Runs the relay server and offers a few operator helpers for checking
policy and debugging callbacks.
"""
import argparse
import json
import os
import sys
from pathlib import Path

import requests
import uvicorn
from dotenv import load_dotenv

from config import load_config, CONFIG_FILE
from relay import __version__

# Load environment: .env (local override) or .env.public (bundled defaults)
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)
else:
    _package_dir = Path(__file__).parent
    _public_env = _package_dir / ".env.public"
    if _public_env.exists():
        load_dotenv(_public_env)

DEFAULT_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
DEFAULT_PORT = int(os.getenv("RELAY_PORT", "8787"))


# ============== Commands ==============

def cmd_serve(host: str, port: int):
    """Run the relay in the foreground."""
    uvicorn.run("main:app", host=host, port=port, log_level="info")


def cmd_status(host: str, port: int) -> int:
    """Probe a running relay's health endpoint."""
    probe_host = "127.0.0.1" if host in ("0.0.0.0", "") else host
    url = f"http://{probe_host}:{port}/health"

    print("\n" + "=" * 50)
    print("  Auth Relay Status")
    print("=" * 50)
    print(f"\n  URL:      {url}")

    try:
        response = requests.get(url, timeout=5)
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        print(f"  Status:   Not running ({e.__class__.__name__})")
        print("\n" + "=" * 50 + "\n")
        return 1

    print(f"  Status:   {data.get('status', 'unknown')}")
    print(f"  Store:    {data.get('store', 'unknown')}")
    print("\n" + "=" * 50 + "\n")
    return 0


def cmd_check_url(url: str) -> int:
    """Check a destination URL against the redirect policy."""
    from relay.exchange import check_destination

    outcome = check_destination(load_config(), url)
    if outcome.ok:
        print(f"[OK] Accepted: {url}")
        return 0
    print(f"[X] {outcome.reason}")
    return 1


def cmd_encode_state(nonce: str) -> int:
    """Print the base64 state blob for a nonce."""
    from relay.exchange import encode_state

    print(encode_state(nonce))
    return 0


def cmd_config() -> int:
    """Show the effective configuration."""
    config = load_config()
    print(json.dumps(config.to_dict(), indent=2))
    print(f"\nConfig file: {CONFIG_FILE} (exists: {CONFIG_FILE.exists()})", file=sys.stderr)
    return 0


def cmd_version():
    """Show version information."""
    print(f"lyrion-auth-relay v{__version__}")


def cmd_help():
    """Show detailed help."""
    print("""
Auth Relay - OAuth redirect relay for media-server plugins

USAGE:
    lyrion-auth-relay <command> [args]

COMMANDS:
    serve               Run the relay (default)
    status              Query a running relay's /health endpoint
    check-url URL       Check a plugin callback URL against the redirect policy
    encode-state NONCE  Print the base64 'state' value for a nonce
    config              Show the effective configuration
    version             Show version information
    help                Show this help message

EXAMPLES:
    lyrion-auth-relay serve --port 8787
    lyrion-auth-relay check-url http://127.0.0.1:9000/plugins/Spotty/settings/callback
    RELAY_STORE=redis REDIS_URL=redis://localhost:6379/0 lyrion-auth-relay serve
""")


# ============== Main Entry Point ==============

def main(argv=None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="lyrion-auth-relay",
        description="Auth Relay - OAuth redirect relay for media-server plugins",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "status", "check-url", "encode-state", "config", "version", "help"],
        help="Command to run (default: serve)"
    )
    parser.add_argument("value", nargs="?", help="URL for check-url, nonce for encode-state")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Bind/probe host (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Bind/probe port (default: {DEFAULT_PORT})")

    args = parser.parse_args(argv)

    if args.command in ("check-url", "encode-state") and not args.value:
        parser.error(f"{args.command} requires an argument")

    if args.command == "serve":
        cmd_serve(args.host, args.port)
    elif args.command == "status":
        return cmd_status(args.host, args.port)
    elif args.command == "check-url":
        return cmd_check_url(args.value)
    elif args.command == "encode-state":
        return cmd_encode_state(args.value)
    elif args.command == "config":
        return cmd_config()
    elif args.command == "version":
        cmd_version()
    elif args.command == "help":
        cmd_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
