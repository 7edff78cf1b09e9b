"""mcpgate entry point.

Changes:
  - 2026-10-18: hash-password prints a bcrypt hash.
  - 2026-10-12: Added rotate-keys and hash-password subcommands.
  - 2026-10-09: Added cleanup subcommand (expired codes, flows and tokens).
  - 2026-10-08: Initial CLI: serve (uvicorn), --version, Rich logging.
"""

import argparse
import getpass
import logging

from mcpgate import __version__
from mcpgate.config import get_settings
from mcpgate.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _cmd_cleanup() -> int:
    from mcpgate.oauth2.server import get_oauth_server

    removed = get_oauth_server().cleanup()
    logger.info("Removed %d expired records", removed)
    return 0


def _cmd_rotate_keys() -> int:
    from mcpgate.oauth2.server import get_oauth_server

    server = get_oauth_server()
    if server.settings.token_format != "jwt":
        logger.warning("token_format is %r; signing keys are unused", server.settings.token_format)
    key = server.keys.rotate()
    print(key.kid)
    return 0


def _cmd_hash_password() -> int:
    from mcpgate.oauth2.users import hash_password

    password = getpass.getpass("Password: ")
    if not password or password != getpass.getpass("Repeat: "):
        logger.error("Passwords are empty or do not match")
        return 1
    print(hash_password(password))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="mcpgate - OAuth 2.1 authorization server and resource guard for MCP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcpgate serve                      Start the server on 127.0.0.1:8000
  mcpgate serve --host 0.0.0.0       Listen on all interfaces
  mcpgate cleanup                    Delete expired codes, flows and tokens
  mcpgate rotate-keys                Generate a new JWT signing key
  mcpgate hash-password              Print the hash for a `users` entry
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "command",
        choices=["serve", "cleanup", "rotate-keys", "hash-password"],
        help="What to run",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (serve)")
    parser.add_argument("--port", type=int, default=8000, help="Port (serve)")
    parser.add_argument("--dev", action="store_true", help="Auto-reload on code changes (serve)")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(level="DEBUG" if args.dev else settings.log_level)

    try:
        if args.command == "serve":
            from mcpgate.api.serve import run_api_server

            run_api_server(host=args.host, port=args.port, dev=args.dev)
        elif args.command == "cleanup":
            raise SystemExit(_cmd_cleanup())
        elif args.command == "rotate-keys":
            raise SystemExit(_cmd_rotate_keys())
        else:
            raise SystemExit(_cmd_hash_password())
    except KeyboardInterrupt:
        logger.info("mcpgate stopped.")


if __name__ == "__main__":
    main()
