"""
Standalone entrypoint for running the webhook server.

Usage:
    python -m ci_server [OPTIONS]
    ci-webhooks-server [OPTIONS]  (after pip install)

Environment Variables:
    CI_DB_PATH: Database path (default: ci_webhooks.db)
    CI_HOST: Interface to bind (default: 127.0.0.1)
    CI_PORT: Port to listen on (default: 8000)
    CI_GITHUB_TOKEN: GitHub API token (optional)
    CI_GITHUB_TIMEOUT: Seconds before a GitHub request is abandoned (default: 30)
    CI_CANCEL_RUNNING_BUILDS: Also cancel running builds of older revisions
"""

import argparse
import logging
import os
import sys

import uvicorn

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI Webhooks - turn GitHub push and pull_request events into builds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CI_DB_PATH                Database path (default: ci_webhooks.db)
  CI_HOST                   Interface to bind (default: 127.0.0.1)
  CI_PORT                   Port to listen on (default: 8000)
  CI_GITHUB_TOKEN           GitHub API token
  CI_GITHUB_TIMEOUT         Seconds before a GitHub request is abandoned (default: 30)
  CI_CANCEL_RUNNING_BUILDS  Also cancel running builds of older revisions

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  ci-webhooks-server

  # Listen on all interfaces with a custom database
  ci-webhooks-server --host 0.0.0.0 --db-path /var/lib/ci/webhooks.db

  # Enable debug logging
  ci-webhooks-server --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: CI_DB_PATH env or ci_webhooks.db)",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (default: CI_HOST env or 127.0.0.1)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: CI_PORT env or 8000)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_host(args: argparse.Namespace) -> str:
    """Get the bind address from CLI args or environment."""
    if args.host:
        return args.host
    return os.environ.get("CI_HOST", "127.0.0.1")


def get_port(args: argparse.Namespace) -> int:
    """
    Get the port from CLI args or environment.

    Returns:
        Port to listen on
    """
    if args.port is not None:
        if not 0 < args.port < 65536:
            logger.warning(f"Invalid port={args.port}, using default 8000")
            return 8000
        return args.port

    try:
        port = int(os.environ.get("CI_PORT", "8000"))
    except ValueError:
        logger.warning(
            f"Invalid CI_PORT={os.environ.get('CI_PORT')}, using default 8000"
        )
        return 8000
    if not 0 < port < 65536:
        logger.warning(f"Invalid CI_PORT={port}, using default 8000")
        return 8000
    return port


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the webhook server.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # The app reads its database path from the environment at startup
    if args.db_path:
        os.environ["CI_DB_PATH"] = args.db_path

    host = get_host(args)
    port = get_port(args)

    logger.info("Starting CI webhook server")
    logger.info(f"  Listening on: {host}:{port}")

    try:
        uvicorn.run(
            "ci_server.app:app",
            host=host,
            port=port,
            log_level=args.log_level.lower(),
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
