"""
Pyright Playground CLI - Command-line interface for the pyright_playground package.

Provides subcommands:
- pyright-playground start: Start the playground server
- pyright-playground versions: List installable pyright versions
- pyright-playground version: Display version information
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from loguru import logger

from pyright_playground.config import HTTP_PORT, MAX_VERSION_COUNT, PlaygroundSettings
from pyright_playground.errors import ResolutionError
from pyright_playground.server import PlaygroundServer, run_server
from pyright_playground.versions import NpmVersionIndex, get_pyright_versions


def get_version() -> str:
    """Get the package version."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("pyright-playground")
    except PackageNotFoundError:
        return "0.0.0"


def configure_logging(level: str = None):
    level = (level or os.environ.get("PLAYGROUND_LOG_LEVEL") or "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=level)


def _settings_from_args(args) -> PlaygroundSettings:
    settings = PlaygroundSettings.from_env()
    if args.data_dir:
        settings.data_dir = Path(args.data_dir).expanduser().resolve()
    if args.cache_capacity is not None:
        settings.cache_capacity = args.cache_capacity
    if args.idle_seconds is not None:
        settings.session_idle_seconds = args.idle_seconds
    return settings


def cmd_version(args):
    """Handle the 'version' subcommand."""
    print(f"pyright-playground version {get_version()}")
    print(f"Python {sys.version}")


def cmd_versions(args):
    """Handle the 'versions' subcommand."""
    configure_logging(args.log_level)
    settings = PlaygroundSettings.from_env()
    index = NpmVersionIndex(registry_url=settings.npm_registry_url)
    try:
        versions = asyncio.run(get_pyright_versions(index, limit=args.limit))
    except ResolutionError as e:
        print(f"Error: {e}")
        sys.exit(1)
    for version in versions:
        print(version)


def cmd_start(args):
    """Handle the 'start' subcommand."""
    configure_logging(args.log_level)
    settings = _settings_from_args(args)

    print("=" * 50)
    print(f"Pyright Playground v{get_version()}")
    print(f"HTTP Server:    http://{args.host}:{args.port}")
    print(f"Data Directory: {settings.data_dir}")
    print(f"Cache Capacity: {settings.cache_capacity} versions")
    print(f"Session Idle:   {settings.session_idle_seconds:g}s")
    print("=" * 50)

    server = PlaygroundServer(settings, host=args.host, port=args.port)
    run_server(server)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="pyright-playground",
        description="Pyright Playground - per-session pyright language servers over HTTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
        required=True,
    )

    # 'start' subcommand
    start_parser = subparsers.add_parser(
        "start",
        help="Start the playground server",
        description="Start the pyright playground HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pyright-playground start                        # Start with defaults
  pyright-playground start --port 8000            # Custom HTTP port
  pyright-playground start --data-dir ./my-data   # Custom data directory
  pyright-playground start --cache-capacity 5     # Keep at most 5 pyright versions
        """,
    )
    start_parser.add_argument(
        "--port", type=int, default=HTTP_PORT, help=f"HTTP server port (default: {HTTP_PORT})"
    )
    start_parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"
    )
    start_parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory for installed pyright versions (default: ~/.pyright-playground)",
    )
    start_parser.add_argument(
        "--cache-capacity",
        type=int,
        default=None,
        help="Maximum number of installed pyright versions (default: 20)",
    )
    start_parser.add_argument(
        "--idle-seconds",
        type=float,
        default=None,
        help="Close sessions idle for longer than this (default: 60)",
    )
    start_parser.add_argument(
        "--log-level", type=str, default=None, help="Log level (default: INFO)"
    )
    start_parser.set_defaults(func=cmd_start)

    # 'versions' subcommand
    versions_parser = subparsers.add_parser(
        "versions",
        help="List installable pyright versions",
        description="List released pyright versions from the npm registry, newest first",
    )
    versions_parser.add_argument(
        "--limit",
        type=int,
        default=MAX_VERSION_COUNT,
        help=f"Maximum number of versions to list (default: {MAX_VERSION_COUNT})",
    )
    versions_parser.add_argument(
        "--log-level", type=str, default=None, help="Log level (default: INFO)"
    )
    versions_parser.set_defaults(func=cmd_versions)

    # 'version' subcommand
    version_parser = subparsers.add_parser(
        "version",
        help="Display version information",
        description="Display Pyright Playground version and Python version",
    )
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
