#!/usr/bin/env python3
"""TaskHub application entry point.

This module provides a unified entry point for all interfaces:
- CLI: Command-line client working on the local store
- Web: RESTful HTTP API and sync server

Usage:
    python -m taskhub.main cli list-projects     # Use CLI
    python -m taskhub.main cli sync now          # Sync with the server
    python -m taskhub.main web [--port 8080]     # Start web server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="TaskHub - Project and task management with offline sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  taskhub cli list-projects              List local projects
  taskhub cli new-task <project> "Title" Create a task offline
  taskhub cli sync now                   Push local changes and pull server changes
  taskhub web --port 8080                Start web server on port 8080
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/taskhub/)"
    )

    # Create subparsers for each interface
    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    # Add CLI subparser (imports cli module)
    from taskhub.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    # Add Web subparser (imports web module)
    from taskhub.web import add_web_subparser
    add_web_subparser(subparsers)

    return parser


def dispatch(config_dir: Optional[Path], args: argparse.Namespace) -> Optional[int]:
    """Run the selected interface. Returns None when no interface was given."""
    if args.interface == "cli":
        from taskhub.cli import run as run_cli
        return run_cli(config_dir, args)
    if args.interface == "web":
        from taskhub.web import run as run_web
        return run_web(config_dir, args)
    return None


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for TaskHub.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    exit_code = dispatch(args.config_dir, args)
    if exit_code is None:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
