"""Command-line argument parsing for the relay."""

from __future__ import annotations

import argparse
from pathlib import Path


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of arguments to parse. If None, uses sys.argv.

    Returns:
        Parsed arguments namespace with the following attributes:
        - env_file: Path to .env file
        - pairs_file: Path to the pairs YAML file
        - interval: Poll interval in seconds
        - log_level: Logging level
        - once: Whether to run a single poll cycle and exit
    """
    parser = argparse.ArgumentParser(
        prog="m365-relay",
        description="Relay Microsoft 365 security events to webhooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: ./.env)",
    )

    parser.add_argument(
        "--pairs-file",
        type=Path,
        default=None,
        help="Path to the source/sink pairs file (overrides RELAY_PAIRS_FILE)",
    )

    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Poll interval in seconds (overrides RELAY_POLL_INTERVAL)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (overrides RELAY_LOG_LEVEL)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one poll cycle for every pair and exit",
    )

    return parser.parse_args(args)


__all__ = ["parse_args"]
