"""
Shared command line plumbing.

Every tool accepts the same logging and settings options and reports the
same exit codes, so scripts can chain them.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from .host import HostFacts
from .logging_config import level_for_verbosity, setup_logging
from .settings import Settings, load_settings

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_REBOOT_REQUIRED = 3


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Add logging, settings and root options to a parser."""
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-vv for debug)")
    parser.add_argument("-c", "--config", type=Path,
                        help="Settings file (default: search standard locations)")
    parser.add_argument("--log-file", type=Path,
                        help="Also write a rotating debug log here")
    parser.add_argument("--json-logs", action="store_true",
                        help="Write the log file as JSON lines")
    parser.add_argument("--root", type=Path, default=Path("/"),
                        help=argparse.SUPPRESS)


def init_from_args(args: argparse.Namespace) -> Settings:
    """
    Configure logging and load settings for a parsed command line.

    Raises:
        InvalidConfigError: If the settings file is malformed
    """
    level = level_for_verbosity(args.verbose)

    setup_logging(level)
    settings = load_settings(args.config)

    log_file = args.log_file or (Path(settings.log_file) if settings.log_file else None)
    if log_file:
        setup_logging(level, log_file=log_file, json_logs=args.json_logs or settings.json_logs)

    return settings


def host_from_args(args: argparse.Namespace) -> HostFacts:
    return HostFacts.from_environment(args.root)
