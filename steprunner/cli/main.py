"""Main CLI entry point for steprunner."""

import argparse
import sys
from typing import Optional

from .commands import run_document


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the steprunner CLI."""
    parser = argparse.ArgumentParser(
        prog='steprunner',
        description='Run a YAML document of shell, exec, conf and ssh steps'
    )

    parser.add_argument(
        'document',
        type=str,
        help='Path to the step document (YAML)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Render and print every step without executing anything'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error log output'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )
    parser.add_argument(
        '--context',
        action='append',
        metavar='KEY=VALUE',
        help='Override a global variable (can be specified multiple times)'
    )
    parser.add_argument(
        '--context-file',
        type=str,
        help='Path to JSON file containing global variable overrides'
    )
    parser.add_argument(
        '--retry-delay',
        type=int,
        default=1000,
        help='Delay between retries of a failing step in milliseconds'
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)
    return run_document(parsed_args)


if __name__ == '__main__':
    sys.exit(main())
