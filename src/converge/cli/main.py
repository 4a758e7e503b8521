from __future__ import annotations

import argparse
import sys
from typing import Sequence

from converge.config.settings import get_settings
from converge.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="converge", description="Reconcile declared infrastructure")
    parser.add_argument("--log-level", help="Log level (defaults to CONVERGE_LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("plan", "Show what would change without changing anything"),
        ("apply", "Converge live state toward the declaration"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("declaration", help="Path to declaration YAML file")
        sub.add_argument("--output", choices=["text", "json"], default="text", help="Output format")
        sub.add_argument("-v", "--verbose", action="store_true", help="Show unchanged items and drifted fields")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, json=settings.log_json)

    from converge.cli.apply import apply_command

    sys.exit(
        apply_command(
            args.declaration,
            dry_run=args.command == "plan",
            output_format=args.output,
            verbose=args.verbose,
            settings=settings,
        )
    )


if __name__ == "__main__":
    main()
