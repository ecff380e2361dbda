#!/usr/bin/env python3
"""wa-history - export and inspect the local WhatsApp message history.

Usage:
  wa-history export                                  # Grouped JSON export
  wa-history export --format csv --output out.csv    # Flat CSV export
  wa-history export --from 2024-01-01 --to 2024-12-31
  wa-history stats                                   # Totals and date range
  wa-history config --init                           # Create config file
"""

import argparse
import logging
import sys

from . import __version__
from .config import get


def _setup_logging(verbose: bool) -> None:
    level_name = str(get("logging.level", "WARNING")).upper()
    level = getattr(logging, level_name, logging.WARNING)
    if verbose:
        level = min(level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="wa-history",
        description="Export WhatsApp message history from the local SQLite store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  Export:
    wa-history export
    wa-history export --format jsonl --output history.jsonl
    wa-history export --conversation 1234567890@s.whatsapp.net --limit 100

  Inspect:
    wa-history stats
    wa-history stats --json

Run 'wa-history <command> --help' for detailed command help.
"""
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # export
    export_parser = subparsers.add_parser(
        "export", help="Export message history to a file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  wa-history export                                   # JSON grouped by conversation
  wa-history export --format csv --output history.csv
  wa-history export --from 2024-01-01 --to 2024-12-31
  wa-history export --account work --limit 500 --verbose

NOTE:
  --limit keeps the EARLIEST matching messages (ascending by timestamp).
"""
    )
    export_parser.add_argument("--format", default=None, help="Output format: json, csv or jsonl (default: from config, json)")
    export_parser.add_argument("--output", metavar="PATH", default=None, help="Output file path (default: ./whatsapp-history-export.json)")
    export_parser.add_argument("--from", dest="since", metavar="DATE", help="Start date in ISO 8601 format (e.g., 2024-01-01)")
    export_parser.add_argument("--to", dest="until", metavar="DATE", help="End date in ISO 8601 format (e.g., 2024-12-31)")
    export_parser.add_argument("--conversation", metavar="JID", help="Filter by conversation JID")
    export_parser.add_argument("--account", metavar="ID", help="Filter by account ID")
    export_parser.add_argument("--limit", type=int, default=None, help="Maximum number of messages to export")
    export_parser.add_argument("--db-path", metavar="PATH", default=None, help="Path to SQLite database (default: from config)")
    export_parser.add_argument("--verbose", action="store_true", help="Show progress during export")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.add_argument("--db-path", metavar="PATH", default=None, help="Path to SQLite database (default: from config)")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")

    # config
    config_parser = subparsers.add_parser(
        "config", help="Manage configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  wa-history config               # Show current config
  wa-history config --init        # Create config file with defaults
  wa-history config --path        # Show config file path

CONFIG LOCATION:
  ~/.config/wa-history/config.yaml
"""
    )
    config_parser.add_argument("--init", action="store_true", help="Create config file with example settings")
    config_parser.add_argument("--path", action="store_true", help="Show config file path")
    config_parser.add_argument("--force", action="store_true", help="Overwrite existing config (with --init)")

    args = parser.parse_args(argv)

    _setup_logging(bool(getattr(args, "verbose", False)))

    if args.command == "export":
        from .export_cmd import run
    elif args.command == "stats":
        from .stats_cmd import run
    elif args.command == "config":
        from .config import find_config_file, init_config, show_config
        if args.path:
            config_file = find_config_file()
            if config_file:
                print(config_file)
            else:
                print("(no config file - using defaults)")
            return 0
        elif args.init:
            try:
                path = init_config(force=args.force)
                print(f"✓ Created config file: {path}")
                print("  Edit it to customize settings.")
                return 0
            except FileExistsError as e:
                print(f"✗ {e}")
                print("  Use --force to overwrite.")
                return 1
        else:
            show_config()
            return 0
    else:
        parser.print_help()
        return 2

    return run(args)


if __name__ == "__main__":
    sys.exit(main())
