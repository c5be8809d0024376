#!/usr/bin/env python3
"""
Reddit Pulse - Taxonomy Seed Script
Writes the default themes, subthemes and search terms.
Idempotent: safe to run multiple times (every write is an upsert).

Usage:
    python scripts/seed_taxonomy.py [--db-path ./data/reddit_pulse.db]
"""

import argparse
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from reddit_pulse import taxonomy  # noqa: E402
from reddit_pulse.backend.db.connection import DEFAULT_DB_PATH, get_connection, init_schema  # noqa: E402
from reddit_pulse.backend.utils.errors import PersistenceError  # noqa: E402
from reddit_pulse.backend.utils.logging_config import setup_logging  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="Seed default themes and search terms")
    parser.add_argument(
        "--db-path",
        default=os.environ.get("DB_PATH", DEFAULT_DB_PATH),
        help=f"SQLite database path (default: $DB_PATH or {DEFAULT_DB_PATH})"
    )
    args = parser.parse_args()

    setup_logging(log_dir=None)

    with get_connection(args.db_path) as conn:
        init_schema(conn)
        try:
            summary = taxonomy.seed(conn)
        except PersistenceError as e:
            print(f"Error: {e}")
            sys.exit(1)

    print(f"Seeded {summary.root_themes} themes, {summary.subthemes} subthemes, "
          f"{summary.search_terms} search terms into {args.db_path}")


if __name__ == "__main__":
    main()
