#!/usr/bin/env python3
"""
Create (or recreate) the procurement schema for the configured database.

Usage:
  python3 scripts/init_db.py [--config PATH] [--db-url URL] [--drop]

The database URL defaults to ``settings.database_url`` of the active
configuration (``PROCUREMENT_CONFIG`` or the packaged default.yaml).
"""

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create the procurement database schema")
    p.add_argument("--config", default=None, help="Configuration YAML (default: PROCUREMENT_CONFIG or default.yaml)")
    p.add_argument("--db-url", default=None, help="Database URL (overrides settings.database_url)")
    p.add_argument("--drop", action="store_true", help="Drop existing tables first")
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    from procurement_config import get_active_config
    from procurement_kernel.db.engine import create_tables, drop_tables, init_engine_from_url
    from procurement_kernel.logging_config import configure_logging

    config = get_active_config(args.config)
    configure_logging(level=getattr(logging, config.settings.log_level, logging.INFO))

    db_url = args.db_url or config.settings.database_url
    engine = init_engine_from_url(db_url)
    if args.drop:
        print("Dropping tables...")
        drop_tables(engine)
    create_tables(engine)
    print(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
