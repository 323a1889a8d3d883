#!/usr/bin/env python3
"""Create the booking tables, optionally dropping existing ones first."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import inspect

# Ensure the project root is on sys.path so ``beautonomi`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from beautonomi import create_app  # noqa: E402
from beautonomi.extensions import db  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialise the booking database schema.")
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop every booking table before creating it again (destroys data)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    app = create_app()
    with app.app_context():
        if args.drop:
            db.drop_all()
            print("Dropped existing tables")
        db.create_all()
        tables = sorted(inspect(db.engine).get_table_names())
        print(f"Schema ready at {db.engine.url.render_as_string(hide_password=True)}: {', '.join(tables)}")


if __name__ == "__main__":
    main()
