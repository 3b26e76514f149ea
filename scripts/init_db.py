#!/usr/bin/env python3
"""
Initialize the spice database.

Creates the schema and seeds the default categories. Safe to run on an
existing database.

Usage:
    python scripts/init_db.py [path/to/spice.db]
"""
import sys

from spice.config.settings import load_settings
from spice.repositories.storage import Storage


def main():
    """Initialize the database."""
    db_path = sys.argv[1] if len(sys.argv) > 1 else load_settings().db_path
    print(f"Initializing database at: {db_path}")

    with Storage.open(db_path) as storage:
        row = storage.db.fetch_one(
            "SELECT version, description FROM schema_version ORDER BY version DESC LIMIT 1"
        )

        if row:
            print("✓ Database initialized successfully!")
            print(f"  Schema version: {row['version']}")
            print(f"  Description: {row['description']}")
            print(f"  Categories: {storage.categories.count()}")
        else:
            print("✗ Database initialization may have failed")
            sys.exit(1)


if __name__ == "__main__":
    main()
