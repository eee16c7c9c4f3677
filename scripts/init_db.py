#!/usr/bin/env python3
"""Create the auth tables and indexes in the database named by DATABASE_URL."""
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    from storegate.config import ConfigurationError, get_settings
    from storegate.storage.errors import StoreUnavailable
    from storegate.storage.postgres import PostgresStore

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return 1

    try:
        store = PostgresStore(
            settings.database_url,
            min_size=1,
            max_size=1,
            connect_timeout=settings.db_connect_timeout_seconds,
            statement_timeout_ms=0,
        )
    except Exception as exc:
        print(f"Error: could not open database pool: {exc}")
        return 1
    try:
        store.ensure_schema()
    except StoreUnavailable as exc:
        print(f"Error: {exc.message}")
        return 1
    finally:
        store.close()
    print("Schema ready: users, accounts, sessions, verification_tokens")
    return 0


if __name__ == "__main__":
    sys.exit(main())
