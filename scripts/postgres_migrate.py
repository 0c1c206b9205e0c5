import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the auto-invest store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("AUTO_INVEST_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for the auto-invest store.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report pending migrations; exit 1 when any are pending.",
    )
    args = parser.parse_args()

    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from src.infrastructure.postgres_migrations import (
        AUTO_INVEST_NAMESPACE,
        apply_postgres_migrations,
        pending_postgres_migrations,
    )

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{AUTO_INVEST_NAMESPACE}")
    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        if args.check:
            pending = pending_postgres_migrations(
                connection=connection, namespace=AUTO_INVEST_NAMESPACE
            )
            connection.commit()
            if pending:
                print(f"Pending migrations for namespace={AUTO_INVEST_NAMESPACE}: {pending}")
                return 1
            print(f"No pending migrations for namespace={AUTO_INVEST_NAMESPACE}")
            return 0
        apply_postgres_migrations(connection=connection, namespace=AUTO_INVEST_NAMESPACE)
    print(f"Applied migrations for namespace={AUTO_INVEST_NAMESPACE}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
