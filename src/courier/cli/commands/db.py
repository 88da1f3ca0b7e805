"""``courier db status`` and ``courier db migrate``."""

from __future__ import annotations

import sys


def run_db(config, args) -> None:
    """Dispatch to the db subcommand named on the command line."""
    handlers = {"status": _db_status, "migrate": _db_migrate}
    handler = handlers.get(args.db_command)
    if handler is None:
        sys.stderr.write("courier: error: db requires 'status' or 'migrate'\n")
        sys.exit(1)
    handler(config)


def _db_status(config) -> None:
    """Report connectivity and which tables exist; exit 2 if any are missing."""
    from courier.db import init_database  # noqa: PLC0415
    from courier.db.init import table_status  # noqa: PLC0415

    db = init_database(config.settings.database, apply_schema=False)
    db.fetch_value("SELECT 1")
    status = table_status(db)

    lines = ["database: reachable"]
    lines.extend(f"  {name:<22} {'ok' if ok else 'MISSING'}" for name, ok in status.items())
    sys.stdout.write("\n".join(lines) + "\n")

    if not all(status.values()):
        sys.stdout.write("run 'courier db migrate' to create missing tables\n")
        sys.exit(2)


def _db_migrate(config) -> None:
    from courier.db import init_database  # noqa: PLC0415

    init_database(config.settings.database, apply_schema=True)
    sys.stdout.write("schema applied\n")
