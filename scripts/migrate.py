# scripts/migrate.py
"""
Bring the database to the Alembic head.

A database created before migrations existed (tables present, no
alembic_version) is stamped instead of upgraded, but only when every table
and column the models declare is already there.
"""
import sys
from typing import Dict, List, Set

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from dailycup.config import get_settings
from dailycup.db import Base, configure_engine
import dailycup.models  # noqa: F401

# Presence of any of these means the schema was created outside Alembic
SENTINEL_TABLES = ("orders", "cod_tracking", "geocode_jobs")


def expected_columns() -> Dict[str, Set[str]]:
    return {t.name: {c.name for c in t.columns} for t in Base.metadata.sorted_tables}


def schema_problems(conn) -> List[str]:
    insp = inspect(conn)
    existing = set(insp.get_table_names())
    problems = []
    for table, cols in expected_columns().items():
        if table not in existing:
            problems.append(f"missing table {table}")
            continue
        missing = cols - {c["name"] for c in insp.get_columns(table)}
        if missing:
            problems.append(f"{table} lacks {sorted(missing)}")
    return problems


def db_revision(conn) -> str | None:
    if not inspect(conn).has_table("alembic_version"):
        return None
    row = conn.execute(text("select version_num from alembic_version")).first()
    return row[0] if row else None


def single_head(cfg: Config) -> str:
    heads = ScriptDirectory.from_config(cfg).get_heads()
    if len(heads) != 1:
        print(f"ERROR: expected one migration head, found {heads}", file=sys.stderr)
        sys.exit(3)
    return heads[0]


def stamp_if_complete(cfg: Config, conn, head: str, reason: str) -> None:
    problems = schema_problems(conn)
    if problems:
        print(f"ERROR: {reason}; schema differs from models:", file=sys.stderr)
        for p in problems:
            print(f"  - {p}", file=sys.stderr)
        sys.exit(4)
    print(f"{reason}; schema matches models, stamping {head}")
    command.stamp(cfg, head)


def main():
    url = get_settings().database_url
    cfg = Config("alembic.ini")
    cfg.set_main_option("sqlalchemy.url", url)
    head = single_head(cfg)

    engine = configure_engine(url)
    with engine.connect() as conn:
        revision = db_revision(conn)
        legacy = any(inspect(conn).has_table(t) for t in SENTINEL_TABLES)
    print(f"head={head} db={revision!r} legacy_tables={legacy}")

    if revision == head:
        print("Database already at head")
        return
    if revision is None and legacy:
        with engine.connect() as conn:
            stamp_if_complete(cfg, conn, head, "Tables exist without alembic_version")
        return

    try:
        command.upgrade(cfg, "head")
    except SQLAlchemyError as exc:
        print(f"Upgrade from {revision!r} failed: {exc}", file=sys.stderr)
        with engine.connect() as conn:
            stamp_if_complete(cfg, conn, head, "Upgrade failed")
        return
    print(f"Upgraded {revision or 'empty database'} -> {head}")


if __name__ == "__main__":
    main()
