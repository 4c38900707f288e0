"""Apply the Alembic-style migrations in ``chatops/migrations`` over psycopg."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import psycopg
import sqlalchemy as sa

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"
MIGRATIONS_TABLE = "chatops_schema_migrations"


def _stub_foreign_tables(metadata: sa.MetaData, columns: Sequence[Any]) -> None:
    # Referenced tables only need to exist in the metadata for the DDL compiler.
    for column in columns:
        for fk in getattr(column, "foreign_keys", ()):
            table_name, _, column_name = fk.target_fullname.rpartition(".")
            table = metadata.tables.get(table_name)
            if table is None:
                table = sa.Table(table_name, metadata)
            if column_name not in table.c:
                table.append_column(sa.Column(column_name, sa.Integer))


class _PsycopgOperations:
    """Lightweight subset of Alembic's ``op`` helpers for psycopg connections."""

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn
        self._dialect = sa.dialects.postgresql.dialect()
        self._preparer = self._dialect.identifier_preparer

    def create_table(self, name: str, *columns: sa.Column, **kwargs: Any) -> None:
        metadata = sa.MetaData()
        _stub_foreign_tables(metadata, columns)
        table = sa.Table(name, metadata, *columns, **kwargs)
        self._execute(sa.schema.CreateTable(table, if_not_exists=True))

    def drop_table(self, name: str) -> None:
        table = sa.Table(name, sa.MetaData())
        self._execute(sa.schema.DropTable(table, if_exists=True))

    def create_index(
        self,
        name: str,
        table_name: str,
        columns: Sequence[str],
        *,
        unique: bool = False,
        postgresql_where: Any | None = None,
        **_: Any,
    ) -> None:
        column_sql = ", ".join(self._preparer.quote(col) for col in columns)
        unique_sql = "UNIQUE " if unique else ""
        statement = (
            f"CREATE {unique_sql}INDEX IF NOT EXISTS {self._preparer.quote(name)} "
            f"ON {self._preparer.quote(table_name)} ({column_sql})"
        )
        if postgresql_where is not None:
            compiled = postgresql_where.compile(
                dialect=self._dialect, compile_kwargs={"literal_binds": True}
            )
            statement += f" WHERE {compiled}"
        self.execute(statement)

    def drop_index(self, name: str, **_: Any) -> None:
        self.execute(f"DROP INDEX IF EXISTS {self._preparer.quote(name)}")

    def execute(self, statement: str) -> None:
        with self._conn.cursor() as cur:
            cur.execute(statement)

    def _execute(self, ddl: sa.schema.DDLElement) -> None:
        self.execute(str(ddl.compile(dialect=self._dialect)))


def _migration_files(migrations_dir: Path) -> list[Path]:
    return sorted(
        path for path in migrations_dir.glob("[0-9][0-9][0-9]_*.py") if path.is_file()
    )


def ensure_schema(conn: psycopg.Connection, migrations_dir: Path | None = None) -> list[str]:
    """Run pending migrations in filename order and return the ids applied.

    Applied ids are recorded in ``chatops_schema_migrations`` so repeated
    calls are no-ops. Each migration commits on its own.
    """

    migrations_dir = migrations_dir or MIGRATIONS_DIR
    with conn.cursor() as cur:
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
                id TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        cur.execute(f"SELECT id FROM {MIGRATIONS_TABLE}")
        applied = {row[0] for row in cur.fetchall()}
    conn.commit()

    newly_applied: list[str] = []
    for path in _migration_files(migrations_dir):
        migration_id = path.stem
        if migration_id in applied:
            continue
        module = importlib.import_module(f"chatops.migrations.{migration_id}")
        original_op = getattr(module, "op", None)
        module.op = _PsycopgOperations(conn)
        try:
            module.upgrade()
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO {MIGRATIONS_TABLE} (id) VALUES (%s) ON CONFLICT (id) DO NOTHING",
                    (migration_id,),
                )
        except Exception:
            conn.rollback()
            logger.exception("Migration %s failed", migration_id)
            raise
        else:
            conn.commit()
            newly_applied.append(migration_id)
            logger.info("Applied migration %s", migration_id)
        finally:
            if original_op is not None:
                module.op = original_op
    return newly_applied
