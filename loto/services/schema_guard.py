"""
Schema-Evolution Guard — makes sure the permit workflow columns exist.

Older deployments created the "LOTO Work Permit" table with only the form
columns. Rather than shipping a migration, the guard probes for the
``status`` column and, when it is missing, adds every workflow column with
a safe default. Existing rows pick up ``PENDING_BAY`` / ``bay_manager``
from those defaults.

The guard owns its ``ready`` flag. The app factory runs ``ensure()`` once at
startup and registers the instance in ``app.extensions``; services call
``ensure_schema()`` before touching permits, which is a no-op once ready.

Concurrency: two processes may both see the column missing and both run
the ALTER. On PostgreSQL every clause is ``ADD COLUMN IF NOT EXISTS``; on
other dialects only the columns the inspector reports missing are added.
Either way the redundant DDL is harmless. Failures raise
SchemaEvolutionError and are not retried.
"""

import logging

import sqlalchemy as sa
from flask import current_app
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from loto.core.exceptions import SchemaEvolutionError
from loto.models import db
from loto.models.permit import WORKFLOW_COLUMNS, LotoWorkPermit

logger = logging.getLogger(__name__)

EXTENSION_KEY = "loto_schema_guard"


class SchemaGuard:
    """Probe-then-alter guard for one table's workflow columns."""

    def __init__(self, table: sa.Table | None = None, columns=None, probe_column: str = "status"):
        self.table = table if table is not None else LotoWorkPermit.__table__
        self.columns = tuple(columns) if columns is not None else WORKFLOW_COLUMNS
        self.probe_column = probe_column
        self.ready = False

    def init_app(self, app) -> None:
        app.extensions[EXTENSION_KEY] = self

    # ── public ───────────────────────────────────────────────────────────

    def ensure(self, engine: sa.engine.Engine | None = None) -> list[str]:
        """Add any missing workflow columns.  Returns the names added."""
        if self.ready:
            return []

        engine = engine or db.engine
        added: list[str] = []
        if not self._probe(engine):
            try:
                added = self._add_columns(engine)
            except SQLAlchemyError as exc:
                logger.error("Adding workflow columns to %r failed: %s", self.table.name, exc)
                raise SchemaEvolutionError(
                    f"Could not add workflow columns to {self.table.name!r}"
                ) from exc
            if added:
                logger.info(
                    "Added %d workflow column(s) to %r: %s",
                    len(added), self.table.name, ", ".join(added),
                )

        self.ready = True
        return added

    # ── internals ────────────────────────────────────────────────────────

    def _quote(self, engine, name: str) -> str:
        return engine.dialect.identifier_preparer.quote(name)

    def _probe(self, engine) -> bool:
        """Return True when the probe column can be selected."""
        sql = (
            f"SELECT {self._quote(engine, self.probe_column)} "
            f"FROM {self._quote(engine, self.table.name)} LIMIT 1"
        )
        try:
            with engine.connect() as conn:
                conn.execute(sa.text(sql))
            return True
        except DBAPIError as exc:
            logger.info("Workflow column probe on %r failed: %s", self.table.name, exc.orig)
            return False

    def _column_ddl(self, engine, column: sa.Column) -> str:
        col_type = column.type.compile(dialect=engine.dialect)
        ddl = f"{self._quote(engine, column.name)} {col_type}"
        if column.server_default is not None:
            ddl += f" DEFAULT {column.server_default.arg.text}"
        if not column.nullable:
            ddl += " NOT NULL"
        return ddl

    def _add_columns(self, engine) -> list[str]:
        table_sql = self._quote(engine, self.table.name)

        if engine.dialect.name == "postgresql":
            clauses = [
                f"ADD COLUMN IF NOT EXISTS {self._column_ddl(engine, c)}"
                for c in self.columns
            ]
            with engine.begin() as conn:
                conn.execute(sa.text(f"ALTER TABLE {table_sql} " + ", ".join(clauses)))
            return [c.name for c in self.columns]

        existing = {c["name"] for c in sa.inspect(engine).get_columns(self.table.name)}
        missing = [c for c in self.columns if c.name not in existing]
        with engine.begin() as conn:
            for column in missing:
                conn.execute(sa.text(
                    f"ALTER TABLE {table_sql} ADD COLUMN {self._column_ddl(engine, column)}"
                ))
        return [c.name for c in missing]


def get_schema_guard() -> SchemaGuard:
    guard = current_app.extensions.get(EXTENSION_KEY)
    if guard is None:
        raise SchemaEvolutionError("Schema guard is not registered on this app")
    return guard


def ensure_schema() -> None:
    """Run the app's guard; a no-op once the columns are known to exist."""
    get_schema_guard().ensure()
