"""
core/db.py -- Shared SQLAlchemy plumbing for every Fleetplane repository.

The repositories in auth/, iam/ and fleet/ use SQLAlchemy Core (not ORM) so
the dataclasses in each package's models.py stay the authoritative domain
representation. This module owns the pieces they all share:

  create_store_engine()  -- engine factory (SQLite WAL + threading flags)
  transaction()          -- one unit of work; translates driver errors into
                            the core/errors.py taxonomy
  Repository             -- base class holding the injected engine
  upsert()               -- last-write-wins insert for keyed status rows
  new_id() / now_iso()   -- id and timestamp helpers

Unit of work:
  transaction() stores the open connection in a ContextVar. A repository call
  made while an outer transaction() is open on the same engine joins it rather
  than opening its own, so multi-step operations (project bootstrap, device
  registration) commit or roll back as a whole. An exception anywhere inside
  the outermost block -- including cancellation -- rolls everything back.

Error translation:
  IntegrityError   -> ConflictError (duplicate unique key)
  OperationalError -> StoreUnavailableError (DB down, locked, missing file)

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

from sqlalchemy import MetaData, Table, and_, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from core.errors import ConflictError, StoreUnavailableError

logger = logging.getLogger("fleetplane.db")

_current_conn: ContextVar[Connection | None] = ContextVar("fleetplane_connection", default=None)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build the engine every repository in the process shares."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def create_schema(engine: Engine, *metadatas: MetaData) -> None:
    """Create any missing tables. Idempotent -- safe on every startup."""
    try:
        for md in metadatas:
            md.create_all(engine)
    except OperationalError as exc:
        raise StoreUnavailableError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """Yield a connection inside a transaction, joining an outer one if open."""
    outer = _current_conn.get()
    if outer is not None and outer.engine is engine:
        yield outer
        return

    try:
        with engine.begin() as conn:
            token = _current_conn.set(conn)
            try:
                yield conn
            finally:
                _current_conn.reset(token)
    except IntegrityError as exc:
        logger.debug("Integrity violation: %s", exc.orig)
        raise ConflictError("a record with the same unique key already exists") from exc
    except OperationalError as exc:
        logger.error("Store unavailable: %s", exc.orig)
        raise StoreUnavailableError("storage backend unavailable") from exc


def upsert(conn: Connection, table: Table, values: dict, key_columns: list[str]) -> None:
    """Insert values, or overwrite the non-key columns of the existing row.

    Uses the dialect's native ON CONFLICT DO UPDATE so last-write-wins is one
    atomic statement. Other dialects fall back to update-then-insert inside
    the caller's transaction.
    """
    update_columns = [c for c in values if c not in key_columns]
    if conn.dialect.name in ("sqlite", "postgresql"):
        if conn.dialect.name == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            from sqlalchemy.dialects.postgresql import insert
        stmt = insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={c: stmt.excluded[c] for c in update_columns},
        )
        conn.execute(stmt)
        return

    condition = and_(*(table.c[k] == values[k] for k in key_columns))
    result = conn.execute(table.update().where(condition).values({c: values[c] for c in update_columns}))
    if result.rowcount == 0:
        conn.execute(table.insert().values(**values))


class Repository:
    """Base for one entity family's repository.

    Subclasses get self.engine (injected) and self._tx() (a transaction()
    bound to that engine). No repository holds state beyond the engine.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _tx(self):
        return transaction(self.engine)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def new_id(prefix: str) -> str:
    """Return an opaque id such as 'prj_3f9c...'. The prefix names the kind."""
    return f"{prefix}_{secrets.token_hex(12)}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
