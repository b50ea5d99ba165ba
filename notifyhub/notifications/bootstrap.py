"""
Startup schema bootstrap for the ``notifications`` table.

``ensure_schema`` is safe to call on every process start: it creates the
table when absent and then walks an ordered list of migration steps, each
guarded by a check against the reflected schema so that an already-migrated
database is left untouched. The whole pass runs in one transaction under a
database-level lock so replicas starting together do not race each other.

Connectivity failures are retried with a fixed delay; running out of
attempts raises ``DatastoreUnreachable`` and should abort startup.
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import Text

from notifyhub import config
from notifyhub.errors import DatastoreUnreachable
from notifyhub.notifications.models import Base, Notification, TABLE_NAME, RECIPIENT_INDEX

logger = logging.getLogger(__name__)

LEGACY_COLUMNS = ("userId", "status")

# Dialects whose column type / nullability can be altered in place
ALTERABLE_DIALECTS = {"postgresql", "mysql"}

_PG_LOCK_KEY = 7318004521
_MYSQL_LOCK_NAME = "notifications_schema_bootstrap"


@dataclass
class SchemaState:
    dialect: str
    columns: Dict[str, Dict[str, Any]]
    indexes: Set[str]


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    needed: Callable[[SchemaState], bool]
    apply: Callable[[Connection, SchemaState], None]


def _q(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def _alter(conn: Connection, clause: str) -> None:
    conn.execute(text(f"ALTER TABLE {_q(conn, TABLE_NAME)} {clause}"))


def _is_unbounded_text(col: Dict[str, Any]) -> bool:
    col_type = col["type"]
    return isinstance(col_type, Text) or type(col_type).__name__ in ("MEDIUMTEXT", "LONGTEXT")


# --- steps ---

def _add_subject(conn, state):
    _alter(conn, "ADD COLUMN subject VARCHAR(255) NOT NULL DEFAULT ''")


def _add_message(conn, state):
    # MySQL rejects literal defaults on TEXT: add nullable, back-fill, tighten in the next step
    _alter(conn, "ADD COLUMN message TEXT NULL")
    conn.execute(text(f"UPDATE {_q(conn, TABLE_NAME)} SET message = '' WHERE message IS NULL"))


def _retype_message(conn, state):
    if state.dialect == "postgresql":
        _alter(conn, "ALTER COLUMN message TYPE TEXT, ALTER COLUMN message SET NOT NULL")
    else:
        _alter(conn, "MODIFY COLUMN message TEXT NOT NULL")


def _add_recipient_id(conn, state):
    _alter(conn, f"ADD COLUMN {_q(conn, 'recipientId')} INTEGER NULL")


def _drop_legacy(conn, state):
    for name in LEGACY_COLUMNS:
        if name in state.columns:
            _alter(conn, f"DROP COLUMN {_q(conn, name)}")


def _add_created_at(conn, state):
    # SQLite cannot add a column with a non-constant default
    _alter(conn, "ADD COLUMN created_at TIMESTAMP NULL")
    conn.execute(text(
        f"UPDATE {_q(conn, TABLE_NAME)} SET created_at = CURRENT_TIMESTAMP WHERE created_at IS NULL"
    ))


def _enforce_created_at(conn, state):
    if state.dialect == "postgresql":
        _alter(conn, "ALTER COLUMN created_at SET DEFAULT CURRENT_TIMESTAMP, ALTER COLUMN created_at SET NOT NULL")
    else:
        _alter(conn, "MODIFY COLUMN created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP")


def _create_recipient_index(conn, state):
    conn.execute(text(
        f"CREATE INDEX {_q(conn, RECIPIENT_INDEX)} ON {_q(conn, TABLE_NAME)} ({_q(conn, 'recipientId')})"
    ))


MIGRATIONS: List[MigrationStep] = [
    MigrationStep(1, "add_subject", lambda s: "subject" not in s.columns, _add_subject),
    MigrationStep(2, "add_message", lambda s: "message" not in s.columns, _add_message),
    MigrationStep(
        3, "message_text_not_null",
        lambda s: s.dialect in ALTERABLE_DIALECTS
        and (not _is_unbounded_text(s.columns["message"]) or s.columns["message"]["nullable"]),
        _retype_message,
    ),
    MigrationStep(4, "add_recipient_id", lambda s: "recipientId" not in s.columns, _add_recipient_id),
    MigrationStep(5, "drop_legacy_columns", lambda s: any(c in s.columns for c in LEGACY_COLUMNS), _drop_legacy),
    MigrationStep(6, "add_created_at", lambda s: "created_at" not in s.columns, _add_created_at),
    MigrationStep(
        7, "created_at_not_null",
        lambda s: s.dialect in ALTERABLE_DIALECTS and s.columns["created_at"]["nullable"],
        _enforce_created_at,
    ),
    MigrationStep(8, "recipient_index", lambda s: RECIPIENT_INDEX not in s.indexes, _create_recipient_index),
]


def inspect_schema(conn: Connection) -> SchemaState:
    insp = inspect(conn)
    return SchemaState(
        dialect=conn.dialect.name,
        columns={c["name"]: c for c in insp.get_columns(TABLE_NAME)},
        indexes={i["name"] for i in insp.get_indexes(TABLE_NAME)},
    )


@contextmanager
def _bootstrap_lock(conn: Connection):
    if conn.dialect.name == "postgresql":
        # released on commit/rollback
        conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _PG_LOCK_KEY})
        yield
    elif conn.dialect.name == "mysql":
        conn.execute(text("SELECT GET_LOCK(:name, :timeout)"), {"name": _MYSQL_LOCK_NAME, "timeout": 30})
        try:
            yield
        finally:
            conn.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": _MYSQL_LOCK_NAME})
    else:
        yield


def migrate(conn: Connection) -> List[str]:
    applied = []
    for step in MIGRATIONS:
        state = inspect_schema(conn)
        if not step.needed(state):
            continue
        logger.info("schema_migration", extra={"extra": {
            "event": "schema_migration", "version": step.version, "step": step.name,
        }})
        step.apply(conn, state)
        applied.append(step.name)
    return applied


def ensure_schema(
    engine: Engine,
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[str]:
    """Create/migrate the notifications table; returns the names of the steps applied."""
    attempts = attempts or config.SCHEMA_BOOTSTRAP_ATTEMPTS
    delay = config.SCHEMA_BOOTSTRAP_DELAY_S if delay is None else delay
    attempt = 0
    while True:
        try:
            with engine.begin() as conn:
                with _bootstrap_lock(conn):
                    Base.metadata.create_all(conn, tables=[Notification.__table__], checkfirst=True)
                    applied = migrate(conn)
            logger.info("schema_ready", extra={"extra": {
                "event": "schema_ready", "applied": applied, "attempt": attempt + 1,
            }})
            return applied
        except SQLAlchemyError as err:
            attempt += 1
            if attempt >= attempts:
                logger.error(f"datastore not reachable after {attempt} attempts: {err}", extra={"extra": {
                    "event": "schema_bootstrap_failed", "attempts": attempt,
                }})
                raise DatastoreUnreachable(f"datastore unreachable after {attempt} attempts") from err
            logger.warning(f"datastore not ready, retrying in {delay}s ({attempt}/{attempts})", extra={"extra": {
                "event": "schema_bootstrap_retry", "attempt": attempt, "max_attempts": attempts,
                "error": str(err),
            }})
            sleep(delay)
