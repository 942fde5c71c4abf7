"""Schema migrations for the state database, tracked in a goose-style version table."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

_log = logging.getLogger(__name__)

_VERSION_TABLE = "goose_db_version"


class MigrationError(Exception):
    """Raised when a migration command cannot be carried out."""


@dataclass(frozen=True)
class _Migration:
    version: int
    name: str
    up: tuple[str, ...]
    down: tuple[str, ...]


_MIGRATIONS: tuple[_Migration, ...] = (
    _Migration(
        version=1,
        name="00001_initial_schema.sql",
        up=(
            """CREATE TABLE IF NOT EXISTS tracked_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                display_path TEXT NOT NULL,
                added_at TEXT NOT NULL,
                last_hash TEXT,
                last_synced TEXT
            )""",
            """CREATE TABLE IF NOT EXISTS suggestions (
                id TEXT PRIMARY KEY,
                file_id INTEGER REFERENCES tracked_files(id) ON DELETE SET NULL,
                provider TEXT NOT NULL,
                prompt TEXT NOT NULL,
                diff TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                decided_at TEXT
            )""",
            """CREATE TABLE IF NOT EXISTS actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                action TEXT NOT NULL,
                payload_json TEXT NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_actions_ts ON actions(ts)",
        ),
        down=(
            "DROP INDEX IF EXISTS idx_actions_ts",
            "DROP TABLE IF EXISTS actions",
            "DROP TABLE IF EXISTS suggestions",
            "DROP TABLE IF EXISTS tracked_files",
        ),
    ),
    _Migration(
        version=2,
        name="00002_snapshots.sql",
        up=(
            """CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                file_id INTEGER REFERENCES tracked_files(id) ON DELETE SET NULL,
                path TEXT NOT NULL,
                hash TEXT NOT NULL,
                size INTEGER NOT NULL,
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL,
                storage_path TEXT NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_snapshots_path ON snapshots(path)",
            "CREATE INDEX IF NOT EXISTS idx_snapshots_hash ON snapshots(hash)",
        ),
        down=(
            "DROP INDEX IF EXISTS idx_snapshots_hash",
            "DROP INDEX IF EXISTS idx_snapshots_path",
            "DROP TABLE IF EXISTS snapshots",
        ),
    ),
)


def _goose(message: str) -> None:
    _log.debug("goose: %s", message.rstrip("\r\n"))


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN")
    try:
        yield
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (_VERSION_TABLE,)
    ).fetchone()
    if row is not None:
        return
    with _transaction(conn):
        conn.execute(
            f"""CREATE TABLE {_VERSION_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version_id INTEGER NOT NULL,
                is_applied INTEGER NOT NULL,
                tstamp TIMESTAMP DEFAULT (datetime('now'))
            )"""
        )
        conn.execute(
            f"INSERT INTO {_VERSION_TABLE} (version_id, is_applied) VALUES (0, 1)"
        )


def _current(conn: sqlite3.Connection) -> int:
    (version,) = conn.execute(
        f"SELECT MAX(version_id) FROM {_VERSION_TABLE} WHERE is_applied = 1"
    ).fetchone()
    return int(version or 0)


def _find(version: int) -> _Migration:
    for migration in _MIGRATIONS:
        if migration.version == version:
            return migration
    raise MigrationError(f"no migration found for version {version}")


def _pending(current: int, limit: int | None = None) -> list[_Migration]:
    return [
        m
        for m in _MIGRATIONS
        if m.version > current and (limit is None or m.version <= limit)
    ]


def _apply_up(conn: sqlite3.Connection, migration: _Migration) -> None:
    try:
        with _transaction(conn):
            for statement in migration.up:
                conn.execute(statement)
            conn.execute(
                f"INSERT INTO {_VERSION_TABLE} (version_id, is_applied) VALUES (?, 1)",
                (migration.version,),
            )
    except sqlite3.Error as exc:
        raise MigrationError(f"{migration.name}: {exc}") from exc
    _goose(f"OK   {migration.name}")


def _apply_down(conn: sqlite3.Connection, migration: _Migration) -> None:
    try:
        with _transaction(conn):
            for statement in migration.down:
                conn.execute(statement)
            conn.execute(
                f"DELETE FROM {_VERSION_TABLE} WHERE version_id = ?", (migration.version,)
            )
    except sqlite3.Error as exc:
        raise MigrationError(f"{migration.name}: {exc}") from exc
    _goose(f"OK   {migration.name}")


def _up_to(conn: sqlite3.Connection, limit: int | None) -> None:
    current = _current(conn)
    pending = _pending(current, limit)
    if not pending:
        _goose(f"no migrations to run. current version: {current}")
        return
    for migration in pending:
        _apply_up(conn, migration)
    _goose(f"successfully migrated database to version: {_current(conn)}")


def _down_one(conn: sqlite3.Connection) -> None:
    current = _current(conn)
    if current == 0:
        raise MigrationError("no migrations to roll back: database is at version 0")
    _apply_down(conn, _find(current))


def _down_to(conn: sqlite3.Connection, target: int) -> None:
    if _current(conn) <= target:
        _goose(f"no migrations to run. current version: {_current(conn)}")
        return
    while _current(conn) > target:
        _down_one(conn)


def _status(conn: sqlite3.Connection) -> None:
    _goose("    Applied At                  Migration")
    _goose("    =======================================")
    for migration in _MIGRATIONS:
        row = conn.execute(
            f"SELECT tstamp FROM {_VERSION_TABLE} WHERE version_id = ? AND is_applied = 1 "
            "ORDER BY id DESC LIMIT 1",
            (migration.version,),
        ).fetchone()
        applied = str(row[0]) if row else "Pending"
        _goose(f"    {applied:<28}-- {migration.name}")


def _version_arg(command: str, args: tuple[str, ...]) -> int:
    if not args:
        raise MigrationError(f"{command} must be of form: {command} VERSION")
    try:
        return int(args[0])
    except ValueError as exc:
        raise MigrationError(f"version must be a number (got {args[0]!r})") from exc


def run_goose(conn: sqlite3.Connection, command: str, *args: str) -> None:
    """Run one migration command: up, up-by-one, up-to, down, down-to, redo, reset, status, version."""
    try:
        _ensure_version_table(conn)
        if command == "up":
            _up_to(conn, None)
        elif command == "up-by-one":
            pending = _pending(_current(conn))
            if not pending:
                raise MigrationError("no next version found")
            _apply_up(conn, pending[0])
        elif command == "up-to":
            _up_to(conn, _version_arg(command, args))
        elif command == "down":
            _down_one(conn)
        elif command == "down-to":
            _down_to(conn, _version_arg(command, args))
        elif command == "redo":
            current = _current(conn)
            if current == 0:
                raise MigrationError("no migrations to redo: database is at version 0")
            migration = _find(current)
            _apply_down(conn, migration)
            _apply_up(conn, migration)
        elif command == "reset":
            _down_to(conn, 0)
        elif command == "status":
            _status(conn)
        elif command == "version":
            _goose(f"version {_current(conn)}")
        else:
            raise MigrationError(f"{command!r}: no such command")
    except sqlite3.Error as exc:
        raise MigrationError(f"{command}: {exc}") from exc


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply every pending migration. Safe to call repeatedly."""
    _log.debug("running goose command=up")
    try:
        run_goose(conn, "up")
    except MigrationError as exc:
        raise MigrationError(f"goose up: {exc}") from exc


def current_db_version(conn: sqlite3.Connection) -> int:
    """Return the schema version recorded in the database (0 for a fresh one)."""
    try:
        _ensure_version_table(conn)
        return _current(conn)
    except sqlite3.Error as exc:
        raise MigrationError(f"read version: {exc}") from exc