import logging
import sqlite3

import pytest

from dfm.migrations import (
    MigrationError,
    current_db_version,
    run_goose,
    run_migrations,
)


@pytest.fixture
def conn(tmp_path):
    connection = sqlite3.connect(str(tmp_path / "state.db"))
    yield connection
    connection.close()


def _tables(connection):
    rows = connection.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {name for (name,) in rows}


def test_default_level_has_no_goose_output(conn, caplog):
    caplog.set_level(logging.ERROR, logger="dfm.migrations")
    run_migrations(conn)
    run_migrations(conn)
    assert "goose:" not in caplog.text
    assert current_db_version(conn) >= 1


def test_debug_level_routes_goose_to_log(conn, caplog):
    caplog.set_level(logging.DEBUG, logger="dfm.migrations")
    run_migrations(conn)
    run_migrations(conn)
    assert "goose:" in caplog.text
    assert "no migrations to run" in caplog.text


def test_fresh_db_version_is_zero(conn):
    assert current_db_version(conn) == 0


def test_version_after_migrations(conn):
    run_migrations(conn)
    assert current_db_version(conn) >= 1


def test_migrations_are_idempotent(conn):
    run_migrations(conn)
    first = current_db_version(conn)
    run_migrations(conn)
    assert current_db_version(conn) == first


def test_migrations_create_tables(conn):
    run_migrations(conn)
    assert {"tracked_files", "snapshots", "suggestions", "actions"} <= _tables(conn)


def test_down_rolls_back_one_version(conn):
    run_migrations(conn)
    latest = current_db_version(conn)
    run_goose(conn, "down")
    assert current_db_version(conn) == latest - 1


def test_reset_returns_to_zero_and_drops_tables(conn):
    run_migrations(conn)
    run_goose(conn, "reset")
    assert current_db_version(conn) == 0
    assert "tracked_files" not in _tables(conn)


def test_up_by_one_applies_single_migration(conn):
    run_goose(conn, "up-by-one")
    assert current_db_version(conn) == 1


def test_up_to_and_down_to(conn):
    run_goose(conn, "up-to", "1")
    assert current_db_version(conn) == 1
    run_migrations(conn)
    run_goose(conn, "down-to", "1")
    assert current_db_version(conn) == 1


def test_redo_keeps_version(conn):
    run_migrations(conn)
    latest = current_db_version(conn)
    run_goose(conn, "redo")
    assert current_db_version(conn) == latest


def test_down_on_fresh_db_raises(conn):
    with pytest.raises(MigrationError):
        run_goose(conn, "down")


def test_up_by_one_with_nothing_pending_raises(conn):
    run_migrations(conn)
    with pytest.raises(MigrationError, match="no next version"):
        run_goose(conn, "up-by-one")


def test_unknown_command_raises(conn):
    with pytest.raises(MigrationError, match="no such command"):
        run_goose(conn, "sideways")


def test_up_to_requires_version(conn):
    with pytest.raises(MigrationError):
        run_goose(conn, "up-to")


def test_up_to_rejects_non_numeric_version(conn):
    with pytest.raises(MigrationError, match="number"):
        run_goose(conn, "up-to", "abc")


def test_status_reports_pending(conn, caplog):
    caplog.set_level(logging.DEBUG, logger="dfm.migrations")
    run_goose(conn, "status")
    assert "Pending" in caplog.text