"""Opening and handling the state database."""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path
from urllib.parse import urlsplit

from dfm.migrations import run_migrations

_log = logging.getLogger(__name__)

_REMOTE_PREFIXES = ("libsql://", "https://", "http://", "wss://", "ws://")
_SAFE_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_."
)


class StoreError(Exception):
    """Raised when the state database cannot be opened."""


class Store:
    """A handle around an open connection and the target it was opened against."""

    def __init__(self, conn: sqlite3.Connection, target: str, shared: bool = False) -> None:
        self._conn = conn
        self._target = target
        self._shared = shared

    @property
    def db(self) -> sqlite3.Connection:
        """The underlying connection."""
        return self._conn

    @property
    def target(self) -> str:
        """The local path or remote URL the store was opened against."""
        return self._target

    def close(self) -> None:
        """Close the connection, unless this is a shared reference."""
        if not self._shared:
            self._conn.close()

    def shared_ref(self) -> "Store":
        """Return a non-owning view whose close() leaves the connection open."""
        return Store(self._conn, self._target, shared=True)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _home() -> Path:
    try:
        return Path.home()
    except RuntimeError as exc:
        raise StoreError(f"resolve home: {exc}") from exc


def is_remote(url: str) -> bool:
    """Report whether url names a remote libSQL target."""
    return url.startswith(_REMOTE_PREFIXES)


def local_path(url: str) -> str:
    """Strip a file:// prefix and return the filesystem path."""
    return url[len("file://"):] if url.startswith("file://") else url


def _host(url: str) -> str:
    try:
        netloc = urlsplit(url).netloc
    except ValueError:
        return ""
    return netloc.rpartition("@")[2]


def remote_cache_path(remote: str) -> str:
    """Return the local replica cache file for a remote URL."""
    home = _home()
    host = _host(remote) or remote
    safe = "".join(ch if ch in _SAFE_CHARS else "_" for ch in host)
    return str(home / ".local" / "share" / "dotfiles" / "remote-cache" / f"{safe}.db")


def scrub(url: str) -> str:
    """Reduce a URL to scheme and host so no credentials reach the logs."""
    host = _host(url)
    if not host:
        return url
    return f"{urlsplit(url).scheme}://{host}"


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent in ("", "."):
        return
    os.makedirs(parent, mode=0o700, exist_ok=True)


def _connect(url: str, auth_token: str) -> tuple[sqlite3.Connection, str]:
    raw = url.strip()
    if not raw:
        raw = "file://" + str(_home() / ".local" / "share" / "dotfiles" / "state.db")

    if is_remote(raw):
        if not auth_token:
            raise StoreError(
                "remote Turso URL requires an auth token; set TURSO_AUTH_TOKEN"
            )
        raise StoreError(
            f"open remote {scrub(raw)}: remote replication is not available; "
            "use a local file:// state URL"
        )

    path = local_path(raw)
    try:
        _ensure_parent_dir(path)
    except OSError as exc:
        raise StoreError(f"mkdir {os.path.dirname(path)}: {exc}") from exc
    try:
        conn = sqlite3.connect(path)
    except sqlite3.Error as exc:
        raise StoreError(f"open {path}: {exc}") from exc
    return conn, path


def open_db(url: str = "", auth_token: str = "") -> tuple[sqlite3.Connection, str]:
    """Open and ping the state database without running migrations."""
    conn, target = _connect(url, auth_token)
    try:
        conn.execute("SELECT 1").fetchone()
    except sqlite3.Error as exc:
        conn.close()
        raise StoreError(f"ping {scrub(target)}: {exc}") from exc
    return conn, target


def new_store(url: str = "", auth_token: str = "") -> Store:
    """Open the state database, ping it and apply pending migrations."""
    _log.info("opening state store target=%s", scrub(url.strip()))
    conn, target = open_db(url, auth_token)
    try:
        run_migrations(conn)
    except BaseException:
        conn.close()
        raise
    return Store(conn, target)


def current_db_version_before(url: str = "", auth_token: str = "") -> int:
    """Read the applied schema version without migrating; 0 when none is recorded."""
    conn, _ = open_db(url, auth_token)
    try:
        try:
            (version,) = conn.execute(
                "SELECT MAX(version_id) FROM goose_db_version WHERE is_applied = 1"
            ).fetchone()
        except sqlite3.Error:
            return 0
        return int(version) if version is not None else 0
    finally:
        conn.close()