"""Path resolution, the tracked_files table and per-file status."""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import tempfile
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from dfm.store import Store

_log = logging.getLogger(__name__)
_audit = logging.getLogger("dfm.audit")

_SYSTEM_ROOTS = (
    "/etc",
    "/usr",
    "/var",
    "/private/etc",
    "/private/var",
    "/System",
    "/Library",
)

_BINARY_SUFFIXES = (".so", ".dylib", ".dll", ".exe", ".bin", ".o", ".a")

_COLUMNS = (
    "id, path, display_path, added_at, COALESCE(last_hash,''), COALESCE(last_synced,'')"
)

_CHUNK = 64 * 1024


class TrackerError(Exception):
    """Base class for tracker failures."""


class AlreadyTrackedError(TrackerError):
    """The path is already tracked; the existing row is on ``file``."""

    def __init__(self, file: "File") -> None:
        super().__init__(f"path is already tracked: {file.path}")
        self.file = file


class NotTrackedError(TrackerError):
    """The path is not tracked."""

    def __init__(self, target: str = "") -> None:
        message = "path is not tracked"
        super().__init__(f"{message}: {target}" if target else message)
        self.target = target


class IsDirectoryError(TrackerError):
    """The path names a directory."""

    def __init__(self, path: str) -> None:
        super().__init__(f"path is a directory: {path}")
        self.path = path


class PathOutsideAllowedError(TrackerError):
    """The path lies outside the roots a tracked file may live under."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"path is outside the allowed roots: {detail}")


class SecretsError(TrackerError):
    """The pre-flight secret scan flagged the file."""

    def __init__(self, path: str, findings: Sequence[Any]) -> None:
        super().__init__(f"secrets detected in {path} ({len(findings)} findings)")
        self.path = path
        self.findings = list(findings)


class BinarySuffixError(TrackerError):
    """The path ends in a binary-looking suffix and --force was not given."""

    def __init__(self, path: str, suffix: str) -> None:
        super().__init__(
            f'refusing {path}: suspicious suffix "{suffix}" (use --force to override)'
        )
        self.path = path
        self.suffix = suffix


@dataclass
class File:
    """One row of the tracked_files table."""

    id: int
    path: str
    display_path: str = ""
    added_at: datetime | None = None
    last_hash: str = ""
    last_synced: datetime | None = None


class Status(str, Enum):
    """How a tracked file's disk contents compare with its recorded hash."""

    CLEAN = "clean"
    MODIFIED = "modified"
    MISSING = "missing"
    NEW = "new"


@dataclass
class StatusReport:
    """A tracked file, its status and (when readable) its current hash."""

    file: File
    status: Status
    hash: str = ""


@dataclass
class TrackOptions:
    """Tunes track().

    ``secret_scanner`` receives the canonical path and returns the findings;
    a non-empty result refuses the file unless ``skip_secret_check`` is set.
    ``after_commit`` runs once the row is written, with the resulting File.
    """

    skip_secret_check: bool = False
    reset: bool = False
    after_commit: Callable[[File], None] | None = None
    secret_scanner: Callable[[str], Sequence[Any]] | None = field(default=None)


def _home() -> str:
    try:
        return str(Path.home())
    except RuntimeError as exc:
        raise TrackerError(f"resolve home: {exc}") from exc


def _expand_home(path: str) -> str:
    if path == "~":
        return _home()
    if path.startswith("~/"):
        return os.path.join(_home(), path[2:])
    return path


def _is_under(path: str, root: str) -> bool:
    if not root:
        return False
    try:
        rel = os.path.relpath(path, root)
    except ValueError:
        return False
    if rel == ".":
        return True
    if rel.startswith(".."):
        return False
    return not os.path.isabs(rel)


def _tmp_roots() -> list[str]:
    roots = ["/tmp", "/private/tmp"]
    tmp = tempfile.gettempdir()
    if tmp:
        roots.append(tmp)
        roots.append(os.path.realpath(tmp))
    return roots


def _is_under_system_root(path: str) -> bool:
    # The macOS user temp dir lives under /var/folders; exempt temp roots.
    if any(_is_under(path, t) for t in _tmp_roots()):
        return False
    return any(_is_under(path, r) for r in _SYSTEM_ROOTS)


def _real_or_same(path: str) -> str:
    if not path:
        return path
    try:
        return os.path.realpath(path, strict=True)
    except OSError:
        return path


def resolve(raw: str) -> tuple[str, str]:
    """Turn a user-supplied path into (canonical, display), enforcing path policy."""
    if not raw.strip():
        raise TrackerError("empty path")

    expanded = _expand_home(raw)
    abs_path = os.path.normpath(os.path.abspath(expanded))

    try:
        info = os.lstat(abs_path)
    except OSError as exc:
        raise TrackerError(f"stat {abs_path}: {exc}") from exc
    if os.path.isdir(abs_path) and not os.path.islink(abs_path) or _is_dir_mode(info):
        raise IsDirectoryError(abs_path)

    try:
        resolved = os.path.normpath(os.path.realpath(abs_path, strict=True))
    except OSError as exc:
        raise TrackerError(f"eval symlinks for {abs_path}: {exc}") from exc

    try:
        os.stat(resolved)
    except OSError as exc:
        raise TrackerError(f"stat resolved {resolved}: {exc}") from exc
    if os.path.isdir(resolved):
        raise IsDirectoryError(resolved)

    if _is_under_system_root(abs_path) or _is_under_system_root(resolved):
        raise PathOutsideAllowedError(f"{resolved} is under a system root")

    try:
        home = _real_or_same(str(Path.home()))
    except RuntimeError:
        home = ""
    try:
        cwd = _real_or_same(os.getcwd())
    except OSError:
        cwd = ""

    allowed = (
        _is_under(resolved, home)
        or _is_under(resolved, cwd)
        or any(_is_under(resolved, t) for t in _tmp_roots())
    )
    if not allowed:
        raise PathOutsideAllowedError(f"{resolved} is not under $HOME, cwd, or tmp")

    display = resolved
    if home and _is_under(resolved, home):
        rel = os.path.relpath(resolved, home)
        display = "~/" + Path(rel).as_posix()
    return resolved, display


def _is_dir_mode(info: os.stat_result) -> bool:
    import stat

    return stat.S_ISDIR(info.st_mode)


def has_binary_suffix(path: str) -> str | None:
    """Return the binary-looking suffix path ends in, or None."""
    lower = path.lower()
    for suffix in _BINARY_SUFFIXES:
        if lower.endswith(suffix):
            return suffix
    return None


def hash_file(path: str) -> str:
    """Stream the file and return its lowercase hex SHA-256."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                digest.update(chunk)
    except OSError as exc:
        raise TrackerError(f"hash {path}: {exc}") from exc
    return digest.hexdigest()


def _format_time(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(value: str) -> datetime | None:
    if not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _row_to_file(row: tuple[Any, ...]) -> File:
    file_id, path, display, added_at, last_hash, last_synced = row
    return File(
        id=int(file_id),
        path=path,
        display_path=display,
        added_at=_parse_time(added_at or ""),
        last_hash=last_hash or "",
        last_synced=_parse_time(last_synced or ""),
    )


def _find_one(store: Store, column: str, value: str) -> File | None:
    try:
        row = store.db.execute(
            f"SELECT {_COLUMNS} FROM tracked_files WHERE {column} = ?", (value,)
        ).fetchone()
    except sqlite3.Error as exc:
        raise TrackerError(f"scan tracked_files: {exc}") from exc
    return _row_to_file(row) if row is not None else None


def _find_by_any_form(store: Store, target: str) -> File | None:
    candidates = [target]
    try:
        expanded = _expand_home(target)
    except TrackerError:
        expanded = target
    if expanded != target:
        candidates.append(expanded)
    try:
        canonical, _ = resolve(target)
    except TrackerError:
        pass
    else:
        candidates.append(canonical)

    for candidate in candidates:
        found = _find_one(store, "path", candidate)
        if found is not None:
            return found
    return _find_one(store, "display_path", target)


def _short_hash(value: str) -> str:
    return value[:8]


def track(
    store: Store, canonical: str, display: str, options: TrackOptions | None = None
) -> File:
    """Insert a tracked_files row, or refresh an existing one when options.reset."""
    opts = options or TrackOptions()
    if not opts.skip_secret_check and opts.secret_scanner is not None:
        try:
            findings = opts.secret_scanner(canonical)
        except OSError as exc:
            raise TrackerError(f"secret scan: {exc}") from exc
        if findings:
            raise SecretsError(canonical, findings)

    file_hash = hash_file(canonical)
    now = datetime.now(timezone.utc).replace(microsecond=0)
    added_at = _format_time(now)
    _log.debug("tracking file display=%s hash=%s", display, _short_hash(file_hash))

    existing = _find_one(store, "path", canonical)
    if existing is not None:
        if not opts.reset:
            raise AlreadyTrackedError(existing)
        try:
            with store.db:
                store.db.execute(
                    "UPDATE tracked_files SET last_hash = ?, added_at = ?, display_path = ? "
                    "WHERE id = ?",
                    (file_hash, added_at, display, existing.id),
                )
        except sqlite3.Error as exc:
            raise TrackerError(f"update tracked_files: {exc}") from exc
        result = replace(existing, last_hash=file_hash, added_at=now, display_path=display)
    else:
        try:
            with store.db:
                cursor = store.db.execute(
                    "INSERT INTO tracked_files (path, display_path, added_at, last_hash) "
                    "VALUES (?, ?, ?, ?)",
                    (canonical, display, added_at, file_hash),
                )
        except sqlite3.Error as exc:
            raise TrackerError(f"insert tracked_files: {exc}") from exc
        result = File(
            id=int(cursor.lastrowid or 0),
            path=canonical,
            display_path=display,
            added_at=now,
            last_hash=file_hash,
        )

    if opts.after_commit is not None:
        opts.after_commit(result)
    return result


def untrack(store: Store, target: str) -> File:
    """Remove a tracked_files row matched by canonical, display or relative path."""
    found = _find_by_any_form(store, target)
    if found is None:
        raise NotTrackedError(target)
    try:
        with store.db:
            store.db.execute("DELETE FROM tracked_files WHERE id = ?", (found.id,))
    except sqlite3.Error as exc:
        raise TrackerError(f"delete tracked_files: {exc}") from exc
    return found


def list_files(store: Store) -> list[File]:
    """Return every tracked file ordered by display path."""
    try:
        rows = store.db.execute(
            f"SELECT {_COLUMNS} FROM tracked_files ORDER BY display_path ASC"
        ).fetchall()
    except sqlite3.Error as exc:
        raise TrackerError(f"query tracked_files: {exc}") from exc
    return [_row_to_file(row) for row in rows]


def _status_for(file: File) -> StatusReport:
    if not os.path.exists(file.path) or os.path.isdir(file.path):
        return StatusReport(file=file, status=Status.MISSING)
    try:
        current = hash_file(file.path)
    except TrackerError:
        return StatusReport(file=file, status=Status.MISSING)
    if not file.last_hash:
        return StatusReport(file=file, status=Status.NEW, hash=current)
    status = Status.CLEAN if current == file.last_hash else Status.MODIFIED
    return StatusReport(file=file, status=status, hash=current)


def compute_status(store: Store) -> list[StatusReport]:
    """Report the status of every tracked file."""
    start = time.monotonic()
    files = list_files(store)
    reports = [_status_for(f) for f in files]
    _log.debug(
        "status pass count=%d duration_ms=%d",
        len(files),
        int((time.monotonic() - start) * 1000),
    )
    return reports


def compute_status_one(store: Store, target: str) -> StatusReport:
    """Report the status of one tracked file matched by any of its path forms."""
    found = _find_by_any_form(store, target)
    if found is None:
        raise NotTrackedError(target)
    return _status_for(found)


def record_hash_change(
    store: Store,
    file: File,
    new_hash: str,
    snap_id: str,
    action: str = "",
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Store new_hash as the file's last hash and emit an audit event under action.

    Returns the audit fields, or None when action is empty (no event emitted).
    Keys in extra override the canonical fields.
    """
    try:
        with store.db:
            store.db.execute(
                "UPDATE tracked_files SET last_hash = ? WHERE id = ?", (new_hash, file.id)
            )
    except sqlite3.Error as exc:
        raise TrackerError(f"update tracked_files: {exc}") from exc

    if not action:
        return None

    fields: dict[str, Any] = {
        "display_path": file.display_path,
        "file_id": file.id,
        "snapshot_id": snap_id,
        "old_hash": file.last_hash,
        "new_hash": new_hash,
    }
    if extra:
        fields.update(extra)
    _audit.info(action, extra={"audit_action": action, "audit_fields": dict(fields)})
    return fields