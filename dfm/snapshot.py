"""Pre-modification backups: content-addressed blobs plus a snapshots table."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import re
import secrets
import sqlite3
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO

from dfm.store import Store
from dfm.tracker import File, TrackerError, resolve

_log = logging.getLogger(__name__)
_audit = logging.getLogger("dfm.audit")

_COLUMNS = "id, file_id, path, hash, size, reason, created_at, storage_path"

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)

_B32_STANDARD = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_B32_SORTABLE = "0123456789abcdefghijklmnopqrstuv"
_B32_TABLE = str.maketrans(_B32_STANDARD, _B32_SORTABLE)


class Reason(str, Enum):
    """Why a snapshot was taken."""

    TRACK = "track"
    MANUAL = "manual"
    PRE_APPLY = "pre-apply"
    PRE_SYNC = "pre-sync"
    PRE_EDIT = "pre-edit"


class SnapshotError(Exception):
    """Base class for snapshot failures."""


class SnapshotNotFoundError(SnapshotError):
    """No snapshot has the requested id."""

    def __init__(self, snapshot_id: str = "") -> None:
        message = "snapshot not found"
        super().__init__(f"{message}: {snapshot_id}" if snapshot_id else message)
        self.snapshot_id = snapshot_id


class DestExistsError(SnapshotError):
    """The restore destination exists and overwriting was not requested."""

    def __init__(self, dest: str = "") -> None:
        message = "destination exists"
        super().__init__(f"{message}: {dest}" if dest else message)
        self.dest = dest


class BlobMissingError(SnapshotError):
    """The blob a snapshot refers to is not on disk."""

    def __init__(self, path: str = "") -> None:
        message = "blob missing on disk"
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class ChecksumMismatchError(SnapshotError):
    """The blob bytes do not hash to the recorded content hash."""

    def __init__(self) -> None:
        super().__init__("blob checksum mismatch")


@dataclass
class Snapshot:
    """One stored backup."""

    id: str
    file_id: int | None
    path: str
    hash: str
    size: int
    reason: Reason | str
    created_at: datetime
    storage_path: str


@dataclass
class SnapshotConfig:
    """Where blobs live and how pruning bounds them.

    Zero values pick the defaults when a Manager is built: the user data
    backups directory, a 500 MB cap and 90 days of retention.
    """

    dir: str = ""
    max_total_mb: int = 0
    retention_days: int = 0


def _format_time(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    return text + "Z"


def _parse_time(value: str) -> datetime:
    match = _TIME_RE.match(value or "")
    if match is None:
        return _ZERO_TIME
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "0")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tz
        )
    except ValueError:
        return _ZERO_TIME


def _reason(value: str) -> Reason | str:
    try:
        return Reason(value)
    except ValueError:
        return value


def _row_to_snapshot(row: tuple[Any, ...]) -> Snapshot:
    snap_id, file_id, path, digest, size, reason, created_at, storage_path = row
    return Snapshot(
        id=snap_id,
        file_id=int(file_id) if file_id is not None else None,
        path=path,
        hash=digest,
        size=int(size),
        reason=_reason(reason),
        created_at=_parse_time(created_at),
        storage_path=storage_path,
    )


def _write_with_mode(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def new_id() -> str:
    """Return a sortable lowercase base32 id: nanosecond time plus random bytes."""
    raw = time.time_ns().to_bytes(8, "big") + secrets.token_bytes(8)
    return base64.b32encode(raw).decode("ascii").rstrip("=").translate(_B32_TABLE)


class Manager:
    """Owns the snapshots table and the on-disk blob store."""

    def __init__(self, store: Store, config: SnapshotConfig | None = None) -> None:
        cfg = replace(config) if config is not None else SnapshotConfig()
        if not cfg.dir:
            try:
                home = Path.home()
            except RuntimeError as exc:
                raise SnapshotError(f"resolve home: {exc}") from exc
            cfg.dir = str(home / ".local" / "share" / "dotfiles" / "backups")
        if cfg.max_total_mb == 0:
            cfg.max_total_mb = 500
        if cfg.retention_days == 0:
            cfg.retention_days = 90
        try:
            os.makedirs(cfg.dir, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise SnapshotError(f"mkdir backup root: {exc}") from exc
        self._store = store
        self.config = cfg

    @property
    def dir(self) -> str:
        """The blob root."""
        return self.config.dir

    def _blob_path(self, digest: str) -> str:
        if len(digest) < 2:
            return os.path.join(self.config.dir, digest)
        return os.path.join(self.config.dir, digest[:2], digest)

    def snapshot(
        self, path: str, file: File | None = None, reason: Reason = Reason.MANUAL
    ) -> Snapshot:
        """Store the contents of path as a new snapshot; file links it to a tracked row."""
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise SnapshotError(f"read {path}: {exc}") from exc
        digest = hashlib.sha256(data).hexdigest()
        size = len(data)

        dest = self._blob_path(digest)
        blob_reused = os.path.exists(dest)
        if not blob_reused:
            self._write_blob(dest, data, digest)

        snap_id = new_id()
        now = datetime.now(timezone.utc)
        file_id = file.id if file is not None else None
        reason_value = reason.value if isinstance(reason, Reason) else str(reason)

        try:
            with self._store.db:
                self._store.db.execute(
                    f"INSERT INTO snapshots ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (snap_id, file_id, path, digest, size, reason_value, _format_time(now), dest),
                )
        except sqlite3.Error as exc:
            raise SnapshotError(f"insert snapshot: {exc}") from exc

        _audit.info(
            "snapshot.created",
            extra={
                "audit_action": "snapshot.created",
                "audit_fields": {
                    "id": snap_id,
                    "path": path,
                    "hash": digest,
                    "reason": reason_value,
                    "size": size,
                },
            },
        )
        _log.debug(
            "snapshot taken reason=%s id=%s blob_reused=%s", reason_value, snap_id, blob_reused
        )
        return Snapshot(
            id=snap_id,
            file_id=file_id,
            path=path,
            hash=digest,
            size=size,
            reason=_reason(reason_value),
            created_at=now,
            storage_path=dest,
        )

    def _write_blob(self, dest: str, data: bytes, digest: str) -> None:
        try:
            os.makedirs(os.path.dirname(dest), mode=0o700, exist_ok=True)
        except OSError as exc:
            raise SnapshotError(f"mkdir blob dir: {exc}") from exc
        tmp = dest + ".tmp"
        try:
            _write_with_mode(tmp, data, 0o600)
        except OSError as exc:
            raise SnapshotError(f"write blob: {exc}") from exc
        try:
            written = Path(tmp).read_bytes()
        except OSError as exc:
            _remove_quietly(tmp)
            raise SnapshotError(f"verify read: {exc}") from exc
        if hashlib.sha256(written).hexdigest() != digest:
            _remove_quietly(tmp)
            raise ChecksumMismatchError()
        try:
            os.replace(tmp, dest)
        except OSError as exc:
            _remove_quietly(tmp)
            raise SnapshotError(f"rename blob: {exc}") from exc

    def list_snapshots(self, path: str = "") -> list[Snapshot]:
        """Return snapshots, newest first; a path (canonical or display) filters them."""
        try:
            if not path:
                rows = self._store.db.execute(
                    f"SELECT {_COLUMNS} FROM snapshots ORDER BY created_at DESC"
                ).fetchall()
            else:
                candidates = [path]
                try:
                    canonical, _ = resolve(path)
                except TrackerError:
                    pass
                else:
                    if canonical != path:
                        candidates.append(canonical)
                placeholders = ",".join("?" for _ in candidates)
                rows = self._store.db.execute(
                    f"SELECT {_COLUMNS} FROM snapshots WHERE path IN ({placeholders}) "
                    "ORDER BY created_at DESC",
                    candidates,
                ).fetchall()
        except sqlite3.Error as exc:
            raise SnapshotError(f"query snapshots: {exc}") from exc
        return [_row_to_snapshot(row) for row in rows]

    def get(self, snapshot_id: str) -> Snapshot:
        """Return the snapshot with the given id."""
        try:
            row = self._store.db.execute(
                f"SELECT {_COLUMNS} FROM snapshots WHERE id = ?", (snapshot_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise SnapshotError(f"query snapshot: {exc}") from exc
        if row is None:
            raise SnapshotNotFoundError(snapshot_id)
        return _row_to_snapshot(row)

    def _read_blob(self, snap: Snapshot) -> bytes:
        try:
            data = Path(snap.storage_path).read_bytes()
        except FileNotFoundError as exc:
            raise BlobMissingError(snap.storage_path) from exc
        except OSError as exc:
            raise SnapshotError(f"read blob: {exc}") from exc
        if hashlib.sha256(data).hexdigest() != snap.hash:
            raise ChecksumMismatchError()
        return data

    def restore(
        self, snapshot_id: str, dest: str = "", overwrite: bool = False
    ) -> tuple[str, int]:
        """Write the snapshot's bytes to dest (default: its original path).

        Returns the destination and the number of bytes written.
        """
        snap = self.get(snapshot_id)
        dest = dest or snap.path
        try:
            os.stat(dest)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise SnapshotError(f"stat dest: {exc}") from exc
        else:
            if not overwrite:
                raise DestExistsError(dest)

        data = self._read_blob(snap)

        try:
            mode = os.stat(snap.path).st_mode & 0o777
        except OSError:
            mode = 0o644

        parent = os.path.dirname(dest)
        if parent:
            try:
                os.makedirs(parent, mode=0o755, exist_ok=True)
            except OSError as exc:
                raise SnapshotError(f"mkdir dest dir: {exc}") from exc
        tmp = dest + ".tmp"
        try:
            _write_with_mode(tmp, data, mode)
        except OSError as exc:
            raise SnapshotError(f"write dest: {exc}") from exc
        try:
            os.replace(tmp, dest)
        except OSError as exc:
            _remove_quietly(tmp)
            raise SnapshotError(f"rename dest: {exc}") from exc

        _audit.info(
            "snapshot.restored",
            extra={
                "audit_action": "snapshot.restored",
                "audit_fields": {"id": snapshot_id, "dest": dest, "size": len(data)},
            },
        )
        return dest, len(data)

    def open(self, snapshot_id: str) -> BinaryIO:
        """Open the snapshot's blob for reading in binary mode."""
        snap = self.get(snapshot_id)
        if not os.path.exists(snap.storage_path):
            raise BlobMissingError(snap.storage_path)
        return open(snap.storage_path, "rb")

    def prune(self) -> tuple[int, int]:
        """Evict snapshots by retention and size cap; returns (removed, bytes freed)."""
        return self._prune(dry_run=False)

    def prune_dry_run(self) -> tuple[int, int]:
        """Report what prune() would remove, without removing anything."""
        return self._prune(dry_run=True)

    def _prune(self, dry_run: bool) -> tuple[int, int]:
        every = self.list_snapshots()
        if not every:
            return 0, 0

        # Newest snapshot per (path, file id) is always kept; the list is newest first.
        keep: set[str] = set()
        seen_keys: set[tuple[str, int]] = set()
        for snap in every:
            key = (snap.path, snap.file_id or 0)
            if key not in seen_keys:
                seen_keys.add(key)
                keep.add(snap.id)

        to_remove: dict[str, Snapshot] = {}

        if self.config.retention_days > 0:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.config.retention_days)
            for snap in every:
                if snap.id not in keep and snap.created_at < cutoff:
                    to_remove[snap.id] = snap

        if self.config.max_total_mb > 0:
            cap = self.config.max_total_mb * 1024 * 1024
            survivors = [s for s in every if s.id not in to_remove]
            total = sum(s.size for s in survivors)
            for snap in sorted(survivors, key=lambda s: s.created_at):
                if total <= cap:
                    break
                if snap.id in keep:
                    continue
                to_remove[snap.id] = snap
                total -= snap.size

        if not to_remove:
            return 0, 0

        blob_refs: dict[str, int] = {}
        for snap in every:
            blob_refs[snap.storage_path] = blob_refs.get(snap.storage_path, 0) + 1

        freed = 0
        removed = 0
        for snap_id, snap in to_remove.items():
            if not dry_run:
                try:
                    with self._store.db:
                        self._store.db.execute("DELETE FROM snapshots WHERE id = ?", (snap_id,))
                except sqlite3.Error as exc:
                    raise SnapshotError(f"delete snapshot {snap_id}: {exc}") from exc
            blob_refs[snap.storage_path] -= 1
            if blob_refs[snap.storage_path] == 0:
                if not dry_run:
                    try:
                        os.remove(snap.storage_path)
                    except FileNotFoundError:
                        pass
                    except OSError as exc:
                        raise SnapshotError(f"remove blob: {exc}") from exc
                freed += snap.size
            removed += 1

        if not dry_run:
            _audit.info(
                "snapshot.pruned",
                extra={
                    "audit_action": "snapshot.pruned",
                    "audit_fields": {"removed": removed, "bytes_freed": freed},
                },
            )
            _log.info("prune complete removed=%d bytes_freed=%d", removed, freed)
        return removed, freed

    def referenced_hashes(self) -> set[str]:
        """Return every content hash some snapshot row refers to."""
        try:
            rows = self._store.db.execute("SELECT DISTINCT hash FROM snapshots").fetchall()
        except sqlite3.Error as exc:
            raise SnapshotError(f"query snapshot hashes: {exc}") from exc
        return {row[0] for row in rows}


def take_pre_edit(manager: Manager, canonical: str, file: File) -> Snapshot:
    """Take a pre-edit snapshot of canonical for file."""
    try:
        return manager.snapshot(canonical, file, Reason.PRE_EDIT)
    except SnapshotError as exc:
        raise SnapshotError(f"pre-edit snapshot: {exc}") from exc