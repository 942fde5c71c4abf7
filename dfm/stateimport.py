"""Copying rows from one state database into another."""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

ALLOWED_TABLES: tuple[str, ...] = ("tracked_files", "snapshots", "suggestions", "actions")
"""Tables the importer can copy, in dependency order."""

DEFAULT_TABLES: tuple[str, ...] = ("tracked_files", "snapshots")
"""Tables imported when none are named."""


class ImportError_(Exception):
    """Raised when an import cannot be carried out.

    ``result`` holds whatever was completed before the failure, if anything.
    """

    def __init__(self, message: str, result: "ImportResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class ImportOptions:
    """One import run. The caller owns both connections.

    When ``blob_exists`` is given, snapshot rows whose blob it reports
    missing are skipped and counted.
    """

    source: sqlite3.Connection | None
    target: sqlite3.Connection | None
    tables: list[str] = field(default_factory=list)
    dry_run: bool = False
    replace: bool = False
    blob_exists: Callable[[str], bool] | None = None


@dataclass
class TableResult:
    """Outcome for one table."""

    table: str
    imported: int = 0
    skipped_existing: int = 0
    skipped_missing_blob: int = 0


@dataclass
class ImportResult:
    """Per-table outcomes plus the warnings collected on the way."""

    tables: list[TableResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    def totals(self) -> tuple[int, int, int]:
        """Return (imported, skipped_existing, skipped_missing_blob) over all tables."""
        return (
            sum(t.imported for t in self.tables),
            sum(t.skipped_existing for t in self.tables),
            sum(t.skipped_missing_blob for t in self.tables),
        )


@dataclass(frozen=True)
class _TableSpec:
    name: str
    columns: tuple[str, ...]
    hash_column: str | None = None


_SPECS: dict[str, _TableSpec] = {
    spec.name: spec
    for spec in (
        _TableSpec(
            "tracked_files",
            ("id", "path", "display_path", "added_at", "last_hash", "last_synced"),
        ),
        _TableSpec(
            "snapshots",
            ("id", "file_id", "path", "hash", "size", "reason", "created_at", "storage_path"),
            hash_column="hash",
        ),
        _TableSpec(
            "suggestions",
            ("id", "file_id", "provider", "prompt", "diff", "status", "created_at", "decided_at"),
        ),
        _TableSpec("actions", ("id", "ts", "action", "payload_json")),
    )
}


def validate_tables(tables: Iterable[str] | None) -> list[str]:
    """Check names against the allowlist; return them deduplicated in dependency order."""
    names = list(tables or [])
    if not names:
        return list(DEFAULT_TABLES)
    order = {name: index for index, name in enumerate(ALLOWED_TABLES)}
    out: list[str] = []
    for raw in names:
        name = raw.strip()
        if not name:
            continue
        if name not in order:
            raise ImportError_(
                f'unknown table "{name}" (allowed: {",".join(ALLOWED_TABLES)})'
            )
        if name not in out:
            out.append(name)
    out.sort(key=order.__getitem__)
    return out


def parse_tables_flag(value: str) -> list[str]:
    """Split a comma-separated --tables value, dropping blanks."""
    return [part.strip() for part in value.split(",") if part.strip()]


def local_blob_exists_func(blob_root: str) -> Callable[[str], bool]:
    """Return a predicate telling whether a hash's blob is in the local store."""

    def exists(digest: str) -> bool:
        if len(digest) < 2:
            return False
        return os.path.exists(os.path.join(blob_root, digest[:2], digest))

    return exists


def _short_hash(digest: str) -> str:
    return digest[:8]


def _row_exists(db: sqlite3.Connection, table: str, pk: Any) -> bool:
    row = db.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (pk,)).fetchone()
    return row is not None


def _import_table(options: ImportOptions, spec: _TableSpec) -> tuple[TableResult, list[str]]:
    assert options.source is not None and options.target is not None
    result = TableResult(table=spec.name)
    warnings: list[str] = []
    columns = ", ".join(spec.columns)
    try:
        rows = options.source.execute(f"SELECT {columns} FROM {spec.name}").fetchall()
    except sqlite3.Error as exc:
        raise ImportError_(f"select: {exc}") from exc

    hash_index = spec.columns.index(spec.hash_column) if spec.hash_column else None
    placeholders = ", ".join("?" for _ in spec.columns)
    for row in rows:
        pk = row[0]
        if hash_index is not None and options.blob_exists is not None:
            digest = row[hash_index]
            if not options.blob_exists(digest):
                result.skipped_missing_blob += 1
                warnings.append(
                    f"snapshot {pk}: blob {_short_hash(digest)} not in local store; skipped"
                )
                continue
        try:
            exists = _row_exists(options.target, spec.name, pk)
        except sqlite3.Error as exc:
            raise ImportError_(f"check existing id={pk}: {exc}") from exc
        if exists and not options.replace:
            result.skipped_existing += 1
            continue
        if options.dry_run:
            result.imported += 1
            continue
        verb = "INSERT OR REPLACE" if exists else "INSERT"
        try:
            with options.target:
                options.target.execute(
                    f"{verb} INTO {spec.name} ({columns}) VALUES ({placeholders})", row
                )
        except sqlite3.Error as exc:
            raise ImportError_(f"insert id={pk}: {exc}") from exc
        result.imported += 1
    return result, warnings


def import_state(options: ImportOptions) -> ImportResult:
    """Copy the chosen tables from options.source into options.target."""
    if options.source is None or options.target is None:
        raise ImportError_("source and target must be non-nil")
    tables = validate_tables(options.tables)
    result = ImportResult(dry_run=options.dry_run)
    for table in tables:
        try:
            table_result, warnings = _import_table(options, _SPECS[table])
        except ImportError_ as exc:
            raise ImportError_(f"import {table}: {exc}", result) from exc
        result.tables.append(table_result)
        result.warnings.extend(warnings)
    return result