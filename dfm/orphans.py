"""Finding and removing blobs no snapshot row refers to any more."""

from __future__ import annotations

import os
from collections.abc import Collection, Iterable, Iterator

_HEX_DIGITS = frozenset("0123456789abcdef")


def is_hex_sha256(value: str) -> bool:
    """Report whether value is 64 lowercase hex characters."""
    return len(value) == 64 and all(ch in _HEX_DIGITS for ch in value)


def _iter_files(root: str) -> Iterator[os.DirEntry]:
    """Yield every non-directory entry under root, in name order, without following links."""
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda entry: entry.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _iter_files(entry.path)
        else:
            yield entry


def find_orphans(blob_root: str, referenced: Collection[str]) -> tuple[list[str], int]:
    """Return the blobs under blob_root whose hash is not in referenced, and their total size.

    A blob's hash is its file name; the shard directory plays no part. A missing
    root counts as holding no blobs. Names that are not 64 hex characters and
    ``*.tmp`` staging files are left alone.
    """
    if not blob_root:
        raise ValueError("blob_root is empty")
    try:
        is_dir = os.path.isdir(blob_root)
        os.stat(blob_root)
    except FileNotFoundError:
        return [], 0
    if not is_dir:
        raise NotADirectoryError(f"blob root is not a directory: {blob_root}")

    orphans: list[str] = []
    total = 0
    for entry in _iter_files(blob_root):
        name = entry.name
        if name.endswith(".tmp") or not is_hex_sha256(name):
            continue
        if name in referenced:
            continue
        total += entry.stat(follow_symlinks=False).st_size
        orphans.append(entry.path)
    return orphans, total


def _prune_empty_shards(blob_root: str) -> None:
    # Only one level of sharding exists, so this is deliberately not recursive.
    try:
        entries = list(os.scandir(blob_root))
    except FileNotFoundError:
        return
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        try:
            empty = not os.listdir(entry.path)
        except FileNotFoundError:
            continue
        if empty:
            try:
                os.rmdir(entry.path)
            except FileNotFoundError:
                pass


def remove_orphans(blob_root: str, paths: Iterable[str]) -> None:
    """Delete the given blobs, then remove shard directories left empty.

    Paths that are already gone are skipped; any other failure is raised.
    """
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
    _prune_empty_shards(blob_root)