import logging
import os

import pytest

from dfm.store import new_store
from dfm.tracker import (
    AlreadyTrackedError,
    BinarySuffixError,
    File,
    IsDirectoryError,
    NotTrackedError,
    PathOutsideAllowedError,
    SecretsError,
    Status,
    TrackerError,
    TrackOptions,
    compute_status,
    compute_status_one,
    has_binary_suffix,
    hash_file,
    list_files,
    record_hash_change,
    resolve,
    track,
    untrack,
)

HELLO_SHA = "a948904f2f0f479b8f8197694b30184b0d2ed1c1cd2a1ec0fb85d299a192a447"


@pytest.fixture
def store(tmp_path):
    s = new_store("file://" + str(tmp_path / "state.db"))
    yield s
    s.close()


def _insert(store, path, display, last_hash):
    with store.db:
        cur = store.db.execute(
            "INSERT INTO tracked_files (path, display_path, added_at, last_hash) "
            "VALUES (?, ?, ?, ?)",
            (path, display, "2024-01-01T00:00:00Z", last_hash),
        )
    return cur.lastrowid


def _last_hash(store, file_id):
    return store.db.execute(
        "SELECT last_hash FROM tracked_files WHERE id = ?", (file_id,)
    ).fetchone()[0]


def test_record_hash_change_updates_row_and_emits_audit(store, caplog):
    file_id = _insert(store, "/tmp/x", "~/x", "oldhash")
    f = File(id=file_id, path="/tmp/x", display_path="~/x", last_hash="oldhash")
    with caplog.at_level(logging.INFO, logger="dfm.audit"):
        fields = record_hash_change(
            store, f, "newhash", "snap-1", "edit", {"bytes_appended": 42}
        )
    assert _last_hash(store, file_id) == "newhash"
    assert fields["display_path"] == "~/x"
    assert fields["snapshot_id"] == "snap-1"
    assert fields["old_hash"] == "oldhash"
    assert fields["new_hash"] == "newhash"
    assert fields["bytes_appended"] == 42
    records = [r for r in caplog.records if r.name == "dfm.audit"]
    assert len(records) == 1
    assert records[0].audit_action == "edit"
    assert records[0].audit_fields == fields


def test_record_hash_change_empty_action_skips_audit(store, caplog):
    file_id = _insert(store, "/tmp/y", "~/y", "h0")
    f = File(id=file_id, path="/tmp/y", display_path="~/y", last_hash="h0")
    with caplog.at_level(logging.INFO, logger="dfm.audit"):
        result = record_hash_change(store, f, "h1", "snap-2", "", None)
    assert result is None
    assert _last_hash(store, file_id) == "h1"
    assert [r for r in caplog.records if r.name == "dfm.audit"] == []


def test_record_hash_change_extra_overrides_canonical(store):
    file_id = _insert(store, "/tmp/z", "~/z", "h0")
    f = File(id=file_id, path="/tmp/z", display_path="~/z", last_hash="h0")
    fields = record_hash_change(
        store, f, "h1", "snap-3", "edit", {"display_path": "override"}
    )
    assert fields["display_path"] == "override"


@pytest.mark.parametrize(
    "path,expected",
    [
        ("lib.so", ".so"),
        ("LIB.DYLIB", ".dylib"),
        ("prog.exe", ".exe"),
        ("archive.a", ".a"),
        (".zshrc", None),
        ("notes.txt", None),
    ],
)
def test_has_binary_suffix(path, expected):
    assert has_binary_suffix(path) == expected


def test_binary_suffix_error_message():
    err = BinarySuffixError("x.so", ".so")
    assert str(err) == 'refusing x.so: suspicious suffix ".so" (use --force to override)'


def test_hash_file(tmp_path):
    p = tmp_path / "f.txt"
    p.write_bytes(b"hello world\n")
    assert hash_file(str(p)) == HELLO_SHA


def test_hash_file_missing_raises(tmp_path):
    with pytest.raises(TrackerError):
        hash_file(str(tmp_path / "nope"))


def test_resolve_regular_file(tmp_path):
    p = tmp_path / "rc"
    p.write_text("x")
    canonical, display = resolve(str(p))
    assert canonical == os.path.realpath(str(p))
    assert display in (canonical, "~/" + os.path.relpath(canonical, os.path.realpath(os.path.expanduser("~"))))


def test_resolve_display_under_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    p = tmp_path / ".zshrc"
    p.write_text("export X=1\n")
    canonical, display = resolve("~/.zshrc")
    assert canonical == os.path.realpath(str(p))
    assert display == "~/.zshrc"


def test_resolve_directory_rejected(tmp_path):
    with pytest.raises(IsDirectoryError):
        resolve(str(tmp_path))


def test_resolve_empty_rejected():
    with pytest.raises(TrackerError, match="empty path"):
        resolve("   ")


def test_resolve_missing_rejected(tmp_path):
    with pytest.raises(TrackerError):
        resolve(str(tmp_path / "missing"))


def test_resolve_system_root_rejected():
    with pytest.raises(PathOutsideAllowedError):
        resolve("/etc/hosts")


def test_track_inserts_and_refuses_duplicate(store, tmp_path):
    p = tmp_path / "a"
    p.write_bytes(b"hello world\n")
    f = track(store, str(p), "~/a")
    assert f.last_hash == HELLO_SHA
    assert f.id > 0
    with pytest.raises(AlreadyTrackedError) as info:
        track(store, str(p), "~/a")
    assert info.value.file.id == f.id


def test_track_reset_refreshes_hash(store, tmp_path):
    p = tmp_path / "a"
    p.write_bytes(b"one")
    first = track(store, str(p), "~/a")
    p.write_bytes(b"hello world\n")
    second = track(store, str(p), "~/b", TrackOptions(reset=True))
    assert second.id == first.id
    assert second.last_hash == HELLO_SHA
    assert list_files(store)[0].display_path == "~/b"


def test_track_secret_scan_refuses(store, tmp_path):
    p = tmp_path / "env"
    p.write_text("token")
    scanner = lambda path: ["finding"]
    with pytest.raises(SecretsError) as info:
        track(store, str(p), "~/env", TrackOptions(secret_scanner=scanner))
    assert info.value.findings == ["finding"]
    assert list_files(store) == []
    f = track(
        store, str(p), "~/env", TrackOptions(secret_scanner=scanner, skip_secret_check=True)
    )
    assert f.path == str(p)


def test_track_after_commit_receives_file(store, tmp_path):
    p = tmp_path / "a"
    p.write_text("x")
    seen = []
    f = track(store, str(p), "~/a", TrackOptions(after_commit=seen.append))
    assert seen == [f]


def test_untrack(store, tmp_path):
    p = tmp_path / "a"
    p.write_text("x")
    f = track(store, str(p), "~/a")
    removed = untrack(store, "~/a")
    assert removed.id == f.id
    assert list_files(store) == []
    with pytest.raises(NotTrackedError):
        untrack(store, "~/a")


def test_list_files_ordered_by_display(store):
    _insert(store, "/p/2", "~/b", "h")
    _insert(store, "/p/1", "~/a", "h")
    assert [f.display_path for f in list_files(store)] == ["~/a", "~/b"]


def test_compute_status(store, tmp_path):
    clean = tmp_path / "clean"
    clean.write_bytes(b"hello world\n")
    modified = tmp_path / "mod"
    modified.write_text("new")
    fresh = tmp_path / "fresh"
    fresh.write_text("x")
    _insert(store, str(clean), "~/1clean", HELLO_SHA)
    _insert(store, str(modified), "~/2mod", "stale")
    _insert(store, str(tmp_path / "gone"), "~/3gone", "h")
    _insert(store, str(fresh), "~/4fresh", None)
    statuses = [r.status for r in compute_status(store)]
    assert statuses == [Status.CLEAN, Status.MODIFIED, Status.MISSING, Status.NEW]


def test_compute_status_one(store, tmp_path):
    p = tmp_path / "c"
    p.write_bytes(b"hello world\n")
    _insert(store, str(p), "~/c", HELLO_SHA)
    report = compute_status_one(store, "~/c")
    assert report.status is Status.CLEAN
    assert report.hash == HELLO_SHA
    with pytest.raises(NotTrackedError):
        compute_status_one(store, "~/nothing")