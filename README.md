# dfm

`dfm` is a library for keeping track of dotfiles. It records which files
you care about in a SQLite state database, takes deduplicated,
checksummed snapshots of them, and drives a git backup repository
through the system `git` binary.

## Modules

- **`dfm.store`**: `new_store(url, auth_token)` opens the state database,
  checks it answers and applies pending schema migrations; it returns a
  `Store` with `db` (the `sqlite3.Connection`), `target`, `close()`,
  `shared_ref()` (a view whose `close()` leaves the connection open) and
  context-manager support. An empty URL means
  `~/.local/share/dotfiles/state.db`; a `file://` prefix is stripped.
  `open_db` opens without migrating, and `current_db_version_before`
  reads the applied schema version without changing anything (0 for a
  fresh database). `is_remote`, `local_path`, `remote_cache_path` and
  `scrub` are the URL helpers. Failures raise `StoreError`.
- **`dfm.migrations`**: `run_migrations(conn)` applies the schema
  (`tracked_files`, `suggestions`, `actions`, `snapshots`) and is safe to
  repeat. `run_goose(conn, command, *args)` accepts `up`, `up-by-one`,
  `up-to VERSION`, `down`, `down-to VERSION`, `redo`, `reset`, `status`
  and `version`; `current_db_version(conn)` returns the recorded version.
  Progress messages go to the `dfm.migrations` logger at debug level.
  Failures raise `MigrationError`.
- **`dfm.tracker`**: `resolve(raw)` turns a user path (with `~`
  expansion) into `(canonical, display)`. It refuses directories
  (`IsDirectoryError`), paths under system roots such as `/etc` or `/usr`,
  and paths outside `$HOME`, the working directory or the temp directory
  (`PathOutsideAllowedError`). `track`, `untrack`, `list_files`,
  `compute_status` and `compute_status_one` manage the `tracked_files`
  table; a `StatusReport` carries a `Status` of `CLEAN`, `MODIFIED`,
  `MISSING` or `NEW`. `record_hash_change` updates a file's stored hash
  and, when given an action name, returns the audit fields it emitted.
  `hash_file` and `has_binary_suffix` are helpers.
- **`dfm.snapshot`**: `Manager(store, SnapshotConfig(...))` stores file
  contents as SHA-256 named blobs sharded by their first two hex
  characters, with one row per snapshot. Methods: `snapshot`,
  `list_snapshots`, `get`, `restore`, `open`, `prune`, `prune_dry_run`,
  `referenced_hashes`. Zero config values default to
  `~/.local/share/dotfiles/backups`, a 500 MB cap and 90 days of
  retention. Pruning always keeps the newest snapshot of every path.
  `take_pre_edit` takes a `Reason.PRE_EDIT` snapshot.
- **`dfm.orphans`**: `find_orphans(blob_root, referenced)` returns blob
  paths whose name is a 64-character lowercase hex hash not in
  `referenced`, together with their total size; `*.tmp` and other names
  are ignored and a missing root yields nothing. `remove_orphans` deletes
  them and removes shard directories left empty.
- **`dfm.stateimport`**: `import_state(ImportOptions(source, target, ...))`
  copies `tracked_files`, `snapshots`, `suggestions` and `actions` rows
  between two connections. Existing rows are skipped unless `replace` is
  set; `dry_run` counts without writing; `blob_exists` (for example from
  `local_blob_exists_func(blob_root)`) skips snapshot rows whose blob is
  absent and adds a warning. `validate_tables` and `parse_tables_flag`
  handle table lists; the default is `tracked_files,snapshots`.
- **`dfm.vcs`**: `init_local`, `clone` and `open_repo` return a `Repo`
  with `write_file`, `append_file`, `add`, `commit_all`, `fetch`, `push`,
  `pull_fast_forward`, `pull_keep_remote`, `push_force`, `ahead_behind`
  and `log`. Git runs with only `PATH`, `HOME`, `USER`, `LOGNAME`,
  `SHELL`, `SSH_AUTH_SOCK`, `TMPDIR` and `GIT_*` variables passed on.
  Relative paths that leave the repo raise `PathEscapeError`.
- **`dfm.prompt`**: `ask_line(stream, out, PromptOptions(...))` and
  `ask_yes_no(stream, out, question, default_yes)` read answers from any
  text streams.

## Example

```python
from dfm.store import new_store
from dfm.tracker import resolve, track, compute_status, TrackOptions
from dfm.snapshot import Manager, SnapshotConfig, Reason

with new_store("file:///tmp/dfm-demo/state.db", "") as store:
    canonical, display = resolve("~/.zshrc")
    tracked = track(store, canonical, display, TrackOptions())

    manager = Manager(store, SnapshotConfig(dir="/tmp/dfm-demo/backups"))
    snap = manager.snapshot(canonical, tracked, Reason.MANUAL)

    for report in compute_status(store):
        print(report.file.display_path, report.status.value)

    dest, size = manager.restore(snap.id, "/tmp/zshrc.restored", False)
```

`restore` verifies the blob's checksum and refuses to replace an existing
file unless `overwrite` is true. Errors are exceptions:
`SnapshotNotFoundError`, `DestExistsError`, `BlobMissingError` and
`ChecksumMismatchError` from `dfm.snapshot`; `AlreadyTrackedError`,
`NotTrackedError` and the others from `dfm.tracker`;
`NotInitializedError`, `LocalNonEmptyError` and `PathEscapeError` from
`dfm.vcs`; `ImportError_` from `dfm.stateimport`.

## What it does not do

- There is no command-line program; everything is a Python API.
- Remote state URLs (`libsql://`, `https://`, ...) are recognised but
  cannot be opened: without an auth token they raise `StoreError`, and
  with one they raise `StoreError` saying remote replication is not
  available. Use a local `file://` URL.
- No secret scanner is built in. `track` refuses a file only when you pass
  `TrackOptions(secret_scanner=...)` and it returns findings.
- Audit events are not written to a file or table; they are sent to the
  `dfm.audit` logger, with the action and fields in the record's
  `audit_action` and `audit_fields` attributes.
- There is no setup wizard; `dfm.prompt` supplies only the question helpers.

## Requirements

Python 3.10 or later and no third-party runtime dependencies. `dfm.vcs`
needs `git` on `PATH`. Install the `test` extra to run the tests with
pytest.