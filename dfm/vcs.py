"""The private backup repository, driven through the system git binary.

Git runs with a minimal environment: only a small allowlist of variables
(plus any ``GIT_*``) is passed on, so secrets from the surrounding process
never reach git subprocesses.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import datetime

_log = logging.getLogger(__name__)

_ENV_ALLOWLIST = ("PATH", "HOME", "USER", "LOGNAME", "SHELL", "SSH_AUTH_SOCK", "TMPDIR")

_FIELD_SEP = "\x1f"
_RECORD_END = "\x1e"


class VcsError(Exception):
    """Raised when a repository operation fails."""


class NotInitializedError(VcsError):
    """The local clone of the backup repo does not exist."""

    def __init__(self, path: str = "") -> None:
        message = "backup repo not initialized"
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class PathEscapeError(VcsError):
    """A relative path would land outside the repository."""

    def __init__(self, rel_path: str) -> None:
        super().__init__(f"relative path escapes repo: {rel_path}")
        self.rel_path = rel_path


class LocalNonEmptyError(VcsError):
    """The clone target exists and already holds files."""

    def __init__(self, path: str) -> None:
        super().__init__(f"local clone target is not empty: {path}")
        self.path = path


@dataclass
class CommitResult:
    """Outcome of Repo.commit_all; ``empty`` means there was nothing to commit."""

    empty: bool = False
    sha: str = ""
    branch: str = ""


@dataclass
class Commit:
    """One entry of the log."""

    sha: str
    author: str
    date: datetime | None
    subject: str


def _scrub_env() -> dict[str, str]:
    env = {key: os.environ[key] for key in _ENV_ALLOWLIST if os.environ.get(key)}
    env.update({k: v for k, v in os.environ.items() if k.startswith("GIT_")})
    return env


def _run_git(cwd: str | None, *args: str) -> str:
    """Run git with a scrubbed environment and return its stdout."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd or None,
            env=_scrub_env(),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise VcsError(f"git {' '.join(args)}: {exc}") from exc
    if proc.returncode != 0:
        raise VcsError(
            f"git {' '.join(args)}: exit status {proc.returncode}: {proc.stderr.strip()}"
        )
    return proc.stdout


def _parse_date(value: str) -> datetime | None:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class Repo:
    """A handle on a local clone of the backup repository."""

    def __init__(self, path: str, origin: str = "") -> None:
        self.path = path
        self.origin = origin

    def __repr__(self) -> str:
        return f"Repo(path={self.path!r}, origin={self.origin!r})"

    def _git(self, *args: str) -> str:
        return _run_git(self.path, *args)

    def _safe_join(self, rel_path: str) -> str:
        cleaned = os.path.normpath(rel_path)
        if os.path.isabs(cleaned):
            raise PathEscapeError(rel_path)
        if cleaned == ".." or cleaned.startswith(".." + os.sep):
            raise PathEscapeError(rel_path)
        return os.path.join(self.path, cleaned)

    def _prepare(self, rel_path: str) -> str:
        target = self._safe_join(rel_path)
        try:
            os.makedirs(os.path.dirname(target), mode=0o700, exist_ok=True)
        except OSError as exc:
            raise VcsError(f"mkdir: {exc}") from exc
        return target

    @staticmethod
    def _as_bytes(data: bytes | str) -> bytes:
        return data.encode("utf-8") if isinstance(data, str) else data

    def write_file(self, rel_path: str, data: bytes | str) -> None:
        """Write data to rel_path inside the repo, creating directories as needed."""
        target = self._prepare(rel_path)
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as fh:
            fh.write(self._as_bytes(data))

    def append_file(self, rel_path: str, data: bytes | str) -> None:
        """Append data to rel_path inside the repo, creating it if needed."""
        target = self._prepare(rel_path)
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        with os.fdopen(fd, "ab") as fh:
            fh.write(self._as_bytes(data))

    def add(self, *args: str) -> None:
        """Stage the given paths."""
        self._git("add", *args)

    def _current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def _branch_or_empty(self) -> str:
        try:
            return self._current_branch()
        except VcsError:
            return ""

    def commit_all(self, message: str) -> CommitResult:
        """Stage every change and commit it; a clean tree yields an empty result."""
        self._git("add", "-A")
        if not self._git("status", "--porcelain").strip():
            return CommitResult(empty=True, branch=self._branch_or_empty())
        self._git(
            "-c", "user.name=dotfiles",
            "-c", "user.email=dotfiles@local",
            "commit", "-m", message,
        )
        sha = self._git("rev-parse", "HEAD").strip()
        result = CommitResult(sha=sha, branch=self._branch_or_empty())
        _log.debug("git commit empty=%s sha=%s", result.empty, sha[:8])
        return result

    def fetch(self) -> None:
        """Fetch from origin."""
        self._git("fetch", "origin")

    def push(self) -> None:
        """Push the current branch to origin."""
        self._git("push", "-u", "origin", self._current_branch())

    def pull_fast_forward(self) -> None:
        """Fast-forward the current branch to its origin counterpart."""
        self._git("merge", "--ff-only", "origin/" + self._current_branch())

    def pull_keep_remote(self) -> None:
        """Reset the working tree to origin's version of the current branch."""
        self._git("reset", "--hard", "origin/" + self._current_branch())

    def push_force(self) -> None:
        """Force-push the current branch, guarded by --force-with-lease."""
        branch = self._current_branch()
        _log.warning("force-push with lease path=%s", self.path)
        self._git("push", "--force-with-lease", "-u", "origin", branch)

    def ahead_behind(self) -> tuple[int, int]:
        """Return how many commits the branch is ahead of and behind origin."""
        branch = self._current_branch()
        out = self._git("rev-list", "--left-right", "--count", f"{branch}...origin/{branch}")
        parts = out.split()
        if len(parts) != 2:
            raise VcsError(f"unexpected rev-list output: {out!r}")
        try:
            return int(parts[0]), int(parts[1])
        except ValueError as exc:
            raise VcsError(f"parse ahead/behind: {exc}") from exc

    def log(self, n: int = 50) -> list[Commit]:
        """Return up to n commits, newest first (n <= 0 means 50)."""
        if n <= 0:
            n = 50
        fmt = _FIELD_SEP.join(("%H", "%an <%ae>", "%aI", "%s")) + _RECORD_END
        out = self._git("log", "--no-color", "-n", str(n), "--pretty=format:" + fmt)
        commits: list[Commit] = []
        for record in out.split(_RECORD_END):
            record = record.lstrip("\n")
            if not record:
                continue
            parts = record.split(_FIELD_SEP, 3)
            if len(parts) < 4:
                continue
            sha, author, date, subject = parts
            commits.append(Commit(sha=sha, author=author, date=_parse_date(date), subject=subject))
        return commits


def open_repo(local: str, remote: str = "") -> Repo:
    """Return a handle for an existing local clone."""
    if not local:
        raise VcsError("vcs: empty repo.local")
    try:
        os.stat(os.path.join(local, ".git"))
    except FileNotFoundError as exc:
        raise NotInitializedError(local) from exc
    return Repo(local, remote)


def clone(remote: str, local: str) -> Repo:
    """Clone remote into local, which must be missing or empty."""
    if not local or not remote:
        raise VcsError("vcs: remote and local required")
    try:
        non_empty = bool(os.listdir(local))
    except OSError:
        non_empty = False
    if non_empty:
        raise LocalNonEmptyError(local)
    try:
        os.makedirs(os.path.dirname(local) or ".", mode=0o700, exist_ok=True)
    except OSError as exc:
        raise VcsError(f"mkdir parent: {exc}") from exc
    _run_git(None, "clone", remote, local)
    return Repo(local, remote)


def init_local(local: str, remote: str = "") -> Repo:
    """Create a new repo at local on branch main, with origin set to remote. No push."""
    if not local:
        raise VcsError("vcs: empty repo.local")
    try:
        os.makedirs(local, mode=0o700, exist_ok=True)
    except OSError as exc:
        raise VcsError(f"mkdir local: {exc}") from exc
    _run_git(local, "init", "-b", "main")
    if remote:
        _run_git(local, "remote", "add", "origin", remote)
    return Repo(local, remote)