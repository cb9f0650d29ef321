"""Tracked files: where they live on disk and where their blobs live in the cache.

Every tracked file has a user path (where the plaintext lives) and a repo path
(where its blob lives inside the cache). The repo path is derived from the
user path alone: files under the home directory map to
``files/home/<relative path>.age`` and everything else to
``files/root/<absolute path>.age``, so two machines with different user names
converge on the same entry for ``~/.bashrc``.

The set of tracked files is the manifest, a text file at the root of the cache
with one ``<repo path>\\t<blob sha256>`` line per file, sorted by repo path. The
digest is taken over the sealed blob, never over plaintext.
"""

import enum
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from .policy import check_trackable
from .state import SyncState, state_file_name
from .util.errors import AlreadyTracked, NotFound, NotTracked, PolicyViolationError, StateError
from .util.fs import atomic_write, sha256_bytes
from .util.paths import absolute_user_path, home_dir

MANIFEST_NAME = ".dotseal-manifest"
MANIFEST_HEADER = "# dotseal manifest v1"
FILES_DIR = "files"
HOME_PREFIX = f"{FILES_DIR}/home/"
ROOT_PREFIX = f"{FILES_DIR}/root/"
BLOB_SUFFIX = ".age"

NEW_FILE_MODE = 0o600


@dataclass(frozen=True)
class TrackedFile:
    user_path: Path
    repo_path: str
    content_hash: Optional[str] = None


class FileStatus(enum.Enum):
    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    MISSING = "missing"
    PENDING = "pending"
    CONFLICTED = "conflicted"
    NOT_MATERIALIZED = "not materialized"


# --- Path derivation ---

def repo_path_for(user_path: Path, home: Path) -> str:
    """Deterministic, collision-free repository path for a user path."""
    user_path = Path(user_path)
    if not user_path.is_absolute():
        raise ValueError(f"'{user_path}' is not absolute")
    if user_path.is_relative_to(home) and user_path != home:
        return HOME_PREFIX + user_path.relative_to(home).as_posix() + BLOB_SUFFIX
    return ROOT_PREFIX + user_path.as_posix().lstrip("/") + BLOB_SUFFIX


def user_path_for(repo_path: str, home: Path) -> Path:
    """Inverse of repo_path_for. Rejects anything that could escape its root."""
    if not repo_path.endswith(BLOB_SUFFIX):
        raise StateError(f"Malformed repository path '{repo_path}'.")
    if repo_path.startswith(HOME_PREFIX):
        root, rest = home, repo_path[len(HOME_PREFIX):-len(BLOB_SUFFIX)]
    elif repo_path.startswith(ROOT_PREFIX):
        root, rest = Path("/"), repo_path[len(ROOT_PREFIX):-len(BLOB_SUFFIX)]
    else:
        raise StateError(f"Malformed repository path '{repo_path}'.")
    parts = PurePosixPath(rest).parts
    if not parts or any(part in ("..", ".", "") for part in parts) or rest.startswith("/"):
        raise StateError(f"Unsafe repository path '{repo_path}'.")
    return root.joinpath(*parts)


# --- Manifest codec ---

def parse_manifest(text: str) -> Dict[str, str]:
    """Parse manifest text into {repo_path: blob digest}."""
    entries: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip() or line.startswith("#"):
            continue
        try:
            quoted_path, digest = line.split("\t")
        except ValueError:
            raise StateError(f"Malformed manifest line {lineno}.") from None
        entries[unquote(quoted_path)] = digest.strip()
    return entries


def render_manifest(entries: Dict[str, str]) -> str:
    lines = [MANIFEST_HEADER]
    for repo_path in sorted(entries):
        lines.append(f"{quote(repo_path, safe='/._-~+@=,')}\t{entries[repo_path]}")
    return "\n".join(lines) + "\n"


def merge_manifests(
    base: Dict[str, str], local: Dict[str, str], remote: Dict[str, str]
) -> Dict[str, str]:
    """
    Entry-level three-way merge.

    An entry changed upstream takes the upstream value (including removal),
    matching the blob the merge took; anything else keeps the local value.
    """
    merged: Dict[str, str] = {}
    for repo_path in set(base) | set(local) | set(remote):
        if remote.get(repo_path) != base.get(repo_path):
            value = remote.get(repo_path)
        else:
            value = local.get(repo_path)
        if value is not None:
            merged[repo_path] = value
    return merged


class TrackedFileStore:
    """
    Maps user files to blobs in the cache and exposes plaintext on disk.

    The store reads and writes the manifest in the cache working tree and the
    per-machine SyncState of the checked-out branch in the clone's git
    directory. It never talks to git.
    """

    def __init__(
        self,
        repo_dir: Path,
        home: Optional[Path] = None,
        exclude: Optional[List[str]] = None,
        branch: str = "main",
    ):
        self.repo_dir = Path(repo_dir)
        self.home = Path(home) if home else home_dir()
        self.exclude = list(exclude or [])
        self.manifest_path = self.repo_dir / MANIFEST_NAME
        self.state_path = self.repo_dir / ".git" / state_file_name(branch)
        self._state: Optional[SyncState] = None

    # --- State ---

    @property
    def state(self) -> SyncState:
        if self._state is None:
            self._state = SyncState.load(self.state_path)
        return self._state

    def save_state(self) -> None:
        self.state.save(self.state_path)

    def reload(self) -> None:
        self._state = None

    # --- Manifest ---

    def read_manifest(self) -> Dict[str, str]:
        if not self.manifest_path.exists():
            return {}
        return parse_manifest(self.manifest_path.read_text(encoding="utf-8"))

    def write_manifest(self, entries: Dict[str, str]) -> None:
        atomic_write(self.manifest_path, render_manifest(entries).encode("utf-8"))

    def tracked_file(self, repo_path: str) -> TrackedFile:
        return TrackedFile(
            user_path=user_path_for(repo_path, self.home),
            repo_path=repo_path,
            content_hash=self.state.synced.get(repo_path),
        )

    def manifest(self) -> List[TrackedFile]:
        """All tracked files, committed, pending or in conflict, sorted by repo path."""
        repo_paths = set(self.read_manifest()) | self.state.pending | self.state.conflicts
        return [self.tracked_file(p) for p in sorted(repo_paths)]

    def is_tracked(self, repo_path: str) -> bool:
        state = self.state
        return repo_path in self.read_manifest() or repo_path in state.pending or repo_path in state.conflicts

    def get(self, user_path: Path) -> TrackedFile:
        user_path = absolute_user_path(user_path)
        repo_path = repo_path_for(user_path, self.home)
        if not self.is_tracked(repo_path):
            raise NotTracked(f"'{user_path}' is not tracked.")
        return self.tracked_file(repo_path)

    # --- Registration ---

    def track(self, user_path: Path) -> TrackedFile:
        """
        Register a file for tracking. It is sealed and committed by the next sync.

        Raises:
            NotFound: the file does not exist or is not a regular file.
            AlreadyTracked: the file is already tracked.
            PolicyViolationError: the path is excluded by policy, or its blob
                would nest inside (or contain) the blob of another tracked file.
        """
        user_path = absolute_user_path(user_path)
        if not user_path.is_file():
            raise NotFound(f"'{user_path}' does not exist or is not a regular file.")
        check_trackable(user_path, self.home, self.exclude)
        repo_path = repo_path_for(user_path, self.home)
        if self.is_tracked(repo_path):
            raise AlreadyTracked(f"'{user_path}' is already tracked.")
        self._check_no_clash(repo_path)
        self.state.pending.add(repo_path)
        self.save_state()
        return self.tracked_file(repo_path)

    def _check_no_clash(self, repo_path: str) -> None:
        # ~/x.age/y would need files/home/x.age/ as a directory while ~/x owns it as a blob.
        known = set(self.read_manifest()) | self.state.pending | self.state.conflicts
        for other in sorted(known):
            if other.startswith(repo_path + "/") or repo_path.startswith(other + "/"):
                raise PolicyViolationError(
                    f"'{user_path_for(repo_path, self.home)}' cannot be tracked alongside "
                    f"'{user_path_for(other, self.home)}': their blobs would collide."
                )

    def untrack(self, user_path: Path) -> Tuple[TrackedFile, bool]:
        """
        Stop tracking a file. The user's file is left in place.

        Returns the file and whether a committed manifest entry was removed
        (in which case the caller must commit the manifest and blob removal).
        """
        tracked = self.get(user_path)
        entries = self.read_manifest()
        committed = tracked.repo_path in entries
        if committed:
            del entries[tracked.repo_path]
            self.write_manifest(entries)
        self.state.forget(tracked.repo_path)
        return tracked, committed

    # --- Plaintext on disk ---

    def read_local(self, tracked: TrackedFile) -> bytes:
        try:
            return tracked.user_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(f"'{tracked.user_path}' is missing.") from None

    def local_hash(self, tracked: TrackedFile) -> Optional[str]:
        try:
            return sha256_bytes(self.read_local(tracked))
        except NotFound:
            return None

    def materialize(self, tracked: TrackedFile, plaintext: bytes) -> None:
        """
        Atomically replace the user's file with `plaintext`.

        A symlinked user path (stow-style setups) is written through: the link
        stays and its target gets the new content.
        """
        target = tracked.user_path
        if target.is_symlink():
            target = Path(os.path.realpath(target))
        mode = None if target.exists() else NEW_FILE_MODE
        atomic_write(target, plaintext, mode=mode)

    def status(self) -> List[Tuple[TrackedFile, FileStatus]]:
        """Local status of every tracked file. Touches neither git nor the network."""
        results = []
        for tracked in self.manifest():
            repo_path = tracked.repo_path
            local = self.local_hash(tracked)
            if repo_path in self.state.conflicts:
                status = FileStatus.CONFLICTED
            elif repo_path in self.state.pending:
                status = FileStatus.PENDING
            elif local is None:
                status = FileStatus.MISSING
            elif tracked.content_hash is None:
                status = FileStatus.NOT_MATERIALIZED
            elif local != tracked.content_hash:
                status = FileStatus.MODIFIED
            else:
                status = FileStatus.UNCHANGED
            results.append((tracked, status))
        return results
