# src/dotseal/cache.py: The local clone of the upstream repository.
# CacheRepository owns the on-disk git object store and working tree. It
# clones, fetches, fast-forwards, merges at blob granularity, commits exactly
# the paths it is given, and pushes without ever forcing. Network commands are
# bounded by a timeout and surface TransportError / AuthError.

import shutil
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Set, Union

from .gitwrap import (
    git_branch_names,
    git_changed_paths,
    git_check_branch_name,
    git_current_branch,
    git_init,
    git_is_clean,
    git_merge_base,
    git_remote_url,
    git_rev_parse,
    git_show_file,
    run_git,
    ssh_command,
)
from .util.errors import CacheExistsError, DotsealError, GitError, NotFound
from .util.fs import atomic_write
from .util.log import get_logger

logger = get_logger(__name__)

REMOTE = "origin"


@dataclass(frozen=True)
class Clean:
    """Every path changed upstream could be taken without a conflict."""


@dataclass(frozen=True)
class Conflicted:
    """Paths changed on both sides since the merge base."""
    paths: FrozenSet[str]


MergeOutcome = Union[Clean, Conflicted]


class CacheRepository:
    """A git working tree whose tracked content is always ciphertext at rest."""

    def __init__(self, path: Path, branch: str = "main", network_timeout: int = 60):
        self.path = Path(path)
        self.branch = branch
        self.network_timeout = network_timeout

    # --- Lifecycle ---

    @classmethod
    def open(cls, path: Path, branch: str = "main", network_timeout: int = 60) -> "CacheRepository":
        path = Path(path)
        if not (path / ".git").is_dir():
            raise NotFound(f"No dotseal cache at '{path}'. Run 'dotseal init' first.")
        return cls(path, branch, network_timeout)

    @classmethod
    def clone(
        cls,
        path: Path,
        upstream_url: str,
        key_file: Optional[Path] = None,
        branch: str = "main",
        network_timeout: int = 60,
    ) -> "CacheRepository":
        """
        Create the local clone at `path`.

        An existing clone of the same upstream is reused. Anything else already
        at `path` is never overwritten.

        Raises:
            CacheExistsError: `path` holds an unrelated repository or files.
            TransportError, AuthError: the upstream could not be fetched.
        """
        path = Path(path)
        if (path / ".git").is_dir():
            existing_url = git_remote_url(path, REMOTE)
            if existing_url == upstream_url:
                logger.info("Cache at %s already tracks %s, reusing it.", path, upstream_url)
                return cls(path, branch, network_timeout)
            raise CacheExistsError(
                f"'{path}' already contains a repository for '{existing_url}', "
                f"not '{upstream_url}'."
            )
        if path.exists() and any(path.iterdir()):
            raise CacheExistsError(f"'{path}' exists and is not empty.")

        created = not path.exists()
        path.mkdir(parents=True, exist_ok=True)
        repo = cls(path, branch, network_timeout)
        try:
            git_init(path, branch)
            run_git(["remote", "add", REMOTE, upstream_url], cwd=path)
            ssh = ssh_command(key_file)
            if ssh:
                run_git(["config", "core.sshCommand", ssh], cwd=path)
            repo._ensure_identity()
            remote_head = repo.fetch()
            if remote_head is not None:
                run_git(["reset", "--hard", "--quiet", remote_head], cwd=path)
            logger.info("Cloned %s into %s.", upstream_url, path)
        except DotsealError:
            if created:
                shutil.rmtree(path, ignore_errors=True)
            else:
                shutil.rmtree(path / ".git", ignore_errors=True)
            raise
        return repo

    def _ensure_identity(self) -> None:
        result = run_git(["config", "user.email"], cwd=self.path, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            run_git(["config", "user.name", "dotseal"], cwd=self.path)
            run_git(["config", "user.email", f"dotseal@{socket.gethostname()}"], cwd=self.path)

    @property
    def git_dir(self) -> Path:
        return self.path / ".git"

    def recover(self) -> None:
        """
        Return the working tree to the last commit.

        Anything uncommitted here is ciphertext staged by an interrupted run;
        the plaintext it came from still lives in the user's files.
        """
        if (self.git_dir / "MERGE_HEAD").exists():
            logger.warning("Aborting merge left behind by an interrupted sync.")
            run_git(["merge", "--abort"], cwd=self.path, check=False)
        if self.local_head() is None:
            run_git(["read-tree", "--empty"], cwd=self.path)
            return
        if not git_is_clean(self.path):
            logger.warning("Discarding uncommitted changes left behind by an interrupted run.")
            run_git(["reset", "--hard", "--quiet", "HEAD"], cwd=self.path)

    # --- Queries ---

    def local_head(self) -> Optional[str]:
        return git_rev_parse(self.path, "HEAD")

    def remote_head(self) -> Optional[str]:
        return git_rev_parse(self.path, f"refs/remotes/{REMOTE}/{self.branch}")

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = run_git(
            ["merge-base", "--is-ancestor", ancestor, descendant], cwd=self.path, check=False
        )
        return result.returncode == 0

    def diverged_from(self, remote_head: Optional[str]) -> bool:
        """True when a merge is needed to incorporate `remote_head`."""
        local = self.local_head()
        if remote_head is None or local is None or local == remote_head:
            return False
        return not (self.is_ancestor(local, remote_head) or self.is_ancestor(remote_head, local))

    def current_branch(self) -> Optional[str]:
        return git_current_branch(self.path)

    def branches(self) -> List[str]:
        """Branches known to the cache: local ones and those last fetched from upstream."""
        return git_branch_names(self.path, REMOTE)

    def merge_base(self, commit1: str, commit2: str) -> Optional[str]:
        return git_merge_base(self.path, commit1, commit2)

    def changed_paths(self, old: Optional[str], new: str) -> Set[str]:
        return set(git_changed_paths(self.path, old, new))

    def show(self, commit: str, repo_path: str) -> Optional[bytes]:
        return git_show_file(self.path, commit, repo_path)

    def read(self, repo_path: str) -> bytes:
        try:
            return (self.path / repo_path).read_bytes()
        except FileNotFoundError:
            raise NotFound(f"'{repo_path}' is missing from the cache.") from None

    def write(self, repo_path: str, data: bytes) -> None:
        atomic_write(self.path / repo_path, data)

    def remove(self, repo_path: str) -> None:
        target = self.path / repo_path
        target.unlink(missing_ok=True)
        parent = target.parent
        while parent != self.path and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    # --- Network ---

    def fetch(self) -> Optional[str]:
        """Update remote-tracking state; returns the remote branch head, if any."""
        run_git(
            ["fetch", "--prune", "--quiet", REMOTE],
            cwd=self.path,
            timeout=self.network_timeout,
            network=True,
        )
        return self.remote_head()

    def push(self, branch: Optional[str] = None) -> None:
        """Push HEAD to `branch` (the configured branch by default). Never forces."""
        branch = branch or self.branch
        run_git(
            ["push", "--quiet", REMOTE, f"HEAD:refs/heads/{branch}"],
            cwd=self.path,
            timeout=self.network_timeout,
            network=True,
        )
        logger.info("Pushed %s to %s/%s.", self.local_head(), REMOTE, branch)

    # --- History ---

    def switch_branch(self, branch: str) -> None:
        """
        Point the working tree at `branch` and make it the branch pushed to.

        An existing local branch is checked out as is. Otherwise the branch
        starts from the upstream branch of the same name when one has been
        fetched, or empty. Call recover() first; the tree must be clean.
        """
        self.branch = branch
        if self.current_branch() == branch:
            return
        git_check_branch_name(self.path, branch)
        if git_rev_parse(self.path, f"refs/heads/{branch}") is not None:
            run_git(["checkout", "--quiet", branch], cwd=self.path)
        elif self.remote_head() is not None:
            run_git(["checkout", "--quiet", "-b", branch, f"refs/remotes/{REMOTE}/{branch}"], cwd=self.path)
        elif self.local_head() is None:
            run_git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=self.path)
        else:
            run_git(["checkout", "--quiet", "--orphan", branch], cwd=self.path)
            run_git(["rm", "-r", "--quiet", "-f", "--ignore-unmatch", "."], cwd=self.path)
        logger.info("Cache switched to branch %s.", branch)

    def fast_forward(self, remote_head: str) -> None:
        if self.local_head() is None:
            run_git(["reset", "--hard", "--quiet", remote_head], cwd=self.path)
        else:
            run_git(["merge", "--ff-only", "--quiet", remote_head], cwd=self.path)

    def merge(self, remote_head: str, merged_elsewhere: Iterable[str] = ()) -> MergeOutcome:
        """
        Three-way merge at blob granularity.

        Starts a merge that keeps the local tree, then takes the upstream
        version of every path changed upstream. Paths changed on both sides are
        reported as Conflicted; nothing is ever merged textually. The merge is
        left in progress so the caller can stage further paths before commit();
        paths in `merged_elsewhere` are left for the caller to resolve.
        """
        local = self.local_head()
        if local is None:
            raise GitError("Cannot merge into an empty branch.")
        reserved = set(merged_elsewhere)
        base = self.merge_base(local, remote_head)
        local_changed = self.changed_paths(base, local)
        remote_changed = self.changed_paths(base, remote_head) - reserved

        run_git(
            ["merge", "-s", "ours", "--no-commit", "--no-ff",
             "--allow-unrelated-histories", "--quiet", remote_head],
            cwd=self.path,
        )

        present = [p for p in sorted(remote_changed) if self.show(remote_head, p) is not None]
        removed = sorted(remote_changed - set(present))
        if present:
            run_git(["checkout", remote_head, "--"] + present, cwd=self.path)
        for repo_path in removed:
            run_git(["rm", "--quiet", "--cached", "--ignore-unmatch", "--", repo_path], cwd=self.path)
            self.remove(repo_path)

        conflicted = frozenset((local_changed - reserved) & remote_changed)
        if conflicted:
            logger.warning("Merge with %s conflicts on %d path(s).", remote_head[:12], len(conflicted))
            return Conflicted(conflicted)
        return Clean()

    def abort_merge(self) -> None:
        run_git(["merge", "--abort"], cwd=self.path, check=False)

    def commit(self, paths: Iterable[str], message: str) -> Optional[str]:
        """
        Stage exactly `paths` and commit.

        Returns the new commit id, or None if there was nothing to commit.
        """
        for repo_path in sorted(set(paths)):
            if (self.path / repo_path).exists():
                run_git(["add", "--", repo_path], cwd=self.path)
            else:
                run_git(["rm", "--quiet", "--cached", "--ignore-unmatch", "--", repo_path], cwd=self.path)

        merging = (self.git_dir / "MERGE_HEAD").exists()
        if not merging and self.local_head() is not None:
            staged = run_git(["diff", "--cached", "--quiet"], cwd=self.path, check=False)
            if staged.returncode == 0:
                return None
        if not merging and self.local_head() is None:
            staged = run_git(["ls-files", "--cached"], cwd=self.path)
            if not staged.stdout.strip():
                return None

        run_git(["commit", "--quiet", "--no-verify", "-m", message], cwd=self.path)
        head = self.local_head()
        logger.info("Committed %s.", head)
        return head

