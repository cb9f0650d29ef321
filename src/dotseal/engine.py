# src/dotseal/engine.py: The synchronization engine.
# SyncEngine drives one sync through Fetching -> Reconciling -> Applying ->
# Committing -> Pushing. Git operations are strictly serialized; decrypting and
# materializing independent files runs on a thread pool. Per-file failures are
# collected in the SyncResult, while failures that affect the shared repository
# abort the sync and leave the cache at its last commit.

import enum
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .cache import CacheRepository, Conflicted
from .crypto import EncryptionEngine
from .store import MANIFEST_NAME, TrackedFile, TrackedFileStore, merge_manifests, parse_manifest
from .util.errors import (
    AuthenticationFailed,
    DotsealError,
    ExitCode,
    NotFound,
    RejectedNonFastForward,
    StateError,
)
from .util.fs import sha256_bytes
from .util.log import get_logger, path_context

logger = get_logger(__name__)

PUSH_ATTEMPTS = 2


class SyncPhase(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    COMMITTING = "committing"
    PUSHING = "pushing"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome of one sync. Paths are user paths."""
    applied: Set[Path] = field(default_factory=set)
    conflicts: Set[Path] = field(default_factory=set)
    errors: List[Tuple[Path, Exception]] = field(default_factory=list)
    committed: Optional[str] = None
    pushed: bool = False

    def exit_code(self) -> ExitCode:
        if any(isinstance(err, AuthenticationFailed) for _, err in self.errors):
            return ExitCode.AUTHENTICATION_FAILED
        if self.conflicts:
            return ExitCode.CONFLICTS
        if self.errors:
            return ExitCode.STATE
        return ExitCode.OK


class _Outcome(enum.Enum):
    APPLIED = "applied"
    ADOPTED = "adopted"
    CONFLICT = "conflict"
    ERROR = "error"


def display_path(path: Path, home: Path) -> str:
    """User path as written into commit messages: home-relative where possible."""
    if path.is_relative_to(home):
        return "~/" + path.relative_to(home).as_posix()
    return path.as_posix()


class SyncEngine:
    """
    Reconciles the user's tracked files with the upstream through the cache.

    The engine borrows the cache for the duration of one sync; the caller holds
    the cache lock.
    """

    def __init__(
        self,
        cache: CacheRepository,
        store: TrackedFileStore,
        crypto: EncryptionEngine,
        workers: int = 4,
    ):
        self.cache = cache
        self.store = store
        self.crypto = crypto
        self.workers = workers
        self.phase = SyncPhase.IDLE
        self.failure: Optional[Exception] = None

    def _enter(self, phase: SyncPhase) -> None:
        self.phase = phase
        logger.info("Sync phase: %s", phase.value)

    def sync(self) -> SyncResult:
        """
        Run one full sync.

        A push rejected because the upstream moved triggers exactly one more
        round trip; any other failure is raised after the cache has been
        returned to its last commit.
        """
        result = SyncResult()
        self.failure = None
        self.cache.recover()
        self.store.reload()
        try:
            for attempt in range(1, PUSH_ATTEMPTS + 1):
                try:
                    self._round(result)
                    break
                except RejectedNonFastForward:
                    if attempt == PUSH_ATTEMPTS:
                        raise
                    logger.warning("Upstream moved while syncing; fetching once more.")
        except (DotsealError, OSError) as e:
            self.failure = e
            self._enter(SyncPhase.FAILED)
            logger.error("Sync failed: %s", e)
            self.cache.recover()
            raise
        self._enter(SyncPhase.IDLE)
        return result

    def _round(self, result: SyncResult) -> None:
        self._enter(SyncPhase.FETCHING)
        remote = self.cache.fetch()

        self._enter(SyncPhase.RECONCILING)
        remote_changed, conflicted = self._reconcile(self.cache.local_head(), remote)

        self._enter(SyncPhase.APPLYING)
        self._apply(remote_changed, conflicted, result)

        self._enter(SyncPhase.COMMITTING)
        self._commit(result)

        head = self.cache.local_head()
        if head is not None and head != remote:
            self._enter(SyncPhase.PUSHING)
            self.cache.push()
            result.pushed = True

    # --- Reconciling ---

    def _manifest_at(self, commit: Optional[str]) -> Dict[str, str]:
        if commit is None:
            return {}
        data = self.cache.show(commit, MANIFEST_NAME)
        if data is None:
            return {}
        return parse_manifest(data.decode("utf-8"))

    def _reconcile(self, local: Optional[str], remote: Optional[str]) -> Tuple[Set[str], Set[str]]:
        """
        Bring upstream history into the cache.

        Returns the repository paths changed upstream and the paths changed on
        both sides of a merge.
        """
        if remote is None or remote == local:
            logger.info("Upstream has no new commits.")
            return set(), set()

        if not self.cache.diverged_from(remote):
            if local is not None and self.cache.is_ancestor(remote, local):
                logger.info("Local history is ahead of upstream.")
                return set(), set()
            changed = self.cache.changed_paths(local, remote)
            self.cache.fast_forward(remote)
            logger.info("Fast-forwarded to %s.", remote[:12])
            return changed, set()

        base = self.cache.merge_base(local, remote)
        local_manifest = self.store.read_manifest()
        outcome = self.cache.merge(remote, merged_elsewhere=[MANIFEST_NAME])
        try:
            merged = merge_manifests(self._manifest_at(base), local_manifest, self._manifest_at(remote))
            self.store.write_manifest(merged)
            self.cache.commit([MANIFEST_NAME], f"dotseal: merge {remote[:12]}")
        except (DotsealError, OSError):
            self.cache.abort_merge()
            raise

        conflicted = set(outcome.paths) if isinstance(outcome, Conflicted) else set()
        return self.cache.changed_paths(base, remote), conflicted

    # --- Applying ---

    def _apply(self, remote_changed: Set[str], conflicted: Set[str], result: SyncResult) -> None:
        state = self.store.state
        manifest = self.store.read_manifest()

        for repo_path in sorted(remote_changed - set(manifest) - {MANIFEST_NAME}):
            if repo_path in state.pending or repo_path not in state.synced:
                continue
            if self._edited_since_sync(repo_path) or repo_path in conflicted:
                state.conflicts.add(repo_path)
                logger.warning(
                    "'%s' was untracked upstream but changed locally; left for resolve.", repo_path
                )
                continue
            state.forget(repo_path)
            logger.warning(
                "'%s' is no longer tracked upstream; the local file is left in place.", repo_path
            )

        for repo_path in sorted(state.conflicts - set(manifest)):
            result.conflicts.add(self.store.tracked_file(repo_path).user_path)

        todo: List[Tuple[TrackedFile, str]] = []
        for repo_path in sorted(manifest):
            try:
                tracked = self.store.tracked_file(repo_path)
            except StateError as e:
                result.errors.append((Path(repo_path), e))
                continue
            if repo_path in conflicted:
                state.conflicts.add(repo_path)
            if repo_path in state.conflicts:
                result.conflicts.add(tracked.user_path)
                continue
            if repo_path in state.pending:
                if repo_path in remote_changed:
                    state.conflicts.add(repo_path)
                    result.conflicts.add(tracked.user_path)
                continue
            if tracked.content_hash is not None and repo_path not in remote_changed:
                continue
            todo.append((tracked, manifest[repo_path]))

        if todo:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                outcomes = list(pool.map(lambda item: self._open_one(*item), todo))
        else:
            outcomes = []

        for (tracked, _), (outcome, payload) in zip(todo, outcomes):
            repo_path = tracked.repo_path
            if outcome is _Outcome.APPLIED:
                state.synced[repo_path] = payload
                result.applied.add(tracked.user_path)
            elif outcome is _Outcome.ADOPTED:
                state.synced[repo_path] = payload
            elif outcome is _Outcome.CONFLICT:
                state.conflicts.add(repo_path)
                result.conflicts.add(tracked.user_path)
                logger.warning("'%s' changed both locally and upstream; left untouched.", tracked.user_path)
            else:
                state.synced.pop(repo_path, None)
                result.errors.append((tracked.user_path, payload))
                logger.warning("Could not apply '%s': %s", tracked.user_path, payload)

        self.store.save_state()

    def _edited_since_sync(self, repo_path: str) -> bool:
        tracked = self.store.tracked_file(repo_path)
        local_hash = self.store.local_hash(tracked)
        return local_hash is not None and local_hash != tracked.content_hash

    def _open_one(self, tracked: TrackedFile, digest: str):
        """Decrypt one blob and materialize it unless that would lose local edits."""
        token = path_context.set(str(tracked.user_path))
        try:
            local_hash = self.store.local_hash(tracked)
            if tracked.content_hash is not None and local_hash not in (None, tracked.content_hash):
                return _Outcome.CONFLICT, None

            blob = self.cache.read(tracked.repo_path)
            if sha256_bytes(blob) != digest:
                raise AuthenticationFailed(
                    f"Blob for '{tracked.user_path}' does not match its manifest entry."
                )
            plaintext = self.crypto.open(blob)
            new_hash = sha256_bytes(plaintext)

            if local_hash == new_hash:
                return _Outcome.ADOPTED, new_hash
            if tracked.content_hash is None and local_hash is not None:
                return _Outcome.CONFLICT, None

            self.store.materialize(tracked, plaintext)
            logger.debug("Materialized %s", tracked.user_path)
            return _Outcome.APPLIED, new_hash
        except DotsealError as e:
            return _Outcome.ERROR, e
        except OSError as e:
            return _Outcome.ERROR, NotFound(f"Could not write '{tracked.user_path}': {e.strerror}")
        finally:
            path_context.reset(token)

    # --- Committing ---

    def _commit(self, result: SyncResult) -> None:
        state = self.store.state
        manifest = self.store.read_manifest()
        changes: List[Tuple[TrackedFile, str, str]] = []

        for tracked in self.store.manifest():
            repo_path = tracked.repo_path
            if repo_path in state.conflicts:
                continue
            pending = repo_path in state.pending
            if not pending and tracked.content_hash is None:
                continue

            token = path_context.set(str(tracked.user_path))
            try:
                plaintext = self.store.read_local(tracked)
            except NotFound as e:
                result.errors.append((tracked.user_path, e))
                logger.warning("Skipping missing file '%s'.", tracked.user_path)
                continue
            finally:
                path_context.reset(token)

            plaintext_hash = sha256_bytes(plaintext)
            if not pending and plaintext_hash == tracked.content_hash:
                continue

            blob = self.crypto.seal(plaintext)
            self.cache.write(repo_path, blob)
            kind = "modified" if repo_path in manifest else "new"
            manifest[repo_path] = sha256_bytes(blob)
            changes.append((tracked, plaintext_hash, kind))

        if not changes:
            logger.info("No local changes to commit.")
            return

        self.store.write_manifest(manifest)
        home = self.store.home
        summary = "\n".join(
            f"{kind}: {display_path(tracked.user_path, home)}" for tracked, _, kind in changes
        )
        message = f"dotseal: update {len(changes)} file(s)\n\n{summary}"
        result.committed = self.cache.commit(
            [tracked.repo_path for tracked, _, _ in changes] + [MANIFEST_NAME], message
        )

        for tracked, plaintext_hash, _ in changes:
            state.synced[tracked.repo_path] = plaintext_hash
            state.pending.discard(tracked.repo_path)
        self.store.save_state()
