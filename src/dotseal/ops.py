# src/dotseal/ops.py: User-facing operations.
# Dotseal ties configuration, the cache clone, the tracked-file store and the
# sync engine together. Every operation that touches the cache runs under the
# cache lock and starts by recovering from any interrupted run.

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .cache import CacheRepository
from .config import Config
from .crypto import EncryptionEngine
from .engine import SyncEngine, SyncResult, display_path
from .store import MANIFEST_NAME, FileStatus, TrackedFile, TrackedFileStore
from .util.errors import StateError
from .util.fs import sha256_bytes
from .util.lock import CacheLock
from .util.log import get_logger, path_context
from .util.paths import default_cache_dir, home_dir

logger = get_logger(__name__)

KEEP_LOCAL = "local"
KEEP_REMOTE = "remote"


class Dotseal:
    """
    Entry point for every operation on one configured cache.

    `branch` selects the upstream branch (a per-machine profile) for this
    instance only; it defaults to `upstream.branch` and is never written back
    to the configuration.
    """

    def __init__(
        self,
        config: Config,
        cache_dir: Optional[Path] = None,
        home: Optional[Path] = None,
        branch: Optional[str] = None,
    ):
        self.config = config
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.home = Path(home) if home else home_dir()
        self.branch = branch or config.upstream.branch

    def _store(self) -> TrackedFileStore:
        return TrackedFileStore(
            self.cache_dir, home=self.home, exclude=self.config.policy.exclude, branch=self.branch
        )

    def _open_cache(self) -> CacheRepository:
        return CacheRepository.open(
            self.cache_dir,
            branch=self.branch,
            network_timeout=self.config.sync.network_timeout,
        )

    @contextmanager
    def _session(self) -> Iterator[Tuple[CacheRepository, TrackedFileStore]]:
        with CacheLock(self.cache_dir):
            cache = self._open_cache()
            cache.recover()
            cache.switch_branch(self.branch)
            yield cache, self._store()

    # --- Operations ---

    def init(self) -> CacheRepository:
        """Clone the upstream into the cache directory, or reuse an existing clone of it."""
        upstream = self.config.upstream
        with CacheLock(self.cache_dir):
            return CacheRepository.clone(
                self.cache_dir,
                upstream.url,
                key_file=upstream.key_file,
                branch=self.branch,
                network_timeout=self.config.sync.network_timeout,
            )

    def track(self, user_path: Path) -> TrackedFile:
        with self._session() as (_, store):
            tracked = store.track(user_path)
        logger.info("Tracking %s; it will be sealed on the next sync.", tracked.user_path)
        return tracked

    def untrack(self, user_path: Path) -> TrackedFile:
        """
        Stop tracking a file and remove its blob from the repository.

        The removal is committed immediately and published by the next sync.
        The user's file is never deleted.
        """
        with self._session() as (cache, store):
            tracked, committed = store.untrack(user_path)
            if committed:
                cache.remove(tracked.repo_path)
                shown = display_path(tracked.user_path, self.home)
                cache.commit(
                    [tracked.repo_path, MANIFEST_NAME],
                    f"dotseal: update 1 file(s)\n\ndeleted: {shown}",
                )
            store.save_state()
        logger.info("Stopped tracking %s.", tracked.user_path)
        return tracked

    def sync(self) -> SyncResult:
        with CacheLock(self.cache_dir):
            cache = self._open_cache()
            cache.recover()
            cache.switch_branch(self.branch)
            with EncryptionEngine(self.config.passphrase) as crypto:
                engine = SyncEngine(cache, self._store(), crypto, workers=self.config.sync.workers)
                return engine.sync()

    def status(self) -> List[Tuple[TrackedFile, FileStatus]]:
        with self._session() as (_, store):
            return store.status()

    def manifest(self) -> List[TrackedFile]:
        with self._session() as (_, store):
            return store.manifest()

    def branches(self) -> List[str]:
        """Branches known to the cache, as of the last fetch. Read-only: nothing is checked out."""
        with CacheLock(self.cache_dir):
            return self._open_cache().branches()

    def current_branch(self) -> str:
        return self.branch

    def resolve(self, user_path: Path, keep: str) -> TrackedFile:
        """
        Resolve a recorded conflict.

        keep="remote" overwrites the user's file with the repository version,
        or stops tracking it if the upstream no longer does; keep="local"
        leaves the file alone and seals it on the next sync.
        """
        if keep not in (KEEP_LOCAL, KEEP_REMOTE):
            raise ValueError(f"keep must be '{KEEP_LOCAL}' or '{KEEP_REMOTE}', not '{keep}'")
        with self._session() as (cache, store):
            tracked = store.get(user_path)
            state = store.state
            if tracked.repo_path not in state.conflicts:
                raise StateError(f"'{tracked.user_path}' has no unresolved conflict.")

            if keep == KEEP_REMOTE and tracked.repo_path not in store.read_manifest():
                # Upstream untracked it: stop tracking here too, keep the file.
                state.forget(tracked.repo_path)
            elif keep == KEEP_REMOTE:
                token = path_context.set(str(tracked.user_path))
                try:
                    with EncryptionEngine(self.config.passphrase) as crypto:
                        plaintext = crypto.open(cache.read(tracked.repo_path))
                    store.materialize(tracked, plaintext)
                finally:
                    path_context.reset(token)
                state.synced[tracked.repo_path] = sha256_bytes(plaintext)
                state.pending.discard(tracked.repo_path)
            else:
                state.pending.add(tracked.repo_path)

            state.conflicts.discard(tracked.repo_path)
            store.save_state()
        logger.info("Resolved conflict on %s by keeping the %s version.", tracked.user_path, keep)
        return store.tracked_file(tracked.repo_path)
