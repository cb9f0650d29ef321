# tests/unit/test_cache.py: Tests for the cache repository against a local bare remote.

import subprocess
from pathlib import Path

import pytest

from dotseal.cache import CacheRepository, Clean, Conflicted
from dotseal.util.errors import CacheExistsError, GitError, NotFound, RejectedNonFastForward, TransportError


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


@pytest.fixture
def clone_factory(tmp_path: Path, bare_remote: Path):
    def _clone(name: str) -> CacheRepository:
        return CacheRepository.clone(tmp_path / name, str(bare_remote))
    return _clone


def test_clone_empty_remote(clone_factory):
    repo = clone_factory("a")
    assert repo.local_head() is None
    assert repo.fetch() is None
    assert git(repo.path, "symbolic-ref", "HEAD").strip() == "refs/heads/main"


def test_commit_push_and_fast_forward(clone_factory):
    """Tests that a commit pushed by one clone fast-forwards another."""
    a = clone_factory("a")
    a.write("files/home/.bashrc.age", b"\x01cipher")
    commit = a.commit(["files/home/.bashrc.age"], "first")
    assert commit is not None
    a.push()

    b = clone_factory("b")
    assert b.local_head() == commit
    assert b.read("files/home/.bashrc.age") == b"\x01cipher"


def test_commit_without_changes_returns_none(clone_factory):
    repo = clone_factory("a")
    assert repo.commit([], "empty") is None
    repo.write("x.age", b"1")
    repo.commit(["x.age"], "one")
    assert repo.commit(["x.age"], "again") is None


def test_commit_stages_only_given_paths(clone_factory):
    repo = clone_factory("a")
    repo.write("a.age", b"1")
    repo.write("b.age", b"2")
    repo.commit(["a.age"], "only a")
    assert git(repo.path, "ls-files").split() == ["a.age"]


def test_clone_reuses_same_upstream(clone_factory, tmp_path: Path, bare_remote: Path):
    clone_factory("a")
    again = CacheRepository.clone(tmp_path / "a", str(bare_remote))
    assert again.path == tmp_path / "a"


def test_clone_refuses_other_repository(clone_factory, tmp_path: Path):
    clone_factory("a")
    with pytest.raises(CacheExistsError):
        CacheRepository.clone(tmp_path / "a", str(tmp_path / "other.git"))


def test_clone_refuses_non_empty_directory(tmp_path: Path, bare_remote: Path):
    target = tmp_path / "busy"
    target.mkdir()
    (target / "important.txt").write_text("keep me")
    with pytest.raises(CacheExistsError):
        CacheRepository.clone(target, str(bare_remote))
    assert (target / "important.txt").read_text() == "keep me"


def test_clone_unreachable_upstream_cleans_up(tmp_path: Path):
    """Tests that a failed clone leaves nothing behind."""
    target = tmp_path / "cache"
    with pytest.raises(TransportError):
        CacheRepository.clone(target, str(tmp_path / "missing.git"), network_timeout=10)
    assert not target.exists()


def test_open_missing_cache(tmp_path: Path):
    with pytest.raises(NotFound):
        CacheRepository.open(tmp_path / "nothing")


def test_push_rejected_when_upstream_moved(clone_factory):
    a = clone_factory("a")
    b = clone_factory("b")
    a.write("a.age", b"1")
    a.commit(["a.age"], "a")
    a.push()
    b.write("b.age", b"2")
    b.commit(["b.age"], "b")
    with pytest.raises(RejectedNonFastForward):
        b.push()


def _diverge(clone_factory, local_paths, remote_paths):
    a = clone_factory("a")
    a.write("base.age", b"base")
    a.write("shared.age", b"base")
    a.commit(["base.age", "shared.age"], "base")
    a.push()
    b = clone_factory("b")

    for path, data in remote_paths.items():
        a.write(path, data)
    a.commit(list(remote_paths), "remote")
    a.push()

    for path, data in local_paths.items():
        b.write(path, data)
    b.commit(list(local_paths), "local")
    return b, b.fetch()


def test_merge_clean(clone_factory):
    """Tests that disjoint changes merge by taking both sides' blobs."""
    b, remote = _diverge(clone_factory, {"local.age": b"L"}, {"remote.age": b"R"})
    local = b.local_head()

    outcome = b.merge(remote)
    assert isinstance(outcome, Clean)
    merged = b.commit([], "merge")

    assert b.is_ancestor(local, merged) and b.is_ancestor(remote, merged)
    assert b.read("local.age") == b"L"
    assert b.read("remote.age") == b"R"


def test_merge_conflict_keeps_remote_blob(clone_factory):
    """Tests that a path changed on both sides is reported and takes the upstream blob."""
    b, remote = _diverge(clone_factory, {"shared.age": b"L"}, {"shared.age": b"R"})

    outcome = b.merge(remote)
    b.commit([], "merge")

    assert outcome == Conflicted(frozenset({"shared.age"}))
    assert b.read("shared.age") == b"R"


def test_merge_takes_remote_deletion(clone_factory):
    b, remote = _diverge(clone_factory, {"local.age": b"L"}, {})
    a = CacheRepository.open(b.path.parent / "a")
    a.remove("base.age")
    a.commit(["base.age"], "delete")
    a.push()
    remote = b.fetch()

    assert isinstance(b.merge(remote), Clean)
    b.commit([], "merge")
    assert not (b.path / "base.age").exists()


def test_merge_leaves_reserved_paths_to_caller(clone_factory):
    b, remote = _diverge(clone_factory, {"shared.age": b"L"}, {"shared.age": b"R"})
    outcome = b.merge(remote, merged_elsewhere=["shared.age"])
    assert isinstance(outcome, Clean)
    assert b.read("shared.age") == b"L"
    b.abort_merge()


def test_recover_discards_interrupted_work(clone_factory):
    """Tests that staged ciphertext and an in-progress merge are rolled back."""
    b, remote = _diverge(clone_factory, {"local.age": b"L"}, {"remote.age": b"R"})
    head = b.local_head()
    b.merge(remote)

    b.recover()

    assert b.local_head() == head
    assert not (b.git_dir / "MERGE_HEAD").exists()
    assert not (b.path / "remote.age").exists()

    b.write("local.age", b"half-written")
    b.recover()
    assert b.read("local.age") == b"L"


def test_remove_prunes_empty_directories(clone_factory):
    repo = clone_factory("a")
    repo.write("files/home/.config/app/x.age", b"1")
    repo.remove("files/home/.config/app/x.age")
    assert not (repo.path / "files").exists()


def test_diverged_from(clone_factory):
    """Tests fast-forward versus merge-needed detection."""
    a = clone_factory("a")
    b = clone_factory("b")
    assert not b.diverged_from(None)

    a.write("a.age", b"1")
    a.commit(["a.age"], "a")
    a.push()
    remote = b.fetch()
    assert not b.diverged_from(remote)

    b.write("b.age", b"2")
    b.commit(["b.age"], "b")
    assert b.diverged_from(remote)


def test_switch_branch_starts_empty_then_returns(clone_factory):
    """Tests that a branch unknown everywhere starts empty and the old one comes back intact."""
    repo = clone_factory("a")
    repo.write("files/home/.bashrc.age", b"\x01main")
    main_head = repo.commit(["files/home/.bashrc.age"], "main")

    repo.switch_branch("work")
    assert repo.current_branch() == "work"
    assert repo.local_head() is None
    assert not (repo.path / "files").exists()

    repo.write("files/home/.gitconfig.age", b"\x01work")
    repo.commit(["files/home/.gitconfig.age"], "work")
    repo.push()

    repo.switch_branch("main")
    assert repo.local_head() == main_head
    assert repo.read("files/home/.bashrc.age") == b"\x01main"
    assert not (repo.path / "files" / "home" / ".gitconfig.age").exists()
    assert repo.branches() == ["main", "work"]


def test_switch_branch_follows_upstream_branch(clone_factory):
    a = clone_factory("a")
    a.switch_branch("work")
    a.write("files/home/.gitconfig.age", b"\x01work")
    pushed = a.commit(["files/home/.gitconfig.age"], "work")
    a.push()

    b = clone_factory("b")
    b.switch_branch("work")

    assert b.local_head() == pushed
    assert b.branch == "work"
    assert b.read("files/home/.gitconfig.age") == b"\x01work"


def test_switch_branch_rejects_bad_name(clone_factory):
    repo = clone_factory("a")
    with pytest.raises(GitError):
        repo.switch_branch("bad..name")
