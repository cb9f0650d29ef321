# tests/e2e/scenario_two_machines.py: E2E scenarios for two machines sharing one upstream.

import subprocess
from pathlib import Path

import pytest

from dotseal.cache import CacheRepository
from dotseal.ops import Dotseal
from dotseal.store import FileStatus
from dotseal.util.errors import ExitCode, GitError, LockHeld, RejectedNonFastForward, TransportError
from dotseal.util.lock import CacheLock


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


def interleave(mocker, target, action):
    """Run `action` once, right after `target` has fetched and before it pushes."""
    original = CacheRepository.fetch
    fired = []

    def fetch(self):
        head = original(self)
        if self.path == target.cache_dir and not fired:
            fired.append(True)
            action()
        return head

    mocker.patch.object(CacheRepository, "fetch", fetch)


@pytest.fixture
def laptop(machine):
    ds = machine("laptop")
    bashrc = ds.home / ".bashrc"
    bashrc.write_text("alias ll='ls -l'\n")
    ds.track(bashrc)
    ds.sync()
    return ds


@pytest.fixture
def desktop(machine, laptop):
    ds = machine("desktop")
    ds.sync()
    return ds


def test_first_sync_publishes_one_commit(machine, bare_remote: Path):
    """Tests init on an empty upstream, track, edit, and a first sync."""
    ds = machine("laptop")
    bashrc = ds.home / ".bashrc"
    bashrc.write_text("v1\n")
    ds.track(bashrc)
    bashrc.write_text("v2\n")

    result = ds.sync()

    assert result.exit_code() == ExitCode.OK
    assert result.pushed
    assert git(bare_remote, "rev-list", "--count", "main").strip() == "1"
    assert git(bare_remote, "ls-tree", "-r", "--name-only", "main").split() == [
        ".dotseal-manifest",
        "files/home/.bashrc.age",
    ]
    blob = subprocess.run(
        ["git", "show", "main:files/home/.bashrc.age"], cwd=bare_remote, check=True, capture_output=True
    ).stdout
    assert b"v2" not in blob


def test_second_machine_materializes_identical_bytes(laptop, desktop):
    assert (desktop.home / ".bashrc").read_bytes() == (laptop.home / ".bashrc").read_bytes()
    assert [(t.user_path, s) for t, s in desktop.status()] == [(desktop.home / ".bashrc", FileStatus.UNCHANGED)]


def test_existing_identical_file_is_adopted(machine, laptop):
    """Tests that a file already present with the same content is simply recorded as synced."""
    ds = machine("desktop")
    (ds.home / ".bashrc").write_text("alias ll='ls -l'\n")
    result = ds.sync()
    assert result.exit_code() == ExitCode.OK
    assert not result.applied
    assert ds.status()[0][1] is FileStatus.UNCHANGED


def test_existing_different_file_is_a_conflict(machine, laptop):
    ds = machine("desktop")
    (ds.home / ".bashrc").write_text("mine\n")
    result = ds.sync()
    assert result.conflicts == {ds.home / ".bashrc"}
    assert (ds.home / ".bashrc").read_text() == "mine\n"


def test_edits_flow_both_ways(laptop, desktop):
    (desktop.home / ".bashrc").write_text("from desktop\n")
    vimrc = desktop.home / ".vimrc"
    vimrc.write_text("syntax on\n")
    desktop.track(vimrc)
    desktop.sync()

    result = laptop.sync()

    assert result.applied == {laptop.home / ".bashrc", laptop.home / ".vimrc"}
    assert (laptop.home / ".bashrc").read_text() == "from desktop\n"
    assert (laptop.home / ".vimrc").read_text() == "syntax on\n"


def test_concurrent_edit_is_a_conflict(laptop, desktop, bare_remote: Path):
    """Tests that an upstream change never overwrites unsynced local edits."""
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    laptop.sync()
    (desktop.home / ".bashrc").write_text("desktop edit\n")
    remote_before = git(bare_remote, "rev-parse", "main")

    result = desktop.sync()

    assert result.conflicts == {desktop.home / ".bashrc"}
    assert result.exit_code() == ExitCode.CONFLICTS
    assert (desktop.home / ".bashrc").read_text() == "desktop edit\n"
    assert git(bare_remote, "rev-parse", "main") == remote_before
    assert desktop.status()[0][1] is FileStatus.CONFLICTED

    # Still reported, still untouched, until resolved.
    again = desktop.sync()
    assert again.conflicts == {desktop.home / ".bashrc"}
    assert (desktop.home / ".bashrc").read_text() == "desktop edit\n"


def test_resolve_keep_local(laptop, desktop):
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    laptop.sync()
    (desktop.home / ".bashrc").write_text("desktop edit\n")
    desktop.sync()

    desktop.resolve(desktop.home / ".bashrc", "local")
    assert desktop.sync().exit_code() == ExitCode.OK

    laptop.sync()
    assert (laptop.home / ".bashrc").read_text() == "desktop edit\n"


def test_resolve_keep_remote(laptop, desktop):
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    laptop.sync()
    (desktop.home / ".bashrc").write_text("desktop edit\n")
    desktop.sync()

    desktop.resolve(desktop.home / ".bashrc", "remote")

    assert (desktop.home / ".bashrc").read_text() == "laptop edit\n"
    assert desktop.sync().exit_code() == ExitCode.OK
    assert desktop.status()[0][1] is FileStatus.UNCHANGED


def test_rejected_push_is_retried_with_a_merge(mocker, laptop, desktop, bare_remote: Path):
    """Tests that upstream moving between fetch and push leads to one merge and a push."""
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    vimrc = desktop.home / ".vimrc"
    vimrc.write_text("set hidden\n")
    desktop.track(vimrc)
    interleave(mocker, laptop, desktop.sync)

    result = laptop.sync()

    assert result.exit_code() == ExitCode.OK
    assert result.applied == {laptop.home / ".vimrc"}
    assert git(bare_remote, "rev-parse", "main").strip() == git(laptop.cache_dir, "rev-parse", "HEAD").strip()
    parents = git(bare_remote, "log", "-1", "--format=%P", "main").split()
    assert len(parents) == 2

    desktop.sync()
    assert (desktop.home / ".bashrc").read_text() == "laptop edit\n"


def test_push_declined_by_hook_is_not_retried(mocker, laptop, bare_remote: Path):
    """Tests that a push refused by the upstream itself fails at once as a transport error."""
    hook = bare_remote / "hooks" / "pre-receive"
    hook.write_text("#!/bin/sh\nexit 1\n")
    hook.chmod(0o755)
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    fetch = mocker.spy(CacheRepository, "fetch")

    with pytest.raises(TransportError) as excinfo:
        laptop.sync()

    assert not isinstance(excinfo.value, RejectedNonFastForward)
    assert "hook declined" in str(excinfo.value)
    assert fetch.call_count == 1


def test_merge_conflict_keeps_both_versions_safe(mocker, laptop, desktop):
    """Tests that the same file committed on both sides is recorded as a conflict."""
    (laptop.home / ".bashrc").write_text("laptop edit\n")
    (desktop.home / ".bashrc").write_text("desktop edit\n")
    interleave(mocker, laptop, desktop.sync)

    result = laptop.sync()

    assert result.conflicts == {laptop.home / ".bashrc"}
    assert (laptop.home / ".bashrc").read_text() == "laptop edit\n"

    # The upstream still carries the desktop version.
    laptop.resolve(laptop.home / ".bashrc", "remote")
    assert (laptop.home / ".bashrc").read_text() == "desktop edit\n"


def test_untrack_propagates(laptop, desktop):
    laptop.untrack(laptop.home / ".bashrc")
    laptop.sync()

    desktop.sync()

    assert desktop.manifest() == []
    assert (desktop.home / ".bashrc").read_text() == "alias ll='ls -l'\n"
    assert (laptop.home / ".bashrc").exists()


def untrack_and_sync(ds):
    def action():
        ds.untrack(ds.home / ".bashrc")
        ds.sync()
    return action


def test_edit_against_upstream_untrack_is_a_conflict(mocker, laptop, desktop, bare_remote: Path):
    """Tests that a committed local edit merged with an upstream untrack is never dropped silently."""
    bashrc = desktop.home / ".bashrc"
    bashrc.write_text("desktop edit\n")
    interleave(mocker, desktop, untrack_and_sync(laptop))

    result = desktop.sync()

    assert result.conflicts == {bashrc}
    assert result.exit_code() == ExitCode.CONFLICTS
    assert bashrc.read_text() == "desktop edit\n"
    assert desktop.status() == [(desktop.manifest()[0], FileStatus.CONFLICTED)]
    assert "files/home/.bashrc.age" not in git(bare_remote, "ls-tree", "-r", "--name-only", "main")

    assert desktop.sync().conflicts == {bashrc}

    desktop.resolve(bashrc, "local")
    assert desktop.sync().exit_code() == ExitCode.OK
    assert "files/home/.bashrc.age" in git(bare_remote, "ls-tree", "-r", "--name-only", "main")


def test_unsynced_edit_against_upstream_untrack_is_a_conflict(laptop, desktop):
    """Tests the fast-forward path: uncommitted local edits survive an upstream untrack."""
    untrack_and_sync(laptop)()
    bashrc = desktop.home / ".bashrc"
    bashrc.write_text("desktop edit\n")

    result = desktop.sync()

    assert result.conflicts == {bashrc}
    assert [s for _, s in desktop.status()] == [FileStatus.CONFLICTED]

    desktop.resolve(bashrc, "remote")

    assert desktop.manifest() == []
    assert bashrc.read_text() == "desktop edit\n"
    assert desktop.sync().exit_code() == ExitCode.OK


def test_sync_refuses_to_run_concurrently(laptop):
    with CacheLock(laptop.cache_dir):
        with pytest.raises(LockHeld):
            laptop.sync()


def test_interrupted_commit_is_recovered(mocker, laptop, bare_remote: Path):
    """Tests that a failure while committing leaves the cache at its last commit and retries later."""
    (laptop.home / ".bashrc").write_text("new content\n")
    head = git(laptop.cache_dir, "rev-parse", "HEAD")
    mocker.patch.object(CacheRepository, "commit", side_effect=GitError("disk full"))

    with pytest.raises(GitError):
        laptop.sync()

    assert git(laptop.cache_dir, "rev-parse", "HEAD") == head
    assert git(laptop.cache_dir, "status", "--porcelain", "--untracked-files=no") == ""

    mocker.stopall()
    assert laptop.sync().committed is not None
    assert git(bare_remote, "rev-parse", "main") == git(laptop.cache_dir, "rev-parse", "HEAD")


def on_branch(ds: Dotseal, branch: str) -> Dotseal:
    return Dotseal(ds.config, cache_dir=ds.cache_dir, home=ds.home, branch=branch)


def test_profiles_live_on_separate_branches(machine, laptop, bare_remote: Path):
    """Tests that a branch selected per run keeps its own files, upstream and locally."""
    work = on_branch(laptop, "work")
    gitconfig = laptop.home / ".gitconfig"
    gitconfig.write_text("[user]\n\temail = me@work.example\n")
    work.track(gitconfig)

    assert work.sync().exit_code() == ExitCode.OK
    assert git(bare_remote, "ls-tree", "-r", "--name-only", "work").split() == [
        ".dotseal-manifest",
        "files/home/.gitconfig.age",
    ]
    assert "files/home/.gitconfig.age" not in git(bare_remote, "ls-tree", "-r", "--name-only", "main")

    again = laptop.sync()
    assert again.exit_code() == ExitCode.OK
    assert not again.applied
    assert [t.user_path for t in laptop.manifest()] == [laptop.home / ".bashrc"]
    assert gitconfig.exists()
    assert laptop.branches() == ["main", "work"]
    assert laptop.config.upstream.branch == "main"

    office = on_branch(machine("office"), "work")
    result = office.sync()

    assert result.applied == {office.home / ".gitconfig"}
    assert (office.home / ".gitconfig").read_text() == gitconfig.read_text()
    assert not (office.home / ".bashrc").exists()
