# src/dotseal/gitwrap.py: Safe subprocess wrappers for Git.
# This module drives the system's 'git' command with timeouts, a scrubbed
# non-interactive environment, and error handling that sorts failures into the
# application's taxonomy: transport problems, rejected credentials, rejected
# non-fast-forward pushes, and plain local git errors.

import os
import subprocess
from pathlib import Path
from typing import List, Optional

from .util.errors import AuthError, GitError, RejectedNonFastForward, TransportError

DEFAULT_TIMEOUT = 120

AUTH_MARKERS = (
    "permission denied",
    "authentication failed",
    "could not read username",
    "invalid username or password",
    "host key verification failed",
)

REJECTED_MARKERS = (
    "non-fast-forward",
    "[rejected]",
    "fetch first",
)

REFUSED_MARKERS = (
    "[remote rejected]",
    "hook declined",
    "protected branch",
)

TRANSPORT_MARKERS = (
    "could not resolve host",
    "could not read from remote repository",
    "connection refused",
    "connection timed out",
    "network is unreachable",
    "does not appear to be a git repository",
    "unable to access",
    "repository not found",
)

# --- Core Git Execution ---

def ssh_command(key_file: Optional[Path]) -> Optional[str]:
    """Build a GIT_SSH_COMMAND that pins the given identity file."""
    if key_file is None:
        return None
    return f"ssh -i '{key_file}' -o IdentitiesOnly=yes -o BatchMode=yes"


def classify_failure(args: List[str], message: str, network: bool) -> GitError:
    """Map a failed git invocation onto the error taxonomy."""
    lowered = message.lower()
    command = " ".join(args)
    if network:
        if any(marker in lowered for marker in REFUSED_MARKERS):
            return TransportError(f"Upstream refused the push: {message}")
        if any(marker in lowered for marker in REJECTED_MARKERS):
            return RejectedNonFastForward(f"Push rejected by upstream: {message}")
        if any(marker in lowered for marker in AUTH_MARKERS):
            return AuthError(f"Upstream rejected credentials for 'git {command}': {message}")
        return TransportError(f"Git command '{command}' failed: {message}")
    if any(marker in lowered for marker in TRANSPORT_MARKERS):
        return TransportError(f"Git command '{command}' failed: {message}")
    return GitError(f"Git command '{command}' failed: {message}")


def run_git(
    args: List[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
    check: bool = True,
    env: Optional[dict] = None,
    network: bool = False,
) -> subprocess.CompletedProcess:
    """
    Runs a git command in a specified directory with a timeout and error handling.

    Args:
        args: A list of arguments for the git command.
        cwd: The working directory for the command.
        timeout: The command timeout in seconds.
        check: If True, raises on a non-zero exit code.
        env: An optional dictionary of environment variables.
        network: Whether the command talks to the upstream. Failures and
            timeouts of network commands are reported as transport, auth or
            rejection errors rather than as local git errors.

    Returns:
        The CompletedProcess object.

    Raises:
        GitError: If git is not found or a local command fails.
        TransportError: If a network command fails or times out.
        AuthError: If the upstream rejects our credentials.
        RejectedNonFastForward: If a push is refused because the upstream moved.
    """
    if not cwd.is_dir():
        raise GitError(f"Git working directory not found: {cwd}")

    base_env = os.environ.copy()
    base_env["GIT_TERMINAL_PROMPT"] = "0"
    base_env["LC_ALL"] = "C"
    if env:
        base_env.update(env)

    try:
        return subprocess.run(
            ["git"] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=check,
            env=base_env,
        )
    except FileNotFoundError:
        raise GitError("The 'git' command was not found. Is it installed and in your PATH?")
    except subprocess.CalledProcessError as e:
        error_message = (e.stderr or "").strip() or (e.stdout or "").strip()
        raise classify_failure(args, error_message, network) from None
    except subprocess.TimeoutExpired:
        message = f"Git command '{' '.join(args)}' timed out after {timeout} seconds."
        if network:
            raise TransportError(message) from None
        raise GitError(message) from None


# --- High-Level Git Operations ---

def git_init(cwd: Path, branch: str) -> None:
    run_git(["init", "--quiet"], cwd=cwd)
    run_git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=cwd)


def git_rev_parse(cwd: Path, ref: str) -> Optional[str]:
    """Resolve a ref to a commit id, or None if it does not exist."""
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def git_merge_base(cwd: Path, commit1: str, commit2: str) -> Optional[str]:
    """Finds the common ancestor of two commits, None for unrelated histories."""
    result = run_git(["merge-base", commit1, commit2], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def git_changed_paths(cwd: Path, old: Optional[str], new: str) -> List[str]:
    """Paths that differ between two commits. `old=None` means the empty tree."""
    if old is None:
        result = run_git(["ls-tree", "-r", "--name-only", "-z", new], cwd=cwd)
    else:
        result = run_git(["diff", "--name-only", "--no-renames", "-z", old, new], cwd=cwd)
    return [p for p in result.stdout.split("\0") if p]


def git_show_file(cwd: Path, commit: str, path: str) -> Optional[bytes]:
    """Raw content of `path` at `commit`, or None if it does not exist there."""
    try:
        result = subprocess.run(
            ["git", "show", f"{commit}:{path}"],
            cwd=cwd,
            capture_output=True,
            timeout=DEFAULT_TIMEOUT,
        )
    except FileNotFoundError:
        raise GitError("The 'git' command was not found. Is it installed and in your PATH?")
    except subprocess.TimeoutExpired:
        raise GitError(f"Reading '{path}' at {commit} timed out.") from None
    if result.returncode != 0:
        return None
    return result.stdout


def git_status_porcelain(cwd: Path) -> str:
    return run_git(["status", "--porcelain", "--untracked-files=no"], cwd=cwd).stdout


def git_is_clean(cwd: Path) -> bool:
    """Checks if the tracked content of the working directory is clean."""
    return not git_status_porcelain(cwd).strip()


def git_remote_url(cwd: Path, remote: str = "origin") -> Optional[str]:
    result = run_git(["remote", "get-url", remote], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def git_current_branch(cwd: Path) -> Optional[str]:
    """Name of the checked-out branch (born or not), None when HEAD is detached."""
    result = run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def git_branch_names(cwd: Path, remote: str = "origin") -> List[str]:
    """Local branches and branches of `remote`, by short name, without duplicates."""
    result = run_git(
        ["for-each-ref", "--format=%(refname)", "refs/heads", f"refs/remotes/{remote}"], cwd=cwd
    )
    names = set()
    for ref in result.stdout.splitlines():
        for prefix in ("refs/heads/", f"refs/remotes/{remote}/"):
            if ref.startswith(prefix):
                names.add(ref[len(prefix):])
    names.discard("HEAD")
    return sorted(names)


def git_check_branch_name(cwd: Path, name: str) -> None:
    """Raise GitError unless `name` is a valid branch name."""
    result = run_git(["check-ref-format", "--branch", name], cwd=cwd, check=False)
    if result.returncode != 0:
        raise GitError(f"'{name}' is not a valid branch name.")
