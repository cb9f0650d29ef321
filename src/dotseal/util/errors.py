# src/dotseal/util/errors.py: Typed exceptions and exit codes.
# Every failure the engine can surface has its own exception type carrying the
# process exit code the CLI should use. Messages name the path and the kind of
# failure but never include the passphrase or any plaintext.

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes, one per error family."""
    OK = 0
    UNKNOWN = 1
    CONFLICTS = 2
    CONFIG = 3
    GIT = 4
    TRANSPORT = 5
    AUTH = 6
    AUTHENTICATION_FAILED = 7
    LOCK_HELD = 8
    STATE = 9
    POLICY = 10


class DotsealError(Exception):
    """Base exception for the application."""
    exit_code = ExitCode.UNKNOWN


class ConfigError(DotsealError):
    """Configuration could not be loaded or validated."""
    exit_code = ExitCode.CONFIG


class GitError(DotsealError):
    """A local git command failed."""
    exit_code = ExitCode.GIT


class TransportError(GitError):
    """The upstream could not be reached, or a network operation timed out."""
    exit_code = ExitCode.TRANSPORT


class AuthError(GitError):
    """The upstream rejected our SSH credentials."""
    exit_code = ExitCode.AUTH


class RejectedNonFastForward(GitError):
    """A push was refused because the upstream branch moved."""
    exit_code = ExitCode.TRANSPORT


class CacheExistsError(DotsealError):
    """The cache directory already holds something that is not our clone."""
    exit_code = ExitCode.STATE


class LockHeld(DotsealError):
    """Another process is syncing the same cache."""
    exit_code = ExitCode.LOCK_HELD

    def __init__(self, message: str, owner_pid: int | None = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class AuthenticationFailed(DotsealError):
    """Wrong passphrase, or the blob was corrupted or tampered with."""
    exit_code = ExitCode.AUTHENTICATION_FAILED


class UnsupportedFormat(AuthenticationFailed):
    """The blob carries a format version this build cannot open."""


class NotFound(DotsealError):
    """A tracked file or blob is missing."""
    exit_code = ExitCode.STATE


class AlreadyTracked(DotsealError):
    exit_code = ExitCode.STATE


class NotTracked(DotsealError):
    exit_code = ExitCode.STATE


class PolicyViolationError(DotsealError):
    """The path is excluded from tracking by policy."""
    exit_code = ExitCode.POLICY


class StateError(DotsealError):
    """The manifest or the local sync state is malformed."""
    exit_code = ExitCode.STATE
