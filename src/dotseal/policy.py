# src/dotseal/policy.py: Decides which paths may be tracked.
# Exclude patterns use gitignore syntax and are matched against the path as it
# would appear in the repository: relative to the home directory for files
# under home, or the absolute path without its leading slash otherwise.

from pathlib import Path
from typing import List

import pathspec

from .util.errors import PolicyViolationError


def build_pathspec(exclude: List[str]) -> pathspec.PathSpec:
    """Builds a pathspec object from exclude patterns."""
    return pathspec.PathSpec.from_lines("gitwildmatch", exclude)


def policy_key(user_path: Path, home: Path) -> str:
    if user_path.is_relative_to(home):
        return user_path.relative_to(home).as_posix()
    return user_path.as_posix().lstrip("/")


def check_trackable(user_path: Path, home: Path, exclude: List[str]) -> None:
    """Raise PolicyViolationError if the path matches an exclude pattern."""
    if not exclude:
        return
    key = policy_key(user_path, home)
    if build_pathspec(exclude).match_file(key):
        raise PolicyViolationError(
            f"'{user_path}' matches an exclude rule in the policy and cannot be tracked."
        )
