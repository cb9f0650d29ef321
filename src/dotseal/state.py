# src/dotseal/state.py: Per-machine sync state.
# What this machine last synchronized lives next to the clone's git metadata,
# never in the working tree, so it is neither committed nor pushed. It records
# the plaintext hash of each file as of its last sync, files tracked here but
# not yet committed, and files waiting for the user to resolve a conflict.
# There is one such file per branch.

import json
from pathlib import Path
from typing import Dict, Set
from urllib.parse import quote

from pydantic import BaseModel, Field, ValidationError

from .util.errors import StateError
from .util.fs import atomic_write

def state_file_name(branch: str) -> str:
    """Each branch keeps its own record of what this machine last synced from it."""
    return f"dotseal-state.{quote(branch, safe='')}.json"


class SyncState(BaseModel):
    version: int = 1
    synced: Dict[str, str] = Field(default_factory=dict)
    pending: Set[str] = Field(default_factory=set)
    conflicts: Set[str] = Field(default_factory=set)

    @classmethod
    def load(cls, path: Path) -> "SyncState":
        if not path.exists():
            return cls()
        try:
            return cls.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise StateError(f"Sync state at '{path}' is unreadable: {e}") from e

    def save(self, path: Path) -> None:
        data = self.model_dump(mode="json")
        data["pending"] = sorted(self.pending)
        data["conflicts"] = sorted(self.conflicts)
        atomic_write(path, json.dumps(data, indent=2, sort_keys=True).encode("utf-8"), mode=0o600)

    def forget(self, repo_path: str) -> None:
        self.synced.pop(repo_path, None)
        self.pending.discard(repo_path)
        self.conflicts.discard(repo_path)
