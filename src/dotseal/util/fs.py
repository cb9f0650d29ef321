# src/dotseal/util/fs.py: Filesystem utilities.
# Atomic file replacement and content hashing. atomic_write never leaves a
# truncated destination behind: the data goes to a temp file in the same
# directory, is fsynced, and is then renamed over the destination.

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write(path: Path, data: bytes, mode: Optional[int] = None) -> None:
    """
    Write bytes to a file atomically.

    The destination's permission bits are preserved when it already exists,
    otherwise `mode` applies, and new files without one are created 0600.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if mode is None and path.exists():
        mode = path.stat().st_mode & 0o7777

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Chunked SHA-256 hex digest of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()
