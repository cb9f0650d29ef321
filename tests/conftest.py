# tests/conftest.py: Shared fixtures.
# Every test runs with its own HOME and XDG directories, a fixed git identity,
# and Argon2 parameters cheap enough to derive hundreds of keys per second.

import logging
import subprocess
from pathlib import Path

import pytest

from dotseal import crypto
from dotseal.config import Config
from dotseal.ops import Dotseal

PASSPHRASE = "correct horse battery staple"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local" / "share"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "dotseal tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "dotseal tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.invalid")
    monkeypatch.delenv("DOTSEAL_PASSPHRASE", raising=False)
    monkeypatch.setitem(crypto.KDF_PARAMS, 1, crypto.KdfParams(time_cost=1, memory_cost=64, parallelism=1))
    return home


@pytest.fixture
def bare_remote(tmp_path: Path) -> Path:
    """An empty bare repository standing in for the upstream."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--quiet", "--bare", "--initial-branch=main", str(remote)],
        check=True,
    )
    return remote


@pytest.fixture
def make_config():
    """Factory for a Config pointing at `url` with an inline passphrase."""
    def _make(url, passphrase: str = PASSPHRASE, **sync) -> Config:
        return Config.model_validate({
            "encryption": {"passphrase": passphrase},
            "upstream": {"url": str(url)},
            "sync": sync,
        })
    return _make


@pytest.fixture
def machine(tmp_path: Path, bare_remote: Path, make_config):
    """Factory for an initialized machine: its own home and cache, sharing `bare_remote`."""
    def _machine(name: str, passphrase: str = PASSPHRASE, **sync) -> Dotseal:
        root = tmp_path / name
        home = root / "home"
        home.mkdir(parents=True)
        ds = Dotseal(make_config(bare_remote, passphrase, **sync), cache_dir=root / "cache", home=home)
        ds.init()
        return ds
    return _machine


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging so they never outlive their stream."""
    yield
    logger = logging.getLogger("dotseal")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
