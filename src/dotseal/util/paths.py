# src/dotseal/util/paths.py: Path resolution.
# Default locations for the config file and the cache clone come from
# platformdirs. The engine itself only ever receives absolute paths; these
# helpers are used by the configuration and CLI layers.

import os
from pathlib import Path

import platformdirs

APP_NAME = "dotseal"
CONFIG_FILE_NAME = "config.toml"
CACHE_REPO_DIR = "repo"


def home_dir() -> Path:
    """The user's home directory, honouring $HOME."""
    return Path(os.path.abspath(os.path.expanduser("~")))


def get_config_home() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME))


def get_data_home() -> Path:
    return Path(platformdirs.user_data_dir(APP_NAME))


def default_config_path() -> Path:
    return get_config_home() / CONFIG_FILE_NAME


def default_cache_dir() -> Path:
    return get_data_home() / CACHE_REPO_DIR


def absolute_user_path(path: str | Path) -> Path:
    """
    Make a user-supplied path absolute without following a final symlink.

    Tracked files are addressed by the path the user sees, so a symlinked
    dotfile is tracked under its own name.
    """
    expanded = Path(os.path.expandvars(os.path.expanduser(str(path))))
    return Path(os.path.abspath(expanded))


def resolve_key_file(key_file: str | Path) -> Path:
    """
    Resolve an SSH key file path.

    Relative paths are looked up in the user's ~/.ssh directory, absolute
    paths (after ~ expansion) are used as-is.
    """
    expanded = Path(os.path.expanduser(str(key_file)))
    if expanded.is_absolute():
        return expanded
    return home_dir() / ".ssh" / expanded
