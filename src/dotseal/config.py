# src/dotseal/config.py: Pydantic models for configuration.
# This module defines the schema of the TOML configuration file and is
# responsible for loading and validating it. The passphrase may come from the
# file, from the DOTSEAL_PASSPHRASE environment variable, or from the OS
# keyring; it is held as a SecretStr so it never shows up in reprs or errors.

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import List, Optional

import keyring
from keyring.errors import KeyringError
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .util.errors import ConfigError
from .util.paths import APP_NAME, default_config_path, resolve_key_file

PASSPHRASE_ENV = "DOTSEAL_PASSPHRASE"
KEYRING_KEY = "passphrase"

# --- Pydantic Models for Configuration Schema ---

class EncryptionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    passphrase: Optional[SecretStr] = None


class UpstreamConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    key_file: Optional[Path] = None
    branch: str = "main"

    @field_validator("key_file", mode="before")
    @classmethod
    def _resolve_key_file(cls, value):
        if value is None or value == "":
            return None
        return resolve_key_file(value)

    @field_validator("url", "branch")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class SyncConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    network_timeout: int = Field(60, gt=0)
    workers: int = Field(4, ge=1)


class PolicyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    exclude: List[str] = Field(
        default_factory=lambda: [
            "**/.ssh/id_*",
            "**/*.pem",
            "**/.gnupg/**",
        ]
    )


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    level: str = "INFO"
    json_format: bool = Field(False, alias="json")


class Config(BaseModel):
    model_config = ConfigDict(frozen=True)

    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    upstream: UpstreamConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def passphrase(self) -> SecretStr:
        """The passphrase from the file, the environment, or the keyring."""
        if self.encryption.passphrase is not None and self.encryption.passphrase.get_secret_value():
            return self.encryption.passphrase
        from_env = os.environ.get(PASSPHRASE_ENV)
        if from_env:
            return SecretStr(from_env)
        try:
            stored = keyring.get_password(APP_NAME, KEYRING_KEY)
        except KeyringError:
            stored = None
        if stored:
            return SecretStr(stored)
        raise ConfigError(
            f"No passphrase configured. Set [encryption].passphrase, export "
            f"{PASSPHRASE_ENV}, or store it in the keyring under '{APP_NAME}/{KEYRING_KEY}'."
        )


# --- Configuration Loading ---

def load_config(path: Optional[Path] = None) -> Config:
    """
    Load, parse, and validate the configuration file.

    Args:
        path: The path to the configuration file. If None, uses the default path.

    Raises:
        ConfigError: If the file is not found, cannot be read, or fails validation.
    """
    config_path = Path(path) if path else default_config_path()
    if not config_path.is_file():
        raise ConfigError(f"Configuration file not found. Please create it at '{config_path}'.")

    try:
        with open(config_path, "rb") as f:
            raw_config = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file '{config_path}': {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse configuration file '{config_path}': {e}") from e

    try:
        return Config.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed:\n{e}") from e
