"""Passphrase-based authenticated encryption of individual file contents.

Keys are derived per blob with Argon2id from the passphrase and a fresh random
salt; contents are sealed with ChaCha20-Poly1305 under a fresh random nonce.
The blob is self-describing:

    [version (1)] [salt (16)] [nonce (12)] [ciphertext + tag (...)]

The version byte is bound to the ciphertext as associated data, so flipping any
bit of the blob makes it fail to open. Argon2 parameters are fixed per format
version so that any clone can open any blob with only the passphrase.
"""

import os
from dataclasses import dataclass
from typing import Dict, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from pydantic import SecretStr

from .util.errors import AuthenticationFailed, UnsupportedFormat

FORMAT_VERSION = 1
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
TAG_LEN = 16
HEADER_LEN = 1 + SALT_LEN + NONCE_LEN


@dataclass(frozen=True)
class KdfParams:
    time_cost: int
    memory_cost: int  # KiB
    parallelism: int


KDF_PARAMS: Dict[int, KdfParams] = {
    1: KdfParams(time_cost=3, memory_cost=65536, parallelism=4),
}


class Passphrase:
    """
    Owned, overwritable copy of the passphrase.

    Held as a bytearray so it can be zeroed as soon as the caller is done with
    it. Use as a context manager to scope its lifetime to one operation.
    """

    def __init__(self, secret: Union[str, bytes, SecretStr]):
        if isinstance(secret, SecretStr):
            secret = secret.get_secret_value()
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("passphrase must not be empty")
        self._buf = bytearray(secret)

    def raw(self) -> bytes:
        """Short-lived bytes copy for argon2-cffi, which accepts nothing else."""
        if not self._buf:
            raise ValueError("passphrase has been wiped")
        return bytes(self._buf)

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._buf = bytearray()

    def __enter__(self) -> "Passphrase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "Passphrase('**********')"


@dataclass(frozen=True)
class EncryptedBlob:
    format_version: int
    salt: bytes
    nonce: bytes
    ciphertext: bytes  # includes the Poly1305 tag

    def to_bytes(self) -> bytes:
        return bytes([self.format_version]) + self.salt + self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedBlob":
        """
        Split a stored blob into its parts.

        Raises:
            UnsupportedFormat: unknown version byte.
            AuthenticationFailed: the blob is too short to be valid.
        """
        if not data:
            raise AuthenticationFailed("Encrypted blob is empty.")
        version = data[0]
        if version not in KDF_PARAMS:
            raise UnsupportedFormat(f"Unsupported blob format version {version}.")
        if len(data) < HEADER_LEN + TAG_LEN:
            raise AuthenticationFailed("Encrypted blob is truncated.")
        return cls(
            format_version=version,
            salt=data[1:1 + SALT_LEN],
            nonce=data[1 + SALT_LEN:HEADER_LEN],
            ciphertext=data[HEADER_LEN:],
        )


def _as_passphrase(passphrase) -> Passphrase:
    if isinstance(passphrase, Passphrase):
        return passphrase
    return Passphrase(passphrase)


def derive_key(passphrase: Passphrase, salt: bytes, version: int = FORMAT_VERSION) -> bytearray:
    """Derive a 32-byte key using Argon2id with the parameters of `version`."""
    params = KDF_PARAMS[version]
    return bytearray(hash_secret_raw(
        secret=passphrase.raw(),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=KEY_LEN,
        type=Type.ID,
    ))


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def seal(plaintext: bytes, passphrase) -> EncryptedBlob:
    """Encrypt `plaintext` under a key derived from `passphrase`."""
    salt = os.urandom(SALT_LEN)
    nonce = os.urandom(NONCE_LEN)
    key = derive_key(_as_passphrase(passphrase), salt)
    try:
        ciphertext = ChaCha20Poly1305(key).encrypt(
            nonce, plaintext, bytes([FORMAT_VERSION])
        )
    finally:
        _wipe(key)
    return EncryptedBlob(FORMAT_VERSION, salt, nonce, ciphertext)


def open_blob(blob: Union[EncryptedBlob, bytes], passphrase) -> bytes:
    """
    Decrypt a blob.

    Fails closed: no plaintext is returned unless the tag verifies. A wrong
    passphrase and corrupted data raise the same AuthenticationFailed.
    """
    if not isinstance(blob, EncryptedBlob):
        blob = EncryptedBlob.from_bytes(blob)
    key = derive_key(_as_passphrase(passphrase), blob.salt, blob.format_version)
    try:
        return ChaCha20Poly1305(key).decrypt(
            blob.nonce, blob.ciphertext, bytes([blob.format_version])
        )
    except InvalidTag:
        raise AuthenticationFailed(
            "Decryption failed: wrong passphrase or corrupted data."
        ) from None
    finally:
        _wipe(key)


class EncryptionEngine:
    """
    Seals and opens file contents for one run.

    Owns a Passphrase for its lifetime and wipes it on close().
    """

    def __init__(self, passphrase):
        self._passphrase = _as_passphrase(passphrase)

    def seal(self, plaintext: bytes) -> bytes:
        return seal(plaintext, self._passphrase).to_bytes()

    def open(self, data: bytes) -> bytes:
        return open_blob(data, self._passphrase)

    def close(self) -> None:
        self._passphrase.wipe()

    def __enter__(self) -> "EncryptionEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
