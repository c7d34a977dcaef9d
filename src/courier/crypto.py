"""Authenticated encryption for secrets stored at rest.

Every value is sealed with AES-256-GCM under a key derived (scrypt) from a
fresh random salt and the master secret of its key class.  The stored form
is four hex components joined by ``:``::

    salt:iv:tag:ciphertext

Anything else is a format error.  Decryption fails closed: a missing
component, a bad hex digit, a wrong key or a tampered byte all raise rather
than return partial or garbage plaintext.

Key classes keep token material, personal data and everything else under
separate master secrets so that a leak of one does not expose the others.
"""

from __future__ import annotations

import enum
import hmac
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
HASH_LENGTH = 64

# scrypt cost parameters (N=2^14, r=8, p=1)
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

_DELIMITER = ":"
_PART_COUNT = 4


class EncryptionError(RuntimeError):
    """Base error for encryption and decryption failures."""


class CiphertextFormatError(EncryptionError):
    """Raised when a stored value is not exactly ``salt:iv:tag:ciphertext``."""


class DecryptionError(EncryptionError):
    """Raised when the authentication tag does not verify."""


class KeyClass(enum.StrEnum):
    """Separately keyed classes of sensitive material."""

    DEFAULT = "default"
    TOKENS = "tokens"
    PII = "pii"


@dataclass(frozen=True)
class KeyRing:
    """Master secrets, one per :class:`KeyClass`.

    All three are required and must differ from each other.
    """

    default: str
    tokens: str
    pii: str

    def __post_init__(self) -> None:
        secrets_by_class = {
            KeyClass.DEFAULT: self.default,
            KeyClass.TOKENS: self.tokens,
            KeyClass.PII: self.pii,
        }
        for key_class, secret in secrets_by_class.items():
            if not secret:
                raise ValueError(f"{key_class} master key must be a non-empty string")
        if len(set(secrets_by_class.values())) != len(secrets_by_class):
            raise ValueError("master keys of different key classes must be distinct")

    def master_key(self, key_class: KeyClass) -> str:
        if key_class is KeyClass.TOKENS:
            return self.tokens
        if key_class is KeyClass.PII:
            return self.pii
        return self.default

    def __repr__(self) -> str:
        return "KeyRing(default=<redacted>, tokens=<redacted>, pii=<redacted>)"


def _derive_key(master_key: str, salt: bytes, length: int = KEY_LENGTH) -> bytes:
    kdf = Scrypt(salt=salt, length=length, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt(plaintext: str, keys: KeyRing, key_class: KeyClass = KeyClass.DEFAULT) -> str:
    """Encrypt *plaintext* under a fresh salt-derived key.

    Raises
    ------
    EncryptionError
        If *plaintext* is empty.
    """
    if not plaintext:
        raise EncryptionError("Cannot encrypt an empty string")

    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)
    key = _derive_key(keys.master_key(key_class), salt)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return _DELIMITER.join((salt.hex(), iv.hex(), tag.hex(), ciphertext.hex()))


def _split(stored: str) -> tuple[bytes, bytes, bytes, bytes]:
    if not stored:
        raise CiphertextFormatError("Cannot decrypt an empty string")
    parts = stored.split(_DELIMITER)
    if len(parts) != _PART_COUNT or any(not part for part in parts):
        raise CiphertextFormatError(
            f"Encrypted value must have {_PART_COUNT} non-empty components, got {len(parts)}"
        )
    try:
        salt, iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise CiphertextFormatError("Encrypted value contains non-hex data") from exc
    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise CiphertextFormatError("Encrypted value has unexpected component lengths")
    return salt, iv, tag, ciphertext


def decrypt(stored: str, keys: KeyRing, key_class: KeyClass = KeyClass.DEFAULT) -> str:
    """Decrypt a value produced by :func:`encrypt`.

    Raises
    ------
    CiphertextFormatError
        If *stored* is not four well-formed hex components.
    DecryptionError
        If the key is wrong or any component was altered.
    """
    salt, iv, tag, ciphertext = _split(stored)
    key = _derive_key(keys.master_key(key_class), salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError(
            f"Authentication tag mismatch for key class {key_class.value!r}"
        ) from exc
    return plaintext.decode("utf-8")


def encrypt_token(token: str, keys: KeyRing) -> str:
    return encrypt(token, keys, KeyClass.TOKENS)


def decrypt_token(stored: str, keys: KeyRing) -> str:
    return decrypt(stored, keys, KeyClass.TOKENS)


def hash_value(value: str) -> str:
    """One-way salted scrypt hash, returned as ``salt:hash`` hex."""
    salt = secrets.token_bytes(SALT_LENGTH)
    digest = _derive_key(value, salt, HASH_LENGTH)
    return f"{salt.hex()}:{digest.hex()}"


def verify_hash(value: str, hashed: str) -> bool:
    """Constant-time check of *value* against a :func:`hash_value` result."""
    salt_hex, sep, digest_hex = hashed.partition(":")
    if not sep:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        return False
    return hmac.compare_digest(_derive_key(value, salt, len(expected) or HASH_LENGTH), expected)


def generate_secure_token(length: int = 32) -> str:
    return secrets.token_hex(length)
