# src/imigrate/core/security/encryption.py
"""Password-based encryption for row payloads and stored credentials.

Two blob formats, deliberately not interchangeable:

- Password-derived: ``base64(salt[16] || iv[12] || ciphertext || tag)``.
  A fresh salt per blob means every encryption runs PBKDF2 again.
- Pre-derived key: ``base64(iv[12] || ciphertext || tag)``. Used with the
  master key, which is derived once when the keyring is unlocked.

Both use AES-256-GCM. Authentication failure (wrong password, wrong
scheme, tampering, truncation) raises DecryptionError; corrupted plaintext
is never returned.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from imigrate.contracts import DecryptionError

SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000

# Fixed salt for the master key so the same master password always yields
# the same key across restarts.
MASTER_KEY_SALT = b"i-migrate-master-key-v1"


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit AES key from a password with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_master_key(master_password: str) -> bytes:
    return derive_key(master_password, MASTER_KEY_SALT)


def _b64decode(blob: str) -> bytes:
    try:
        return base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Encrypted blob is not valid base64") from e


def encrypt(plaintext: str, password: str) -> str:
    """Encrypt text under a key derived from ``password`` with a random salt."""
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(derive_key(password, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(salt + iv + ciphertext).decode("ascii")


def decrypt(blob: str, password: str) -> str:
    """Reverse of :func:`encrypt`.

    Raises:
        DecryptionError: Wrong password or damaged blob
    """
    raw = _b64decode(blob)
    if len(raw) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
        raise DecryptionError("Encrypted blob is too short")
    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
    ciphertext = raw[SALT_LENGTH + IV_LENGTH :]
    try:
        plaintext = AESGCM(derive_key(password, salt)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: wrong password or corrupted data") from e
    return plaintext.decode("utf-8")


def encrypt_with_key(plaintext: str, key: bytes) -> str:
    """Encrypt text under an already-derived 256-bit key."""
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_with_key(blob: str, key: bytes) -> str:
    """Reverse of :func:`encrypt_with_key`.

    Raises:
        DecryptionError: Wrong key or damaged blob
    """
    raw = _b64decode(blob)
    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise DecryptionError("Encrypted blob is too short")
    try:
        plaintext = AESGCM(key).decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: wrong key or corrupted data") from e
    return plaintext.decode("utf-8")


def encrypt_json(data: Any, password: str) -> str:
    return encrypt(json.dumps(data, separators=(",", ":"), ensure_ascii=False), password)


def decrypt_json(blob: str, password: str) -> Any:
    return json.loads(decrypt(blob, password))


def hash_password(password: str) -> str:
    """SHA-256 hex digest used as the master password verifier."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_password(password: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password), expected_hash)
