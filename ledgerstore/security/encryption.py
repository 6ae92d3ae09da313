"""Encrypted backup archives.

Plain store copies remain the default backup format. An archive wraps such
a copy for off-site transport:

    MAGIC (5 bytes) | salt (16 bytes) | nonce (12 bytes) | AES-256-GCM ciphertext+tag

The key is derived from an operator passphrase with PBKDF2-HMAC-SHA256.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ledgerstore.exceptions import EncryptionError

ARCHIVE_MAGIC = b"LSBK1"
DEFAULT_SALT_BYTES = 16  # 128 bits
DEFAULT_KDF_ITERATIONS = 390_000
NONCE_BYTES = 12  # 96 bits (GCM standard)
_HEADER_BYTES = len(ARCHIVE_MAGIC) + DEFAULT_SALT_BYTES


def derive_key(
    passphrase: str,
    salt: bytes,
    *,
    iterations: int = DEFAULT_KDF_ITERATIONS,
    logger: Optional[logging.Logger] = None,
) -> bytes:
    """Derive a 32-byte AES key using PBKDF2."""
    if not passphrase:
        raise ValueError("Passphrase cannot be empty for key derivation.")
    if not salt:
        raise ValueError("Salt cannot be empty for key derivation.")

    start = time.time()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    key = kdf.derive(passphrase.encode("utf-8"))
    if logger:
        logger.debug("Archive key derived in %.2f seconds", time.time() - start)
    return key


def encrypt_payload(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt plaintext and return nonce+ciphertext."""
    if not key:
        raise ValueError("Encryption key is required.")
    nonce = os.urandom(NONCE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, ARCHIVE_MAGIC)


def decrypt_payload(payload: bytes, key: bytes) -> bytes:
    """Decrypt a nonce+ciphertext payload and return plaintext."""
    if not key:
        raise ValueError("Encryption key is required.")
    if not payload or len(payload) <= NONCE_BYTES:
        raise EncryptionError("Encrypted payload is incomplete or missing nonce.")
    nonce, ciphertext = payload[:NONCE_BYTES], payload[NONCE_BYTES:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, ARCHIVE_MAGIC)
    except InvalidTag as exc:
        raise EncryptionError("Archive passphrase is wrong or the archive is damaged.") from exc


def is_encrypted_archive(path) -> bool:
    try:
        with open(path, "rb") as handle:
            return handle.read(len(ARCHIVE_MAGIC)) == ARCHIVE_MAGIC
    except OSError:
        return False


def _write_atomic(path, data: bytes) -> None:
    tmp_path = f"{path}.new"
    with open(tmp_path, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def encrypt_file(source, destination, passphrase: str, *, logger: Optional[logging.Logger] = None) -> int:
    """Write an encrypted archive of ``source`` to ``destination``; returns its size."""
    with open(source, "rb") as handle:
        plaintext = handle.read()
    salt = os.urandom(DEFAULT_SALT_BYTES)
    key = derive_key(passphrase, salt, logger=logger)
    data = ARCHIVE_MAGIC + salt + encrypt_payload(plaintext, key)
    _write_atomic(destination, data)
    if logger:
        logger.info("Wrote encrypted archive %s (%d bytes)", destination, len(data))
    return len(data)


def decrypt_file(source, destination, passphrase: str, *, logger: Optional[logging.Logger] = None) -> int:
    """Decrypt archive ``source`` into ``destination``; returns the plaintext size."""
    with open(source, "rb") as handle:
        data = handle.read()
    if not data.startswith(ARCHIVE_MAGIC) or len(data) <= _HEADER_BYTES:
        raise EncryptionError(f"{source} is not an encrypted backup archive.")
    salt = data[len(ARCHIVE_MAGIC):_HEADER_BYTES]
    key = derive_key(passphrase, salt, logger=logger)
    plaintext = decrypt_payload(data[_HEADER_BYTES:], key)
    _write_atomic(destination, plaintext)
    if logger:
        logger.debug("Decrypted archive %s into %s", source, destination)
    return len(plaintext)
