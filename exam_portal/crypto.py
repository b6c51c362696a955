"""
Encryption at rest and content fingerprints for exam questions and answers.

Ciphertexts are AES-256-CBC with a fresh 16-byte IV per call, stored as
``<iv hex>:<ciphertext hex>``. Hex output never contains ``:`` so the
separator is unambiguous.
"""

import base64
import hashlib
import json
import logging
import os
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)

IV_SIZE = 16
SEPARATOR = ":"


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_data(data: Any) -> str:
    """SHA-256 hex digest over the canonical serialization of ``data``."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def verify_integrity(data: Any, expected_digest: str) -> bool:
    if not isinstance(expected_digest, str):
        return False
    return hash_data(data) == expected_digest


def encode_base64(data: Any) -> str:
    return base64.b64encode(json.dumps(data, default=str).encode("utf-8")).decode("ascii")


def decode_base64(encoded: str) -> Any:
    return json.loads(base64.b64decode(encoded).decode("utf-8"))


class EncryptionService:
    def __init__(self, key_hex: str):
        if not key_hex:
            raise PortalError(ErrorCode.CONFIGURATION, "ENCRYPTION_KEY not set in environment")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise PortalError(ErrorCode.CONFIGURATION, "ENCRYPTION_KEY must be hex encoded")
        if len(key) != 32:
            raise PortalError(ErrorCode.CONFIGURATION, "ENCRYPTION_KEY must be 32 bytes (64 hex characters)")
        self._key = key

    def encrypt(self, data: Any) -> str:
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(canonical_json(data).encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return iv.hex() + SEPARATOR + encrypted.hex()

    def decrypt(self, ciphertext: str) -> Any:
        try:
            iv_hex, encrypted_hex = ciphertext.split(SEPARATOR)
            iv = bytes.fromhex(iv_hex)
            encrypted = bytes.fromhex(encrypted_hex)
            if len(iv) != IV_SIZE or not encrypted:
                raise ValueError("malformed ciphertext")
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(encrypted) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return json.loads(plaintext.decode("utf-8"))
        except (AttributeError, ValueError, UnicodeDecodeError) as e:
            # json.JSONDecodeError is a ValueError
            logger.error("Decryption failed: %s", type(e).__name__)
            raise PortalError(ErrorCode.INTEGRITY, "Failed to decrypt content") from e
