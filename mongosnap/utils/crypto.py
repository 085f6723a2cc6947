"""
AES-256-CBC encryption for stored connection URIs.

Ciphertexts are stored as ``<iv hex>:<ciphertext hex>``.
"""
import hashlib
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mongosnap.core.config import CONNECTION_ENCRYPTION_KEY

logger = logging.getLogger(__name__)

IV_LENGTH = 16


class EncryptionError(Exception):
    pass


def _load_key(raw: str) -> bytes:
    if not raw:
        raise EncryptionError("CONNECTION_ENCRYPTION_KEY is not set")
    if len(raw) == 64:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    key = raw.encode("utf-8")
    if len(key) != 32:
        raise EncryptionError("CONNECTION_ENCRYPTION_KEY must be 32 bytes or 64 hex characters")
    return key


def hash_token(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def encrypt(text: str, key: str | None = None) -> str:
    try:
        secret = _load_key(key if key is not None else CONNECTION_ENCRYPTION_KEY)
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return iv.hex() + ":" + encrypted.hex()
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Encryption error: %s", e)
        raise EncryptionError("Failed to encrypt connection URI") from e


def decrypt(encrypted: str, key: str | None = None) -> str:
    try:
        secret = _load_key(key if key is not None else CONNECTION_ENCRYPTION_KEY)
        iv_hex, cipher_hex = encrypted.split(":", 1)
        decryptor = Cipher(algorithms.AES(secret), modes.CBC(bytes.fromhex(iv_hex))).decryptor()
        padded = decryptor.update(bytes.fromhex(cipher_hex)) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Decryption error: %s", e)
        raise EncryptionError("Failed to decrypt connection URI") from e
