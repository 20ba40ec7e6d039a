"""Verification-code hashing and reference encryption.

Both primitives produce output that the consuming side decodes with
CryptoJS: ``HmacMD5(message, key).toString()`` and
``AES.decrypt(blob, passphrase)``. The AES blob is the OpenSSL salted
format: base64 of ``b"Salted__" + salt + ciphertext``, with key and IV
derived by EVP_BytesToKey (MD5, one iteration), AES-256-CBC, PKCS7.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CryptoError

_SALT_MAGIC = b"Salted__"
_KEY_LEN = 32
_IV_LEN = 16


def hmac_md5(message: str, key: str) -> str:
    """Hex HMAC-MD5 of *message* under *key*."""
    if not key:
        raise CryptoError("empty crypto key")
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.md5).hexdigest()


def _evp_bytes_to_key(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < _KEY_LEN + _IV_LEN:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:_KEY_LEN], derived[_KEY_LEN : _KEY_LEN + _IV_LEN]


def aes_encrypt(message: str, passphrase: str, *, salt: bytes | None = None) -> str:
    """Encrypt *message* with a passphrase, OpenSSL/CryptoJS style."""
    if not passphrase:
        raise CryptoError("empty crypto key")
    salt = os.urandom(8) if salt is None else salt
    if len(salt) != 8:
        raise CryptoError("salt must be 8 bytes")

    key, iv = _evp_bytes_to_key(passphrase.encode("utf-8"), salt)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(message.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(_SALT_MAGIC + salt + ciphertext).decode("ascii")


def aes_decrypt(blob: str, passphrase: str) -> str:
    """Inverse of :func:`aes_encrypt`."""
    try:
        raw = base64.b64decode(blob, validate=True)
    except ValueError as exc:
        raise CryptoError("ciphertext is not valid base64") from exc
    if not raw.startswith(_SALT_MAGIC) or len(raw) < 16 + _IV_LEN:
        raise CryptoError("ciphertext is not in salted format")

    salt, ciphertext = raw[8:16], raw[16:]
    key, iv = _evp_bytes_to_key(passphrase.encode("utf-8"), salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as exc:
        raise CryptoError("wrong key or corrupted ciphertext") from exc
