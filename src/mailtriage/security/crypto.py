"""AES-256-GCM gateway for credentials stored at rest.

Ciphertexts are text tokens of the form ``<nonce hex>:<tag hex>:<body hex>``
so they can be embedded in JSON documents.  The 256-bit key lives in a
single key file under the data directory and is created on first use.
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailtriage.domain.errors import CryptoError

logger = structlog.get_logger()

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


class CryptoGateway:
    """Opaque ``encrypt``/``decrypt`` over a file-backed AES-GCM key.

    Args:
        key_file: Where the base64-encoded key is stored.
    """

    def __init__(self, key_file: Path) -> None:
        self._key_file = key_file
        self._key: bytes | None = None

    def _load_or_create_key(self) -> bytes:
        if self._key is not None:
            return self._key
        if self._key_file.exists():
            key = self._decode_key(self._key_file.read_text(encoding="ascii").strip())
        else:
            key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
            self._write_key(key)
            logger.info("encryption_key_created", path=str(self._key_file))
        self._key = key
        return key

    def _write_key(self, key: bytes) -> None:
        self._key_file.parent.mkdir(parents=True, exist_ok=True)
        self._key_file.write_text(base64.b64encode(key).decode("ascii"), encoding="ascii")
        os.chmod(self._key_file, 0o600)

    @staticmethod
    def _decode_key(encoded: str) -> bytes:
        try:
            key = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise CryptoError("Encryption key is not valid base64") from exc
        if len(key) != KEY_BYTES:
            raise CryptoError(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        return key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* with a fresh random nonce.

        Args:
            plaintext: Text to protect.

        Returns:
            An opaque ``nonce:tag:body`` token.
        """
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(self._load_or_create_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{body.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by :meth:`encrypt`.

        Args:
            token: The opaque ``nonce:tag:body`` token.

        Returns:
            The original plaintext.

        Raises:
            CryptoError: If the token is malformed or fails authentication.
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise CryptoError("Encrypted value has the wrong format")
        try:
            nonce, tag, body = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise CryptoError("Encrypted value is not hex encoded") from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CryptoError("Encrypted value has the wrong format")
        try:
            plain = AESGCM(self._load_or_create_key()).decrypt(nonce, body + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Encrypted value failed authentication") from exc
        return plain.decode("utf-8")

    def export_key(self) -> str:
        """Return the key as base64 for account export."""
        return base64.b64encode(self._load_or_create_key()).decode("ascii")

    def import_key(self, encoded: str) -> None:
        """Replace the stored key with an exported one.

        Raises:
            CryptoError: If *encoded* is not a valid base64 256-bit key.
        """
        key = self._decode_key(encoded)
        self._write_key(key)
        self._key = key
        logger.info("encryption_key_imported", path=str(self._key_file))
