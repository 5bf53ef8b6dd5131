"""
Token encryption at rest.

Credentials are sealed with AES-256-GCM. Each call draws a fresh 12-byte
nonce; the stored blob is base64(nonce || ciphertext || tag).
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from socialpub.errors import ConfigError, DecryptionError

NONCE_SIZE = 12
TAG_SIZE = 16


class TokenVault:
    """Encrypts and decrypts OAuth tokens with one process-wide key."""

    def __init__(self, key):
        if not isinstance(key, (bytes, bytearray)) or len(key) != 32:
            raise ConfigError('Token vault key must be 32 bytes')
        self._aesgcm = AESGCM(bytes(key))

    def __repr__(self):
        return '<TokenVault>'

    def encrypt(self, plaintext):
        """Encrypt a token for storage. ``None`` passes through."""
        if plaintext is None:
            return None
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, blob):
        """Decrypt a stored token. ``None`` passes through."""
        if blob is None:
            return None
        try:
            raw = base64.b64decode(blob.encode('ascii'), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as e:
            raise DecryptionError(f'Malformed token blob: {e}') from e
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError('Token blob is too short')
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError('Token blob failed authentication (wrong key or corrupted)') from e
        return plaintext.decode('utf-8')
