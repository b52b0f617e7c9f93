"""At-rest encryption for stored OAuth tokens.

Access and refresh tokens are Fernet-encrypted before they reach the
`credentials` table and decrypted when the credential store reads them back.

## Keys

Each secret is stretched with PBKDF2-HMAC-SHA256 (480,000 iterations) into a
32-byte Fernet key. The salt is ENCRYPTION_SALT when set, otherwise a digest
of the secret itself.

## Rotating SECRET_KEY

Move the old value into PREVIOUS_SECRET_KEYS and set a new SECRET_KEY. New
writes use the new key. Values written under a retired key still decrypt;
access tokens move to the new key on their next refresh, refresh tokens on
the next authorization or provider rotation.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from collections.abc import Iterable

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 480_000


def derive_key(secret: str, salt: str | None = None) -> bytes:
    """Derive a urlsafe-base64 Fernet key from an application secret."""
    if not salt:
        salt = hashlib.sha256(f"{secret}-salt".encode()).hexdigest()[:32]
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class TokenCipher:
    """Encrypts with the current secret, decrypts with current or retired ones."""

    def __init__(
        self,
        secret_key: str,
        previous_keys: Iterable[str] = (),
        salt: str | None = None,
    ):
        secrets = [secret_key, *previous_keys]
        self._fernet = MultiFernet([Fernet(derive_key(secret, salt)) for secret in secrets])

    def encrypt(self, plaintext: str | None) -> str | None:
        """Empty tokens are stored as NULL."""
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        """Decrypt a stored token.

        Raises:
            ValueError: Corrupted value, or written under a key no longer configured
        """
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt stored token: unknown key or corrupted value")
            raise ValueError("Failed to decrypt token") from e


_cipher: TokenCipher | None = None


def get_cipher() -> TokenCipher:
    """Process-wide cipher built from settings on first use."""
    global _cipher

    if _cipher is None:
        from calendar_sync.config import get_settings

        settings = get_settings()
        _cipher = TokenCipher(
            settings.secret_key,
            settings.previous_secret_keys,
            salt=settings.encryption_salt,
        )
    return _cipher


def reset_cipher() -> None:
    global _cipher
    _cipher = None


def encrypt_token(plaintext: str | None) -> str | None:
    return get_cipher().encrypt(plaintext)


def decrypt_token(ciphertext: str | None) -> str | None:
    return get_cipher().decrypt(ciphertext)
