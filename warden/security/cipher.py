"""Security layer — SecretCipher.

Authenticated encryption of stored secrets (server credentials, passwords)
at rest:

  - AES-256-GCM with a 16-byte IV and a 16-byte authentication tag
  - key = PBKDF2-HMAC-SHA512(master_key, salt, 100 000 iterations, 32 bytes)
  - a fresh 64-byte salt per secret, also bound as associated data

Wire format::

    base64( salt[64] ‖ iv[16] ‖ tag[16] ‖ ciphertext[N] )

Decryption either returns the exact plaintext or raises ``DecryptionError``.
Neither plaintext nor key material ever appears in an exception or a log
record.

The master key is injected once.  A cipher built without one can be passed
around freely and raises ``ConfigurationError`` on first use.

Usage::

    cipher = SecretCipher.from_settings(settings)
    blob = cipher.encrypt("P@ssw0rd!")
    assert cipher.decrypt(blob) == "P@ssw0rd!"
"""

from __future__ import annotations

import base64
import binascii
import secrets
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from warden.exceptions import ConfigurationError, DecryptionError, EncryptionError
from warden.logging import get_logger

if TYPE_CHECKING:
    from warden.config import Settings

log = get_logger(__name__)

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000

_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


def generate_master_key() -> str:
    """Return a random URL-safe master key suitable for ``secrets.master_key``."""
    return secrets.token_urlsafe(48)


class SecretCipher:
    """AES-256-GCM secret sealing with per-secret PBKDF2 key derivation.

    Parameters
    ----------
    master_key:
        Process-wide master secret.  ``None`` or empty defers the failure
        to the first ``encrypt`` / ``decrypt`` call.
    iterations:
        PBKDF2 iteration count.  Blobs only decrypt under the count they
        were sealed with.
    """

    def __init__(self, master_key: str | None, *, iterations: int = KDF_ITERATIONS) -> None:
        self._master_key = master_key.encode("utf-8") if master_key else None
        self._iterations = iterations

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SecretCipher":
        key = settings.secrets.master_key
        return cls(
            key.get_secret_value() if key is not None else None,
            iterations=settings.secrets.kdf_iterations,
        )

    @property
    def configured(self) -> bool:
        return self._master_key is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Seal *plaintext*.  Two calls on the same input yield different blobs."""
        master_key = self._require_key()
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        try:
            sealed = AESGCM(self._derive(master_key, salt)).encrypt(
                iv, plaintext.encode("utf-8"), salt
            )
        except (ValueError, TypeError, UnicodeEncodeError) as exc:
            log.error("secret_encrypt_failed", error_type=type(exc).__name__)
            raise EncryptionError("Secret could not be encrypted") from None

        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Open *blob*, raising ``DecryptionError`` on any malformation or tampering."""
        master_key = self._require_key()
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptionError("Secret blob is not valid base64") from None

        if len(raw) < _HEADER_LENGTH:
            raise DecryptionError(
                "Secret blob is truncated",
                context={"length": len(raw), "minimum": _HEADER_LENGTH},
            )

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH : _HEADER_LENGTH]
        ciphertext = raw[_HEADER_LENGTH:]

        try:
            plaintext = AESGCM(self._derive(master_key, salt)).decrypt(
                iv, ciphertext + tag, salt
            )
        except InvalidTag:
            raise DecryptionError("Secret failed authentication") from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Secret is not valid UTF-8") from None

    def rotate(self, blob: str, new_cipher: "SecretCipher") -> str:
        """Re-seal *blob* under *new_cipher*'s master key."""
        return new_cipher.encrypt(self.decrypt(blob))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_key(self) -> bytes:
        if self._master_key is None:
            raise ConfigurationError(
                "No master key configured for secret encryption",
                context={"setting": "secrets.master_key", "env": "WARDEN_SECRETS__MASTER_KEY"},
            )
        return self._master_key

    def _derive(self, master_key: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(master_key)
