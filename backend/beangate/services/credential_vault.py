"""
BeanGate Backend: Credential Vault
====================================

What:  Authenticated encryption for user-supplied provider API keys.
How:   AES-256-GCM via `cryptography`'s AESGCM. Every encrypt call draws a
       fresh 16-byte IV; the 16-byte tag is split off the AESGCM output and
       stored next to the ciphertext. All three parts are hex strings so they
       fit plain text columns.
Who:   Built once in the app lifespan from API_KEY_ENCRYPTION_SECRET; used by
       the CredentialStore.

Security notes:
    - Construction fails fast (ConfigurationError) on a missing or malformed
      master secret. The secret is never truncated or padded.
    - decrypt() refuses to return anything it cannot authenticate.
    - No message or log line produced here contains key material.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import SecretStr

from beangate.exceptions import ConfigurationError, IntegrityError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16
MASK_PLACEHOLDER = "****"


@dataclass(frozen=True)
class EncryptedCredential:
    """Hex-encoded ciphertext, IV and authentication tag."""

    ciphertext: str
    iv: str
    tag: str


class CredentialVault:
    """Encrypts, decrypts and masks provider credentials under one master secret."""

    def __init__(self, master_secret: Union[SecretStr, str, None]):
        if isinstance(master_secret, SecretStr):
            master_secret = master_secret.get_secret_value()
        if not master_secret:
            raise ConfigurationError(
                message="API_KEY_ENCRYPTION_SECRET is not set",
                context={"setting": "API_KEY_ENCRYPTION_SECRET"},
            )
        try:
            key = bytes.fromhex(master_secret.strip())
        except ValueError:
            raise ConfigurationError(
                message="API_KEY_ENCRYPTION_SECRET must be hex encoded",
                context={"setting": "API_KEY_ENCRYPTION_SECRET"},
            ) from None
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                message=f"API_KEY_ENCRYPTION_SECRET must decode to exactly {KEY_BYTES} bytes "
                f"({KEY_BYTES * 2} hex characters)",
                context={"setting": "API_KEY_ENCRYPTION_SECRET", "decoded_bytes": len(key)},
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedCredential:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedCredential(ciphertext=ciphertext.hex(), iv=iv.hex(), tag=tag.hex())

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> str:
        """
        What:  Authenticates and decrypts a stored credential.
        Raises IntegrityError when the tag does not verify, the hex is
        malformed, the IV/tag have the wrong length, or the plaintext is not
        UTF-8. Never returns unauthenticated data.
        """
        try:
            iv_bytes = bytes.fromhex(iv)
            tag_bytes = bytes.fromhex(tag)
            ct_bytes = bytes.fromhex(ciphertext)
            if len(iv_bytes) != IV_BYTES or len(tag_bytes) != TAG_BYTES:
                raise ValueError("unexpected iv or tag length")
            plaintext = self._aesgcm.decrypt(iv_bytes, ct_bytes + tag_bytes, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            logger.warning("Stored credential failed verification (%s)", type(e).__name__)
            raise IntegrityError() from None

    def decrypt_record(self, record: EncryptedCredential) -> str:
        return self.decrypt(record.ciphertext, record.iv, record.tag)

    @staticmethod
    def mask(plaintext: Optional[str]) -> str:
        """First 4 + at most 20 asterisks + last 4; short inputs become '****'."""
        if not plaintext or len(plaintext) <= 12:
            return MASK_PLACEHOLDER
        hidden = min(len(plaintext) - 8, 20)
        return f"{plaintext[:4]}{'*' * hidden}{plaintext[-4:]}"
