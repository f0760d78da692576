import base64
import binascii
import json
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.errors import VaultError, VaultUnavailable
from app.settings import Settings

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_SALT = b"vc-encryption-salt"


def derive_vault_key(secret: str) -> bytes:
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CryptoVault:
    """AES-256-GCM envelope for credential payloads kept at rest.

    Blob layout is ``base64(nonce[12] || tag[16] || ciphertext)``. Without a
    secret the vault refuses every operation.
    """

    def __init__(self, secret: Optional[str]):
        self._secret = secret or None
        self._key: Optional[bytes] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CryptoVault":
        return cls(settings.vc_encryption_secret)

    @property
    def available(self) -> bool:
        return self._secret is not None

    def _aead(self) -> AESGCM:
        if self._secret is None:
            raise VaultUnavailable("VC_ENCRYPTION_SECRET is not configured")
        if self._key is None:
            self._key = derive_vault_key(self._secret)
        return AESGCM(self._key)

    def encrypt(self, payload: Any) -> str:
        aead = self._aead()
        nonce = os.urandom(NONCE_LENGTH)
        plaintext = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        sealed = aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> Any:
        aead = self._aead()
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise VaultError("encrypted payload is not valid base64") from exc
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise VaultError("encrypted payload is truncated")
        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = raw[NONCE_LENGTH + TAG_LENGTH:]
        try:
            plaintext = aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise VaultError("encrypted payload failed authentication") from exc
        return json.loads(plaintext.decode("utf-8"))
