from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class CredentialCipher:
    """Encrypt provider API keys stored on conversation overrides."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("APP_SECRET_KEY is required to store provider keys.")
        self._fernet = Fernet(self._derive_key(secret))

    def encrypt(self, api_key: str) -> str:
        return self._fernet.encrypt(api_key.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:  # noqa: BLE001
            raise ValueError("Stored provider key cannot be decrypted with APP_SECRET_KEY.") from exc

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        # Fernet wants 32 url-safe base64 bytes; any secret string is stretched to that.
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)
