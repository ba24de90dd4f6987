from __future__ import annotations

import json
import os
from typing import Any, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from posledger.app.errors import EncryptionError


class EncryptionService(Protocol):
    def encrypt(self, plaintext: str) -> str:
        ...

    def decrypt(self, ciphertext: str) -> str:
        ...


class FernetEncryptionService:
    def __init__(self, key: str | bytes):
        raw = key.encode() if isinstance(key, str) else key
        try:
            self._cipher = Fernet(raw)
        except ValueError as exc:
            raise EncryptionError("ENCRYPTION_KEY is not a valid Fernet key") from exc

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise EncryptionError("stored credential could not be decrypted") from exc


def get_encryption_service() -> EncryptionService:
    key = os.getenv("ENCRYPTION_KEY")
    if not key:
        raise RuntimeError("ENCRYPTION_KEY must be configured to read or write POS credentials.")
    return FernetEncryptionService(key)


def encrypt_optional(service: EncryptionService, value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return service.encrypt(value)


def decrypt_optional(service: EncryptionService, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return service.decrypt(value)


def encrypt_json(service: EncryptionService, payload: Optional[dict[str, Any]]) -> Optional[str]:
    if not payload:
        return None
    return service.encrypt(json.dumps(payload, sort_keys=True))


def decrypt_json(service: EncryptionService, value: Optional[str]) -> dict[str, Any]:
    if not value:
        return {}
    decoded = json.loads(service.decrypt(value))
    if not isinstance(decoded, dict):
        raise EncryptionError("stored credential bundle is not an object")
    return decoded
