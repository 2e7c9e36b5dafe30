"""Helpers shared between the memory and postgres registries."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken


def normalize_email(email: str) -> str:
    return email.strip().lower()


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    """Derive the Fernet key that encrypts two-factor secrets at rest."""
    if not key_material:
        raise RuntimeError(
            "two-factor secrets cannot be encrypted; set TWO_FACTOR_ENCRYPTION_KEY or JWT_SECRET"
        )
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, ciphertext: str) -> str:
    """Decrypt a stored secret; a rotated key surfaces as ``InvalidToken``."""
    return cipher.decrypt(ciphertext.encode()).decode()


def parse_json_field(raw: Any, default: Any = None) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


__all__ = [
    "InvalidToken",
    "build_secret_cipher",
    "decrypt_secret",
    "encrypt_secret",
    "normalize_email",
    "parse_json_field",
]
