from __future__ import annotations

from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


@lru_cache(maxsize=4)
def _get_cipher(keys: str) -> MultiFernet:
    # FERNET_KEY may hold a comma separated list; the first key encrypts, all keys decrypt.
    fernets = [Fernet(key.strip().encode("utf-8")) for key in keys.split(",") if key.strip()]
    if not fernets:
        raise ValueError("FERNET_KEY is empty")
    return MultiFernet(fernets)


def seal_refresh_token(keys: str, value: str) -> str:
    cipher = _get_cipher(keys)
    return cipher.encrypt(value.encode("utf-8")).decode("utf-8")


def open_refresh_token(keys: str, sealed: str) -> str:
    cipher = _get_cipher(keys)
    try:
        decrypted = cipher.decrypt(sealed.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Stored refresh token cannot be decrypted with the configured keys") from exc
    return decrypted.decode("utf-8")


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "[redacted]"
    trimmed = value.strip()
    if len(trimmed) <= visible:
        return "*" * len(trimmed)
    return f"{trimmed[:visible]}***"
