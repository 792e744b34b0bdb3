"""Secure storage helpers for vendor API keys."""

from __future__ import annotations

from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

SERVICE_NAME = "amico_desktop"
TRIPO_ACCOUNT = "tripo"
STYLE_ACCOUNT = "style"


def load_key(account: str = TRIPO_ACCOUNT) -> str | None:
    """Load an API key from secure storage."""
    return keyring.get_password(SERVICE_NAME, account)


def save_key(api_key: str, account: str = TRIPO_ACCOUNT) -> None:
    """Save an API key to secure storage."""
    keyring.set_password(SERVICE_NAME, account, api_key)


def delete_key(account: str = TRIPO_ACCOUNT) -> bool:
    """Remove an API key from secure storage. Returns False if none was stored."""
    try:
        keyring.delete_password(SERVICE_NAME, account)
    except PasswordDeleteError:
        return False
    return True


def resolve_key(configured: Optional[str], account: str) -> str | None:
    """Prefer a key from settings, fall back to the keyring."""
    if configured:
        return configured
    try:
        return load_key(account)
    except KeyringError:
        return None
