"""Companion administration service for the Authelia file user database."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .stores import CredentialStore, InviteStore


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the user administration API."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "CredentialStore",
    "InviteStore",
    "Settings",
    "create_app",
    "load_settings",
]
