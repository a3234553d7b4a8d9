"""User management over the Authelia credential store."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from .exceptions import HashingError, NotFound, UserExistsError, ValidationError
from .hashing import HashProvider, looks_like_hash
from .models import UserRecord, normalise_groups
from .stores import CredentialStore

logger = logging.getLogger("useradmin.users")

_UNSET: Any = object()


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class UserService:
    """Create, read, update and delete entries of the credential store."""

    def __init__(self, store: CredentialStore, hasher: HashProvider) -> None:
        self._store = store
        self._hasher = hasher

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def list(self) -> Dict[str, Dict[str, Any]]:
        """Return every user keyed by username, without password hashes."""

        users = await self._store.load()
        return {username: record.to_public_dict() for username, record in users.items()}

    async def get(self, username: str) -> Dict[str, Any]:
        users = await self._store.load()
        record = users.get(username)
        if record is None:
            raise NotFound("User not found")
        return record.to_public_dict()

    async def create(
        self,
        username: Optional[str],
        password: Optional[str],
        email: Optional[str] = None,
        groups: object = None,
        displayname: Optional[str] = None,
    ) -> UserRecord:
        username = _require_text(username, "username").strip()
        password = _require_text(password, "password")
        resolved_groups = normalise_groups(groups)

        async with self._store.transaction() as transaction:
            users = transaction.records
            if username in users:
                raise UserExistsError(username)
            record = UserRecord(
                username=username,
                displayname=_clean_optional(displayname) or username,
                email=_clean_optional(email),
                password=await self._hash(password),
                groups=tuple(resolved_groups),
            )
            users[username] = record

        logger.info('User "%s" created', username)
        return record

    async def update(
        self,
        username: str,
        *,
        email: Optional[str] = _UNSET,
        displayname: Optional[str] = _UNSET,
        groups: object = _UNSET,
    ) -> UserRecord:
        """Merge the supplied fields into an existing record.

        Arguments left unset keep their stored value.
        """

        changes: Dict[str, Any] = {}
        if email is not _UNSET:
            changes["email"] = _clean_optional(email)
        if displayname is not _UNSET:
            changes["displayname"] = _clean_optional(displayname) or username
        if groups is not _UNSET:
            changes["groups"] = tuple(normalise_groups(groups, default=None))

        async with self._store.transaction() as transaction:
            users = transaction.records
            record = users.get(username)
            if record is None:
                raise NotFound("User not found")
            updated = replace(record, **changes)
            users[username] = updated

        logger.info('User "%s" updated (%s)', username, ", ".join(sorted(changes)) or "no changes")
        return updated

    async def change_password(self, username: str, password: Optional[str]) -> None:
        password = _require_text(password, "password")

        async with self._store.transaction() as transaction:
            users = transaction.records
            record = users.get(username)
            if record is None:
                raise NotFound("User not found")
            users[username] = replace(record, password=await self._hash(password))

        logger.info('Password changed for "%s"', username)

    async def delete(self, username: str) -> None:
        async with self._store.transaction() as transaction:
            users = transaction.records
            if users.pop(username, None) is None:
                raise NotFound("User not found")

        logger.info('User "%s" deleted', username)

    async def verify_password(self, username: str, password: str) -> bool:
        users = await self._store.load()
        record = users.get(username)
        if record is None:
            raise NotFound("User not found")
        return await self._hasher.verify(password, record.password)

    async def _hash(self, password: str) -> str:
        digest = await self._hasher.hash(password)
        if not looks_like_hash(digest) or digest == password:
            raise HashingError("Password hash generation failed")
        return digest


__all__ = ["UserService"]
