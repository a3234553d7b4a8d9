"""File-backed persistence for user records and pending invitations.

Both stores rewrite their whole document on every save. Writes go to a
temporary sibling file which is fsynced and then renamed over the target,
so a reader such as Authelia only ever observes a complete document.

Mutations must run inside :meth:`transaction`, which serialises writers
within this process and refuses to save when the file changed on disk
since it was loaded (for example after a manual edit).
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncIterator, Dict, Generic, Optional, Tuple, TypeVar

import anyio
import yaml

from .exceptions import StaleWriteError, StorageError
from .models import Invitation, UserRecord

logger = logging.getLogger("useradmin.stores")

RecordT = TypeVar("RecordT")

_UNCHECKED = object()


def _fingerprint(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return hashlib.sha256(data).hexdigest()


def _read_bytes(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _atomic_write(path: Path, data: bytes, *, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        file_mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        file_mode = mode

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, file_mode)
        os.replace(tmp_name, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class _DocumentStore(Generic[RecordT]):
    """Shared locking and atomic write logic for single-document stores."""

    file_mode = 0o600

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Dict[str, RecordT]:
        records, _ = await self._load()
        return records

    async def save(self, records: Dict[str, RecordT]) -> None:
        await self._save(records, expected=_UNCHECKED)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["StoreTransaction[RecordT]"]:
        """Hold the store lock and yield the current records for mutation.

        The records are saved when the block exits normally. Raising inside
        the block discards any change not already committed.
        """

        async with self._lock:
            records, fingerprint = await self._load()
            transaction = StoreTransaction(self, records, fingerprint)
            yield transaction
            await transaction.commit()

    async def _load(self) -> Tuple[Dict[str, RecordT], object]:
        return await anyio.to_thread.run_sync(self._load_sync)

    async def _save(self, records: Dict[str, RecordT], *, expected: object) -> Optional[str]:
        payload = self._serialise(records)
        fingerprint = _fingerprint(payload)
        if expected is not _UNCHECKED and (fingerprint == expected or (expected is None and not records)):
            return expected
        await anyio.to_thread.run_sync(self._save_sync, payload, expected)
        return fingerprint

    def _save_sync(self, payload: bytes, expected: object) -> None:
        try:
            if expected is not _UNCHECKED:
                current = _fingerprint(_read_bytes(self._path))
                if current != expected:
                    raise StaleWriteError(
                        f"{self._path.name} was modified by another writer; retry the request"
                    )
            _atomic_write(self._path, payload, mode=self.file_mode)
        except OSError as exc:
            logger.error("Failed to write %s: %s", self._path, exc)
            raise StorageError(f"Unable to write {self._path.name}: {exc.strerror or exc}") from exc

    def _load_sync(self) -> Tuple[Dict[str, RecordT], object]:
        raise NotImplementedError

    def _serialise(self, records: Dict[str, RecordT]) -> bytes:
        raise NotImplementedError


class StoreTransaction(Generic[RecordT]):
    """Records loaded under the store lock, with explicit commit points."""

    def __init__(self, store: "_DocumentStore[RecordT]", records: Dict[str, RecordT], fingerprint: object) -> None:
        self._store = store
        self._fingerprint = fingerprint
        self.records = records

    async def commit(self) -> None:
        """Persist the records now; later commits compare against this write."""

        self._fingerprint = await self._store._save(self.records, expected=self._fingerprint)


class CredentialStore(_DocumentStore[UserRecord]):
    """The Authelia ``users.yml`` file database.

    The identity provider reads this file, so a missing file is replaced by
    an empty skeleton but a corrupt one is never silently reset.
    """

    file_mode = 0o644

    def _load_sync(self) -> Tuple[Dict[str, UserRecord], object]:
        try:
            raw = _read_bytes(self._path)
            if raw is None:
                logger.warning("users file missing: %s, creating empty skeleton", self._path)
                raw = self._serialise({})
                _atomic_write(self._path, raw, mode=self.file_mode)
        except OSError as exc:
            logger.error("Failed to read %s: %s", self._path, exc)
            raise StorageError(f"Unable to read {self._path.name}: {exc.strerror or exc}") from exc

        try:
            document = yaml.safe_load(raw.decode("utf-8")) or {}
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            logger.error("Failed to parse %s: %s", self._path, exc)
            raise StorageError(f"{self._path.name} is not valid YAML") from exc

        if not isinstance(document, dict):
            raise StorageError(f"{self._path.name} must contain a mapping at the top level")
        users = document.get("users") or {}
        if not isinstance(users, dict):
            raise StorageError(f"'users' in {self._path.name} must be a mapping")

        records: Dict[str, UserRecord] = {}
        for username, data in users.items():
            try:
                records[str(username)] = UserRecord.from_dict(str(username), data)
            except ValueError as exc:
                raise StorageError(f"Invalid entry in {self._path.name}: {exc}") from exc
        return records, _fingerprint(raw)

    def _serialise(self, records: Dict[str, UserRecord]) -> bytes:
        document = {"users": {name: record.to_dict() for name, record in records.items()}}
        text = yaml.safe_dump(
            document,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            width=1000,
        )
        return text.encode("utf-8")


class InviteStore(_DocumentStore[Invitation]):
    """JSON file holding pending invitations keyed by token."""

    def _load_sync(self) -> Tuple[Dict[str, Invitation], object]:
        try:
            raw = _read_bytes(self._path)
        except OSError as exc:
            logger.error("Failed to read invites file %s, resetting: %s", self._path, exc)
            # Nothing to compare against, so the next save may overwrite it.
            return {}, _UNCHECKED
        if raw is None:
            return {}, None

        fingerprint = _fingerprint(raw)
        try:
            document = json.loads(raw.decode("utf-8") or "{}")
        except (ValueError, UnicodeDecodeError) as exc:
            logger.error("Failed to parse invites file, resetting: %s", exc)
            return {}, fingerprint
        if not isinstance(document, dict):
            logger.error("Invites file %s does not contain an object, resetting", self._path)
            return {}, fingerprint

        invitations: Dict[str, Invitation] = {}
        for token, data in document.items():
            try:
                invitations[token] = Invitation.from_dict(token, data)
            except ValueError as exc:
                logger.warning("Dropping malformed invitation: %s", exc)
        return invitations, fingerprint

    def _serialise(self, records: Dict[str, Invitation]) -> bytes:
        document = {token: invitation.to_dict() for token, invitation in records.items()}
        return json.dumps(document, indent=2).encode("utf-8")


__all__ = ["CredentialStore", "InviteStore", "StoreTransaction"]
