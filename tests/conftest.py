from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from useradmin.config import Argon2Config, Settings
from useradmin.hashing import PasslibHashProvider
from useradmin.invites import InviteService
from useradmin.stores import CredentialStore, InviteStore
from useradmin.users import UserService

# Cheap argon2 parameters so the suite stays fast.
FAST_ARGON2 = Argon2Config(time_cost=1, memory_cost=1024, parallelism=1)

ADMIN_HEADERS = {"Remote-Groups": "admins,users"}


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings.for_directory(tmp_path, hash_provider="passlib", argon2=FAST_ARGON2)


@pytest.fixture()
def hasher() -> PasslibHashProvider:
    return PasslibHashProvider(timeout=10.0, argon2=FAST_ARGON2)


@pytest.fixture()
def credential_store(settings: Settings) -> CredentialStore:
    return CredentialStore(settings.users_file)


@pytest.fixture()
def invite_store(settings: Settings) -> InviteStore:
    return InviteStore(settings.invites_file)


@pytest.fixture()
def user_service(credential_store: CredentialStore, hasher: PasslibHashProvider) -> UserService:
    return UserService(credential_store, hasher)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def invite_service(invite_store: InviteStore, user_service: UserService, clock: FrozenClock) -> InviteService:
    return InviteService(
        invite_store,
        user_service,
        base_url="https://auth.example.com",
        clock=clock,
    )
