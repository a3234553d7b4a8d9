"""Domain records persisted by the user administration service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import ValidationError

DEFAULT_GROUPS = ("users",)


def normalise_groups(value: object, *, default: tuple[str, ...] | None = DEFAULT_GROUPS) -> List[str]:
    """Coerce a client supplied group value into a non-empty list of names.

    ``None`` yields ``default`` (or fails when no default applies) and a bare
    string is wrapped into a one element list.
    """

    if value is None:
        if default is None:
            raise ValidationError("groups must not be empty")
        return list(default)
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError("groups must be a string or a list of strings")

    groups: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError("groups must contain only strings")
        cleaned = item.strip()
        if cleaned and cleaned not in groups:
            groups.append(cleaned)
    if not groups:
        raise ValidationError("groups must not be empty")
    return groups


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_millis(value: object) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Expected an epoch timestamp in milliseconds, got {value!r}")
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class UserRecord:
    """A single entry of the Authelia ``users`` mapping.

    ``extra`` keeps keys this service does not manage (for example
    ``disabled``) so that rewriting the file never drops them.
    """

    username: str
    displayname: str
    password: str
    groups: tuple[str, ...]
    email: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(username: str, data: Mapping[str, Any]) -> "UserRecord":
        if not isinstance(data, Mapping):
            raise ValueError(f"Entry for user '{username}' is not a mapping")
        known = {"displayname", "email", "password", "groups"}
        groups = data.get("groups") or []
        if isinstance(groups, str):
            groups = [groups]
        email = data.get("email")
        return UserRecord(
            username=username,
            displayname=str(data.get("displayname") or username),
            password=str(data.get("password") or ""),
            groups=tuple(str(group) for group in groups),
            email=str(email) if email is not None else None,
            extra={key: value for key, value in data.items() if key not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"displayname": self.displayname}
        if self.email is not None:
            data["email"] = self.email
        data["password"] = self.password
        data["groups"] = list(self.groups)
        data.update(self.extra)
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Return the record without its password hash."""

        data = self.to_dict()
        data.pop("password", None)
        return data


@dataclass(frozen=True)
class Invitation:
    """A pending self-service registration bound to an opaque token."""

    token: str
    email: str
    groups: tuple[str, ...]
    displayname: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @staticmethod
    def from_dict(token: str, data: Mapping[str, Any]) -> "Invitation":
        if not isinstance(data, Mapping):
            raise ValueError(f"Invitation '{token}' is not a mapping")
        email = data.get("email")
        if not isinstance(email, str) or not email:
            raise ValueError(f"Invitation '{token}' has no email")
        groups = data.get("groups") or list(DEFAULT_GROUPS)
        if isinstance(groups, str):
            groups = [groups]
        return Invitation(
            token=token,
            email=email,
            groups=tuple(str(group) for group in groups),
            displayname=str(data.get("displayname") or ""),
            created_at=_from_millis(data.get("createdAt")),
            expires_at=_from_millis(data.get("expiresAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "groups": list(self.groups),
            "displayname": self.displayname,
            "createdAt": _to_millis(self.created_at),
            "expiresAt": _to_millis(self.expires_at),
        }


__all__ = ["DEFAULT_GROUPS", "Invitation", "UserRecord", "normalise_groups"]
