"""Admin authorisation based on group headers forwarded by the auth proxy.

The headers are trusted as-is. The reverse proxy in front of this service
must strip any client supplied copies before forwarding; nothing here
verifies where a header came from.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Iterable, Mapping, Optional, Set

from fastapi import Request

from .config import DEFAULT_ADMIN_GROUP, DEFAULT_GROUP_HEADERS
from .exceptions import Forbidden

logger = logging.getLogger("useradmin.security")

_GROUP_SEPARATOR = re.compile(r"[,\s]+")


class AccessDecision(str, Enum):
    """Outcome of evaluating a request against the admin policy."""

    AUTHORIZED = "authorized"
    DENIED_NO_GROUPS = "no-groups-header"
    DENIED_NOT_ADMIN = "not-admin"


def parse_groups(raw: str) -> Set[str]:
    return {group for group in _GROUP_SEPARATOR.split(raw.strip()) if group}


class AccessGuard:
    """Decide whether forwarded identity headers carry the admin group."""

    def __init__(
        self,
        *,
        headers: Iterable[str] = DEFAULT_GROUP_HEADERS,
        admin_group: str = DEFAULT_ADMIN_GROUP,
    ) -> None:
        header_list = [header.strip().lower() for header in headers if header.strip()]
        if not header_list:
            raise ValueError("At least one trusted group header must be configured")
        if not admin_group.strip():
            raise ValueError("Admin group must not be empty")
        self._headers = tuple(header_list)
        self._admin_group = admin_group.strip()

    @property
    def headers(self) -> tuple[str, ...]:
        return self._headers

    @property
    def admin_group(self) -> str:
        return self._admin_group

    def resolve_groups(self, headers: Mapping[str, str]) -> Optional[Set[str]]:
        """Return the groups of the first trusted header present, if any."""

        lowered = {key.lower(): value for key, value in headers.items()}
        for name in self._headers:
            value = lowered.get(name)
            if value:
                return parse_groups(value)
        return None

    def evaluate(self, headers: Mapping[str, str]) -> AccessDecision:
        groups = self.resolve_groups(headers)
        if groups is None:
            return AccessDecision.DENIED_NO_GROUPS
        if self._admin_group not in groups:
            return AccessDecision.DENIED_NOT_ADMIN
        return AccessDecision.AUTHORIZED

    async def __call__(self, request: Request) -> None:
        """FastAPI dependency that rejects non-admin requests."""

        decision = self.evaluate(request.headers)
        if decision is AccessDecision.AUTHORIZED:
            return None

        client = request.client.host if request.client else "unknown"
        if decision is AccessDecision.DENIED_NO_GROUPS:
            logger.warning("Admin check failed: no groups header for request from %s", client)
            raise Forbidden("forbidden (no groups)")

        groups = self.resolve_groups(request.headers) or set()
        logger.warning(
            "Admin check failed: user not in %s: groups=%s (from %s)",
            self._admin_group,
            ",".join(sorted(groups)),
            client,
        )
        raise Forbidden("forbidden (not admin)")


__all__ = ["AccessDecision", "AccessGuard", "parse_groups"]
