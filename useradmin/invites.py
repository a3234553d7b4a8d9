"""Invitation workflow: issue single-use tokens and redeem them for accounts.

A token moves from created to exactly one terminal state: accepted,
expired or revoked. Expired tokens are removed lazily whenever the invite
store is touched.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

from .exceptions import Expired, InvalidToken, UserAdminError, ValidationError
from .mail import MailDeliveryError, SMTPMailer
from .models import Invitation, normalise_groups
from .stores import InviteStore
from .users import UserService

logger = logging.getLogger("useradmin.invites")

DEFAULT_EXPIRES_MINUTES = 60
_MAX_EXPIRES_MINUTES = 60 * 24 * 30

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class InviteResult:
    token: str
    link: str
    invitation: Invitation


def _normalise_expiry(value: object) -> float:
    if value is None:
        return DEFAULT_EXPIRES_MINUTES
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("expiresMinutes must be a number")
    if value <= 0:
        raise ValidationError("expiresMinutes must be positive")
    if value > _MAX_EXPIRES_MINUTES:
        raise ValidationError(f"expiresMinutes must not exceed {_MAX_EXPIRES_MINUTES}")
    return float(value)


class InviteService:
    """Create, list, revoke and accept invitations."""

    def __init__(
        self,
        store: InviteStore,
        users: UserService,
        *,
        mailer: Optional[SMTPMailer] = None,
        base_url: str = "",
        invite_path: str = "/admin/invite/accept.html",
        subject: str = "Invitation to Authelia",
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._users = users
        self._mailer = mailer
        self._base_url = base_url.rstrip("/")
        self._invite_path = invite_path if invite_path.startswith("/") else f"/{invite_path}"
        self._subject = subject
        self._clock = clock

    @property
    def store(self) -> InviteStore:
        return self._store

    def build_link(self, token: str) -> str:
        return f"{self._base_url}{self._invite_path}?{urlencode({'token': token})}"

    async def invite(
        self,
        email: Optional[str],
        groups: object = None,
        displayname: Optional[str] = None,
        expires_minutes: object = DEFAULT_EXPIRES_MINUTES,
    ) -> InviteResult:
        if not isinstance(email, str) or not email.strip():
            raise ValidationError("email is required")
        resolved_groups = normalise_groups(groups)
        minutes = _normalise_expiry(expires_minutes)

        now = self._clock()
        token = secrets.token_urlsafe(32)
        invitation = Invitation(
            token=token,
            email=email.strip(),
            groups=tuple(resolved_groups),
            displayname=(displayname or "").strip(),
            created_at=now,
            expires_at=now + timedelta(minutes=minutes),
        )

        async with self._store.transaction() as transaction:
            self._prune_expired(transaction.records, now)
            transaction.records[token] = invitation

        link = self.build_link(token)
        logger.info("Invite created for %s (expires %s)", invitation.email, invitation.expires_at.isoformat())
        return InviteResult(token=token, link=link, invitation=invitation)

    def deliver(self, result: InviteResult) -> bool:
        """Best-effort mail delivery; failures are logged and never raised."""

        email = result.invitation.email
        if self._mailer is None:
            logger.info("Invite created for %s (no SMTP configured). Link: %s", email, result.link)
            return False
        try:
            self._mailer.send_invite(to=email, link=result.link, subject=self._subject)
        except MailDeliveryError as exc:
            logger.warning("Failed to send invite mail to %s: %s", email, exc)
            return False
        logger.info("Invite mail sent to %s", email)
        return True

    async def list_pending(self) -> Dict[str, Invitation]:
        now = self._clock()
        async with self._store.transaction() as transaction:
            self._prune_expired(transaction.records, now)
            return dict(transaction.records)

    async def revoke(self, token: str) -> None:
        async with self._store.transaction() as transaction:
            if transaction.records.pop(token, None) is None:
                raise InvalidToken()
        logger.info("Invite %s... revoked", token[:8])

    async def accept(
        self,
        token: Optional[str],
        username: Optional[str],
        password: Optional[str],
    ) -> None:
        """Redeem ``token`` by creating ``username`` with the invited settings.

        The token is removed and committed before the account is written,
        and only put back if creating the account fails, so a token can
        never be redeemed twice.
        """

        if not token or not username or not password:
            raise ValidationError("token/username/password required")

        now = self._clock()
        expired = False
        async with self._store.transaction() as transaction:
            invitation = transaction.records.get(token)
            if invitation is None:
                raise InvalidToken()
            if invitation.is_expired(now):
                del transaction.records[token]
                expired = True
            else:
                del transaction.records[token]
                await transaction.commit()
                try:
                    await self._users.create(
                        username,
                        password,
                        email=invitation.email,
                        groups=list(invitation.groups),
                        displayname=invitation.displayname or None,
                    )
                except UserAdminError:
                    transaction.records[token] = invitation
                    await transaction.commit()
                    raise

        if expired:
            logger.info("Rejected expired invite for %s", invitation.email)
            raise Expired()

        logger.info("Invite accepted -> created user %s", username)

    def _prune_expired(self, records: Dict[str, Invitation], now: datetime) -> List[str]:
        stale = [token for token, invitation in records.items() if invitation.is_expired(now)]
        for token in stale:
            del records[token]
        if stale:
            logger.info("Removed %d expired invitation(s)", len(stale))
        return stale


__all__ = ["DEFAULT_EXPIRES_MINUTES", "InviteResult", "InviteService"]
