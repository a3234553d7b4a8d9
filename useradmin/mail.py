"""Outbound invitation mail over SMTP."""
from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.message import EmailMessage

from .config import SMTPConfig

logger = logging.getLogger("useradmin.mail")


class MailDeliveryError(RuntimeError):
    """Raised when the SMTP relay rejects or cannot accept a message."""


class SMTPMailer:
    """Blocking SMTP client; callers run it off the event loop."""

    def __init__(self, config: SMTPConfig) -> None:
        self._config = config

    @property
    def config(self) -> SMTPConfig:
        return self._config

    def _connect(self) -> smtplib.SMTP:
        config = self._config
        if config.secure:
            client: smtplib.SMTP = smtplib.SMTP_SSL(
                config.host,
                config.port,
                timeout=config.timeout,
                context=ssl.create_default_context(),
            )
        else:
            client = smtplib.SMTP(config.host, config.port, timeout=config.timeout)
            client.ehlo()
            if client.has_extn("starttls"):
                client.starttls(context=ssl.create_default_context())
                client.ehlo()
        if config.username:
            client.login(config.username, config.password or "")
        return client

    def verify(self) -> bool:
        """Check that the relay accepts a connection and our credentials."""

        try:
            with self._connect() as client:
                client.noop()
        except (OSError, smtplib.SMTPException) as exc:
            logger.warning("SMTP verify failed: %s", exc)
            return False
        logger.info("SMTP transporter ready")
        return True

    def send(self, *, to: str, subject: str, text: str, html_body: str | None = None) -> None:
        message = EmailMessage()
        message["From"] = self._config.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html_body:
            message.add_alternative(html_body, subtype="html")

        try:
            with self._connect() as client:
                client.send_message(message)
        except (OSError, smtplib.SMTPException) as exc:
            raise MailDeliveryError(str(exc)) from exc

    def send_invite(self, *, to: str, link: str, subject: str) -> None:
        escaped = html.escape(link, quote=True)
        self.send(
            to=to,
            subject=subject,
            text=f"You were invited. Open the link to register: {link}",
            html_body=(
                "<p>You were invited. Open the link to register:</p>"
                f'<p><a href="{escaped}">{escaped}</a></p>'
            ),
        )


__all__ = ["MailDeliveryError", "SMTPMailer"]
