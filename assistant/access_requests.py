"""E-mail support when a signed-in user without an assistant role asks for access."""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Callable

from .config import SmtpOptions


logger = logging.getLogger("assistant.access_requests")

ACCESS_REQUEST_SUBJECT = "Access request for the Keycloak assistant"


class AccessRequestError(Exception):
    """The access request could not be delivered."""


class AccessRequestNotConfigured(AccessRequestError):
    """The mail relay or the support address is missing."""


class AccessRequestSender:
    def __init__(
        self,
        options: SmtpOptions,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self._options = options
        self._smtp_factory = smtp_factory

    @property
    def options(self) -> SmtpOptions:
        return self._options

    def build_message(self, login: str) -> EmailMessage:
        options = self._options
        if not options.host:
            raise AccessRequestNotConfigured("SMTP host is not configured.")
        if not options.support_recipient:
            raise AccessRequestNotConfigured("Support recipient address is not configured.")
        if not options.from_address:
            raise AccessRequestNotConfigured("Sender address is not configured.")

        message = EmailMessage()
        message["From"] = options.from_address
        message["To"] = options.support_recipient
        message["Subject"] = ACCESS_REQUEST_SUBJECT
        message.set_content(f"Please grant me access to the Keycloak assistant.\n{login.strip()}.\n")
        return message

    def send(self, login: str) -> None:
        if not login or not login.strip():
            raise ValueError("login must not be empty")

        message = self.build_message(login)
        options = self._options
        try:
            with self._smtp_factory(options.host, options.port, timeout=options.timeout) as smtp:
                if options.starttls:
                    smtp.starttls(context=ssl.create_default_context())
                if options.username:
                    smtp.login(options.username, options.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send access request for %s: %s", login, exc)
            raise AccessRequestError(f"Mail relay rejected the access request: {exc}") from exc
        logger.info("Sent access request for %s to %s", login, options.support_recipient)


__all__ = [
    "ACCESS_REQUEST_SUBJECT",
    "AccessRequestError",
    "AccessRequestNotConfigured",
    "AccessRequestSender",
]
