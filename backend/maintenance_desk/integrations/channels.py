from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class Contact:
    name: str
    email: Optional[str] = None
    webhook_url: Optional[str] = None


@dataclass
class OutgoingMessage:
    subject: str
    body: str
    payload: Dict[str, Any]


class DeliveryError(Exception):
    """A channel could not hand the message over."""


class NotificationChannel(ABC):
    """One way of reaching a contact (mail server, HTTP endpoint, ...)."""

    name: str = "channel"

    @abstractmethod
    def address_for(self, contact: Contact) -> Optional[str]:
        """Where this channel would deliver to, or None if it can't reach the contact."""

    @abstractmethod
    def deliver(self, contact: Contact, message: OutgoingMessage) -> None:
        ...


class SmtpEmailChannel(NotificationChannel):
    name = "email"

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "maintenance@example.com",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def address_for(self, contact: Contact) -> Optional[str]:
        return contact.email or None

    def deliver(self, contact: Contact, message: OutgoingMessage) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = contact.email
        msg["Subject"] = message.subject
        msg.set_content(message.body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery to {contact.email} failed: {exc}") from exc


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._client = client

    def address_for(self, contact: Contact) -> Optional[str]:
        return contact.webhook_url or None

    def deliver(self, contact: Contact, message: OutgoingMessage) -> None:
        body = {"subject": message.subject, "text": message.body, **message.payload}
        try:
            if self._client is not None:
                resp = self._client.post(contact.webhook_url, json=body)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(contact.webhook_url, json=body)
            resp.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DeliveryError(f"Webhook {contact.webhook_url} failed: {exc}") from exc


class LogChannel(NotificationChannel):
    """Test-mode channel: accepts anything with an address and only logs it."""

    name = "log"

    def address_for(self, contact: Contact) -> Optional[str]:
        return contact.email or contact.webhook_url or None

    def deliver(self, contact: Contact, message: OutgoingMessage) -> None:
        logger.info(
            "TEST MODE: would notify %s <%s>: %s",
            contact.name,
            self.address_for(contact),
            message.subject,
        )
