"""Notification helpers for delivering stock alerts to external channels."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Iterable, List, Protocol, Sequence, Tuple

import requests

from .config import NotificationConfig
from .models import ProductRecord

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Protocol defining the notifier contract."""

    def send(self, subject: str, body: str) -> None:
        ...


@dataclass
class EmailNotifier:
    """Send one plain-text email to every recipient over SMTP."""

    sender: str
    password: str
    recipients: Sequence[str]
    host: str = "smtp.gmail.com"
    port: int = 587
    timeout: int = 30

    def send(self, subject: str, body: str) -> None:
        message = MIMEText(body, "plain", "utf-8")
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message["Subject"] = subject

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.sender, self.password)
            server.send_message(message)
        logger.info("Email alert sent to %d recipient(s)", len(self.recipients))


@dataclass
class SlackNotifier:
    """Send messages to Slack via Incoming Webhook."""

    webhook_url: str
    timeout: int = 10

    def send(self, subject: str, body: str) -> None:
        payload = {"text": f"{subject}\n{body}"}
        response = requests.post(
            self.webhook_url,
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()


@dataclass
class CompositeNotifier:
    """Fan-out notifier that forwards messages to multiple channels."""

    notifiers: List[Notifier]

    def send(self, subject: str, body: str) -> None:
        for notifier in self.notifiers:
            try:
                notifier.send(subject, body)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to deliver notification via %s", type(notifier).__name__)


def build_notifier(config: NotificationConfig) -> CompositeNotifier | None:
    """Construct a notifier from notification configuration."""
    notifiers: list[Notifier] = []

    if config.email_enabled:
        notifiers.append(
            EmailNotifier(
                sender=config.sender,
                password=config.password,
                recipients=list(config.recipients),
                host=config.smtp_host,
                port=config.smtp_port,
            )
        )

    if config.slack_webhook:
        notifiers.append(SlackNotifier(webhook_url=config.slack_webhook))

    if not notifiers:
        return None
    return CompositeNotifier(notifiers=notifiers)


def format_stock_alert(store: str, records: Iterable[ProductRecord]) -> Tuple[str, str]:
    """Render qualifying products into an alert subject and body."""
    subject = f"{store} in Stock"
    body = "\n".join(record.url or "" for record in records)
    return subject, body


__all__ = [
    "CompositeNotifier",
    "EmailNotifier",
    "Notifier",
    "SlackNotifier",
    "build_notifier",
    "format_stock_alert",
]
