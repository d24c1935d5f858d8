"""
Notification Sink

Best-effort fan-out of outcome events to the configured channels. A broken
channel is logged and skipped; it never fails the operation that triggered
the notification and never blocks the other channels.
"""

from __future__ import annotations

import logging
import smtplib
import socket
import time
from dataclasses import dataclass
from email.message import EmailMessage
from enum import Enum
from typing import List, Optional

import httpx

from common.config import NotificationConfig
from common.exceptions import NotificationFailed

logger = logging.getLogger(__name__)

FOOTER = "r8-lifecycle"


class Severity(Enum):
    """Event severity; maps onto Slack attachment colours."""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def color(self) -> str:
        return {
            Severity.SUCCESS: "good",
            Severity.INFO: "#439FE0",
            Severity.WARNING: "warning",
            Severity.ERROR: "danger",
        }[self]


@dataclass
class Notification:
    """One outcome event."""
    subject: str
    body: str
    severity: Severity = Severity.INFO


class Channel:
    """A notification destination."""

    name = "channel"

    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LogChannel(Channel):
    """Writes notifications to the application log."""

    name = "log"

    def send(self, notification: Notification) -> None:
        level = {
            Severity.ERROR: logging.ERROR,
            Severity.WARNING: logging.WARNING,
        }.get(notification.severity, logging.INFO)
        logger.log(level, f"[{notification.severity.value}] {notification.subject}: {notification.body}")


class SlackWebhookChannel(Channel):
    """Posts an attachment message to a Slack incoming webhook."""

    name = "slack"

    def __init__(self, webhook_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.client = client

    def payload(self, notification: Notification) -> dict:
        return {
            "attachments": [
                {
                    "color": notification.severity.color,
                    "title": notification.subject,
                    "text": notification.body,
                    "footer": f"{FOOTER} on {socket.gethostname()}",
                    "ts": int(time.time()),
                }
            ]
        }

    def send(self, notification: Notification) -> None:
        payload = self.payload(notification)
        if self.client is not None:
            response = self.client.post(self.webhook_url, json=payload, timeout=self.timeout)
        else:
            response = httpx.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class EmailChannel(Channel):
    """Sends a plain-text mail through an SMTP relay."""

    name = "email"

    def __init__(self, config: NotificationConfig, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout

    def build_message(self, notification: Notification) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[{notification.severity.value.upper()}] {notification.subject}"
        message["From"] = self.config.email_from
        message["To"] = self.config.email_to
        message.set_content(f"{notification.body}\n\n-- \n{FOOTER} on {socket.gethostname()}\n")
        return message

    def send(self, notification: Notification) -> None:
        message = self.build_message(notification)
        server = self.config.smtp_server or "localhost"
        with smtplib.SMTP(server, self.config.smtp_port, timeout=self.timeout) as smtp:
            if self.config.smtp_user:
                smtp.starttls()
                smtp.login(self.config.smtp_user, self.config.smtp_password)
            smtp.send_message(message)


class NotificationSink:
    """
    Fan-out to zero or more channels.

    Example:
        sink = NotificationSink.from_config(config.notifications)
        sink.notify(Notification("Update committed", run.summary(), Severity.SUCCESS))
    """

    def __init__(self, channels: Optional[List[Channel]] = None, enabled: bool = True):
        self.channels = list(channels or [])
        self.enabled = enabled

    @classmethod
    def from_config(cls, config: NotificationConfig) -> "NotificationSink":
        channels: List[Channel] = [LogChannel()]
        if config.slack_webhook_url:
            channels.append(SlackWebhookChannel(config.slack_webhook_url))
        if config.email_to:
            channels.append(EmailChannel(config))
        return cls(channels, enabled=config.enabled)

    def notify(self, notification: Notification) -> List[NotificationFailed]:
        """
        Deliver to every channel, at most once each.

        Returns:
            Failures, one per channel that could not deliver
        """
        if not self.enabled:
            logger.debug(f"Notifications disabled, dropping: {notification.subject}")
            return []

        failures = []
        for channel in self.channels:
            try:
                channel.send(notification)
            except Exception as e:
                failure = NotificationFailed(channel.name, str(e))
                logger.warning(str(failure))
                failures.append(failure)
        return failures
