"""Notification Router.

Routes alert transitions to the configured notification channels. Every
channel is delivered to concurrently and independently of the others: a slow or
failing channel never delays or blocks delivery to another. Failed deliveries
are retried with a linear backoff and then dropped with a logged error.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
import logging
import os
import smtplib
from typing import Any

import httpx

from .alerts import AlertInstance, AlertState
from .config import ChannelConfig, NotificationConfig
from .exceptions import FatalConfigError, NotificationError

__all__ = [
    "Notification",
    "Channel",
    "LogChannel",
    "WebhookChannel",
    "EmailChannel",
    "DeliveryAttempt",
    "NotificationRouter",
    "build_channel",
]

_LOGGER = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Notification:
    """Message delivered to a channel for one alert transition."""

    fingerprint: str
    status: str
    """Either `firing` or `resolved`."""
    labels: dict[str, str]
    annotations: dict[str, str] = field(default_factory=dict)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    value: float = 0.0

    @classmethod
    def from_alert(cls, alert: AlertInstance) -> "Notification":
        """Build the message for an alert in its current state."""
        status = "resolved" if alert.state == AlertState.RESOLVED else "firing"
        return cls(
            fingerprint=alert.fingerprint,
            status=status,
            labels=dict(alert.labels),
            annotations=dict(alert.annotations),
            starts_at=alert.fired_at or alert.active_since,
            ends_at=alert.resolved_at,
            value=alert.value,
        )

    @property
    def alertname(self) -> str:
        return self.labels.get("alertname", "")

    @property
    def summary(self) -> str:
        """One line description of the notification."""
        text = self.annotations.get("summary") or self.alertname
        return f"[{self.status.upper()}] {text}"

    def to_payload(self) -> dict[str, Any]:
        """Return an AlertManager style webhook payload."""
        return {
            "version": "4",
            "status": self.status,
            "alerts": [
                {
                    "status": self.status,
                    "labels": self.labels,
                    "annotations": self.annotations,
                    "startsAt": _iso(self.starts_at),
                    "endsAt": _iso(self.ends_at),
                    "fingerprint": self.fingerprint,
                    "value": self.value,
                }
            ],
            "commonLabels": self.labels,
        }


class Channel(ABC):
    """A destination for notifications."""

    def __init__(self, name: str, match: dict[str, str] | None = None) -> None:
        self.name = name
        self.match = match or {}

    def accepts(self, labels: dict[str, str]) -> bool:
        """Return True if the channel wants alerts with these labels."""
        return all(labels.get(k) == v for k, v in self.match.items())

    @abstractmethod
    async def send(self, message: Notification) -> bool:
        """Deliver the message, returning True on success.

        A channel may also raise to report failure.
        """

    async def close(self) -> None:
        """Release any resources held by the channel."""

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"


class LogChannel(Channel):
    """Writes notifications to the log."""

    async def send(self, message: Notification) -> bool:
        _LOGGER.warning("%s: %s %s", self.name, message.summary, message.labels)
        return True


class WebhookChannel(Channel):
    """Posts notifications as JSON to an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        match: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name, match)
        self._url = url
        self._headers = headers or {}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, message: Notification) -> bool:
        try:
            response = await self._client.post(
                self._url, json=message.to_payload(), headers=self._headers
            )
        except httpx.HTTPError as err:
            raise NotificationError(f"Webhook {self.name} failed: {err}") from err
        if response.is_error:
            raise NotificationError(
                f"Webhook {self.name} returned status {response.status_code}"
            )
        return True


class EmailChannel(Channel):
    """Sends notifications by email over SMTP."""

    def __init__(
        self,
        name: str,
        host: str,
        sender: str,
        recipients: list[str],
        match: dict[str, str] | None = None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(name, match)
        self._host = host
        self._port = port
        self._sender = sender
        self._recipients = recipients
        self._username = username
        self._password = password
        self._starttls = starttls
        self._timeout = timeout

    def _build_message(self, message: Notification) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = message.summary
        email["From"] = self._sender
        email["To"] = ", ".join(self._recipients)
        lines = [message.summary, ""]
        lines.extend(f"{k}: {v}" for k, v in sorted(message.labels.items()))
        if message.annotations:
            lines.append("")
            lines.extend(f"{k}: {v}" for k, v in sorted(message.annotations.items()))
        email.set_content("\n".join(lines))
        return email

    def _send(self, email: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            if self._starttls:
                server.starttls()
            if self._username and self._password:
                server.login(self._username, self._password)
            server.send_message(email)

    async def send(self, message: Notification) -> bool:
        email = self._build_message(message)
        try:
            await asyncio.to_thread(self._send, email)
        except (smtplib.SMTPException, OSError) as err:
            raise NotificationError(f"Email {self.name} failed: {err}") from err
        return True


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of delivering one notification to one channel."""

    channel: str
    fingerprint: str
    success: bool
    attempts: int
    error: str | None = None


class NotificationRouter:
    """Delivers alert notifications to every matching channel."""

    def __init__(
        self,
        channels: Iterable[Channel],
        config: NotificationConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the NotificationRouter.

        Args:
            channels: Channels notifications are routed to
            config: Retry settings
            sleep: Awaitable used to wait between retries
        """
        self._channels = list(channels)
        self._config = config or NotificationConfig()
        self._sleep = sleep

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    async def route(self, alert: AlertInstance) -> set[DeliveryAttempt]:
        """Deliver the alert to every channel that accepts it."""
        message = Notification.from_alert(alert)
        channels = [c for c in self._channels if c.accepts(message.labels)]
        if not channels:
            _LOGGER.debug("No channel accepts alert %s", alert)
            return set()
        results = await asyncio.gather(
            *(self._deliver(channel, message) for channel in channels)
        )
        return set(results)

    async def _deliver(self, channel: Channel, message: Notification) -> DeliveryAttempt:
        attempt = 0
        while True:
            attempt += 1
            error: str | None = None
            try:
                if await channel.send(message):
                    _LOGGER.debug(
                        "Delivered %s to %s (attempt %d)",
                        message.fingerprint,
                        channel,
                        attempt,
                    )
                    return DeliveryAttempt(
                        channel.name, message.fingerprint, True, attempt
                    )
                error = "channel reported failure"
            except Exception as err:  # pylint: disable=broad-except
                error = str(err) or err.__class__.__name__
            if attempt > self._config.max_retries:
                _LOGGER.error(
                    "Dropping notification %s for %s after %d attempts: %s",
                    message.alertname,
                    channel,
                    attempt,
                    error,
                )
                return DeliveryAttempt(
                    channel.name, message.fingerprint, False, attempt, error
                )
            delay = self._config.backoff * attempt
            _LOGGER.warning(
                "Delivery to %s failed, retrying in %.1fs: %s", channel, delay, error
            )
            await self._sleep(delay)


def build_channel(config: ChannelConfig) -> Channel:
    """Create a channel from its configuration."""
    if config.type == "log":
        return LogChannel(config.name, config.match)
    if config.type == "webhook":
        if not config.url:
            raise FatalConfigError(f"Webhook channel {config.name} requires a url")
        return WebhookChannel(
            config.name,
            config.url,
            match=config.match,
            headers=config.headers,
            timeout=config.timeout,
        )
    if config.type == "email":
        if not config.host or not config.sender or not config.recipients:
            raise FatalConfigError(
                f"Email channel {config.name} requires host, sender and recipients"
            )
        password = None
        if config.password_env:
            password = os.environ.get(config.password_env)
            if password is None:
                _LOGGER.warning(
                    "Environment variable %s for channel %s is not set",
                    config.password_env,
                    config.name,
                )
        return EmailChannel(
            config.name,
            config.host,
            config.sender,
            config.recipients,
            match=config.match,
            port=config.port,
            username=config.username,
            password=password,
            starttls=config.starttls,
            timeout=config.timeout,
        )
    raise FatalConfigError(
        f"Channel {config.name} has unsupported type {config.type!r}"
    )
