"""
Structured notifications for the external alerting collaborator.

Components report archiving failures, corruption, chain gaps, validation
outcomes and replication lag as NotificationEvent values. Delivery (email,
Slack, pager) is external; this module only hands events off:
- LoggingNotifier writes them to the log
- WebhookNotifier POSTs them as JSON to a collaborator endpoint
- InMemoryNotifier keeps them for tests
- NotificationHub fans out to several sinks

Invariants:
    - Emitting never raises into the caller; a broken sink is logged
    - Events are immutable once created

How to change safely:
    - Add event fields with defaults; collaborators parse the JSON body
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import aiohttp

from .models import now_ms

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Event severity, ordered from least to most urgent."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class NotificationEvent:
    """A structured event for the alerting collaborator.

    Attributes:
        component: Emitting component (archiver, base_backup, validator, ...)
        severity: Event severity
        message: Human readable summary
        timestamp: Event time (Unix ms)
        details: Machine readable context (keys, LSN ranges, error codes)
    """

    component: str
    severity: Severity
    message: str
    timestamp: int = field(default_factory=now_ms)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "details": self.details,
        }


@runtime_checkable
class Notifier(Protocol):
    """Anything that accepts notification events."""

    async def emit(self, event: NotificationEvent) -> None: ...


class LoggingNotifier:
    """Writes events to the log at a level matching their severity."""

    async def emit(self, event: NotificationEvent) -> None:
        logger.log(
            _LOG_LEVELS[event.severity],
            f"[{event.component}] {event.message}",
            extra={"notification": event.to_dict()},
        )


class InMemoryNotifier:
    """Collects events in memory (testing helper)."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def by_severity(self, severity: Severity) -> list[NotificationEvent]:
        return [e for e in self.events if e.severity == severity]

    def by_component(self, component: str) -> list[NotificationEvent]:
        return [e for e in self.events if e.component == component]


class WebhookNotifier:
    """POSTs events as JSON to the alerting collaborator.

    Events below min_severity are dropped. Delivery failures are logged and
    swallowed so alerting problems never stall the backup pipeline.
    """

    def __init__(
        self,
        url: str,
        min_severity: Severity = Severity.WARNING,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self.min_severity = min_severity
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def emit(self, event: NotificationEvent) -> None:
        if event.severity.rank < self.min_severity.rank:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        try:
            async with self._session.post(self.url, json=event.to_dict()) as response:
                if response.status >= 400:
                    logger.warning(
                        f"Notification webhook returned HTTP {response.status}",
                        extra={"url": self.url, "component": event.component},
                    )
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(
                f"Notification webhook failed: {e}",
                extra={"url": self.url, "component": event.component},
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class NotificationHub:
    """Fans events out to every configured sink."""

    def __init__(self, sinks: list[Notifier] | None = None) -> None:
        self.sinks: list[Notifier] = list(sinks or [])

    async def emit(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(f"Notification sink {type(sink).__name__} failed: {e}", exc_info=True)

    async def notify(
        self,
        component: str,
        severity: Severity,
        message: str,
        **details: Any,
    ) -> None:
        """Build and emit an event in one call."""
        await self.emit(NotificationEvent(component, severity, message, details=details))

    async def close(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()


def create_notifier(config: Any) -> NotificationHub:
    """Build the notification hub from a NotificationConfig section."""
    sinks: list[Notifier] = [LoggingNotifier()]
    if config.webhook_url:
        sinks.append(
            WebhookNotifier(
                config.webhook_url,
                min_severity=Severity(config.min_severity),
                timeout_seconds=config.timeout_seconds,
            )
        )
    return NotificationHub(sinks)
