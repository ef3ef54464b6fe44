from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
from typing import Protocol

from labeldelay.observability import log_event


LOGGER = logging.getLogger("labeldelay.analytics")


@dataclass(frozen=True)
class AnalyticsEvent:
    user_id: str
    event: str
    properties: dict[str, object] = field(default_factory=dict)


class AnalyticsSink(Protocol):
    def send(self, event: AnalyticsEvent) -> None: ...


class LogAnalyticsSink:
    def send(self, event: AnalyticsEvent) -> None:
        log_event(
            LOGGER,
            "analytics_event",
            user_id=event.user_id,
            name=event.event,
            **{f"prop_{key}": value for key, value in event.properties.items()},
        )


class NullAnalyticsSink:
    def send(self, event: AnalyticsEvent) -> None:
        _ = event


def track(sink: AnalyticsSink, build: Callable[[], AnalyticsEvent]) -> None:
    """Send an analytics event without letting any failure escape."""
    try:
        sink.send(build())
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "analytics_failed", error_type=type(exc).__name__, error=str(exc))
