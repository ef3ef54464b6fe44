from __future__ import annotations

import logging
import os
from typing import Protocol

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from labeldelay.observability import log_event


LOGGER = logging.getLogger("labeldelay.error_reporting")


class ErrorReporter(Protocol):
    def report(
        self, error: BaseException, *, owner: str | None, context: dict[str, object]
    ) -> None: ...


class NullErrorReporter:
    def report(
        self, error: BaseException, *, owner: str | None, context: dict[str, object]
    ) -> None:
        _ = error, owner, context


class SentryErrorReporter:
    def report(
        self, error: BaseException, *, owner: str | None, context: dict[str, object]
    ) -> None:
        try:
            sentry_sdk.capture_exception(
                error,
                user={"username": owner} if owner else None,
                extras=context,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "error_report_failed",
                error_type=type(exc).__name__,
                original_error_type=type(error).__name__,
            )


def init_error_reporting(*, dsn_env: str = "SENTRY_DSN") -> ErrorReporter:
    dsn = os.environ.get(dsn_env, "").strip()
    if not dsn:
        log_event(LOGGER, "error_reporting_disabled", reason="no_dsn", dsn_env=dsn_env)
        return NullErrorReporter()
    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
            integrations=[
                LoggingIntegration(level=logging.INFO, event_level=None),
            ],
            send_default_pii=False,
        )
    except Exception as exc:  # noqa: BLE001
        # Malformed DSNs raise here; the service keeps running without reporting.
        log_event(
            LOGGER,
            "error_reporting_disabled",
            reason="init_failed",
            error_type=type(exc).__name__,
        )
        return NullErrorReporter()
    log_event(LOGGER, "error_reporting_enabled", dsn_env=dsn_env)
    return SentryErrorReporter()
