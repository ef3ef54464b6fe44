from __future__ import annotations

from collections.abc import Iterator
import logging

import pytest

from labeldelay import error_reporting
from labeldelay.analytics import AnalyticsEvent, LogAnalyticsSink, NullAnalyticsSink, track
from labeldelay.error_reporting import (
    NullErrorReporter,
    SentryErrorReporter,
    init_error_reporting,
)
from labeldelay.observability import configure_logging


@pytest.fixture(autouse=True)
def restore_labeldelay_logger_state() -> Iterator[None]:
    logger = logging.getLogger("labeldelay")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)


def test_log_sink_writes_structured_event(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)

    LogAnalyticsSink().send(
        AnalyticsEvent(
            user_id="135737",
            event="Close job created",
            properties={"id": "mfix22:test-issue-bot:7", "number": 7},
        )
    )

    err = capsys.readouterr().err
    assert "event=analytics_event" in err
    assert 'name="Close job created"' in err
    assert "prop_id=mfix22:test-issue-bot:7" in err
    assert "user_id=135737" in err


def test_track_swallows_sink_and_builder_failures(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)

    class BrokenSink:
        def send(self, event: AnalyticsEvent) -> None:
            _ = event
            raise ConnectionError("segment down")

    def broken_builder() -> AnalyticsEvent:
        raise KeyError("missing")

    track(BrokenSink(), lambda: AnalyticsEvent(user_id="u", event="e"))
    track(NullAnalyticsSink(), broken_builder)

    err = capsys.readouterr().err
    assert "event=analytics_failed error=\"segment down\" error_type=ConnectionError" in err
    assert "error_type=KeyError" in err


def test_init_without_dsn_returns_null_reporter(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    assert isinstance(init_error_reporting(), NullErrorReporter)


def test_init_with_dsn_initializes_sentry(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}
    monkeypatch.setenv("LD_DSN", "https://public@o0.ingest.sentry.io/1")
    monkeypatch.setenv("SENTRY_ENVIRONMENT", "staging")
    monkeypatch.setattr(
        error_reporting.sentry_sdk, "init", lambda **kwargs: called.update(kwargs)
    )

    reporter = init_error_reporting(dsn_env="LD_DSN")

    assert isinstance(reporter, SentryErrorReporter)
    assert called["dsn"] == "https://public@o0.ingest.sentry.io/1"
    assert called["environment"] == "staging"
    assert called["send_default_pii"] is False


def test_init_failure_falls_back_to_null_reporter(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENTRY_DSN", "not a dsn")

    def bad_init(**kwargs: object) -> None:
        _ = kwargs
        raise ValueError("Unsupported scheme")

    monkeypatch.setattr(error_reporting.sentry_sdk, "init", bad_init)

    assert isinstance(init_error_reporting(), NullErrorReporter)


def test_sentry_reporter_attaches_owner_and_context(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[tuple[BaseException, dict[str, object]]] = []

    def fake_capture(error: BaseException, **scope_kwargs: object) -> None:
        captured.append((error, scope_kwargs))

    monkeypatch.setattr(error_reporting.sentry_sdk, "capture_exception", fake_capture)
    error = RuntimeError("merge failed")

    SentryErrorReporter().report(error, owner="mfix22", context={"job_key": "o:r:1:merge"})
    SentryErrorReporter().report(error, owner=None, context={})

    assert captured[0] == (
        error,
        {"user": {"username": "mfix22"}, "extras": {"job_key": "o:r:1:merge"}},
    )
    assert captured[1][1]["user"] is None


def test_sentry_reporter_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def exploding_capture(error: BaseException, **scope_kwargs: object) -> None:
        _ = error, scope_kwargs
        raise RuntimeError("transport closed")

    monkeypatch.setattr(error_reporting.sentry_sdk, "capture_exception", exploding_capture)

    SentryErrorReporter().report(RuntimeError("x"), owner="o", context={})
