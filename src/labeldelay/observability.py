from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, TextIO


_LOGGER_NAME: Final[str] = "labeldelay"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] delivery=%(delivery_id)s %(message)s"
)
_DELIVERY_ID: ContextVar[str] = ContextVar("labeldelay_delivery_id", default="-")


def configure_logging(
    verbose: bool,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    if not verbose:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler)
    logger.addHandler(stream_handler)

    if state_dir is not None:
        file_handler = _UtcDailyFileHandler(base_dir=state_dir)
        _configure_handler(file_handler)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields))


@contextmanager
def logging_delivery_context(delivery_id: str | None) -> Iterator[None]:
    token = _DELIVERY_ID.set(delivery_id.strip() if delivery_id and delivery_id.strip() else "-")
    try:
        yield
    finally:
        _DELIVERY_ID.reset(token)


def current_delivery_id() -> str:
    return _DELIVERY_ID.get()


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    elif isinstance(value, tuple | list | frozenset | set):
        items = sorted(value) if isinstance(value, frozenset | set) else list(value)
        normalized = ",".join(str(item) for item in items) or "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _configure_handler(handler: logging.Handler) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    handler.addFilter(_DeliveryContextFilter())


class _DeliveryContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "delivery_id"):
            record.delivery_id = _DELIVERY_ID.get()
        return True


class _UtcDailyFileHandler(logging.Handler):
    def __init__(self, *, base_dir: Path) -> None:
        super().__init__()
        self._logs_dir = base_dir / "logs"
        self._stream: TextIO | None = None
        self._active_date = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._stream_for_current_date()
            stream.write(f"{self.format(record)}\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _stream_for_current_date(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is None or self._active_date != date_key:
            self._close_stream()
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            path = self._logs_dir / f"{date_key}.log"
            self._stream = path.open("a", encoding="utf-8")
            self._active_date = date_key
        return self._stream

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
