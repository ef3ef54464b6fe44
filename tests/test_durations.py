from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from labeldelay.durations import humanize_duration_ms, parse_duration_ms


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5ms", 5),
        ("1s", 1000),
        ("1.5s", 1500),
        ("2 minutes", 120_000),
        ("3h", 3 * 60 * 60 * 1000),
        ("7 days", 7 * 24 * 60 * 60 * 1000),
        ("1w", 7 * 24 * 60 * 60 * 1000),
        ("1y", int(365.25 * 24 * 60 * 60 * 1000)),
        ("250", 250),
        (" 10 MS ", 10),
        ("-1s", -1000),
        (42, 42),
        (2.5, 3),
    ],
)
def test_parse_duration_ms_accepts_ms_grammar(raw: str | int | float, expected: int) -> None:
    assert parse_duration_ms(raw) == expected


@pytest.mark.parametrize("raw", ["", "soon", "5 fortnights", "1h30m", "x" * 101])
def test_parse_duration_ms_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError, match="Invalid duration"):
        parse_duration_ms(raw)


def test_parse_duration_ms_rejects_bool_and_non_finite() -> None:
    with pytest.raises(ValueError):
        parse_duration_ms(True)
    with pytest.raises(ValueError):
        parse_duration_ms(float("inf"))


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (5, "5 ms"),
        (999, "999 ms"),
        (1000, "1 second"),
        (1499, "1 second"),
        (1500, "2 seconds"),
        (60_000, "1 minute"),
        (2 * 60 * 60 * 1000, "2 hours"),
        (7 * 24 * 60 * 60 * 1000, "7 days"),
        (-3000, "-3 seconds"),
    ],
)
def test_humanize_duration_ms_long_format(value: int, expected: str) -> None:
    assert humanize_duration_ms(value) == expected


@given(st.integers(min_value=0, max_value=10**12))
def test_bare_integer_strings_are_milliseconds(value: int) -> None:
    assert parse_duration_ms(str(value)) == value
