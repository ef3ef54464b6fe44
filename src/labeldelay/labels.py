from __future__ import annotations

from collections.abc import Iterable
import sys

from labeldelay.config import LabelOverride, LabelPolicy, OverrideMode
from labeldelay.durations import humanize_duration_ms
from labeldelay.models import EffectiveLabel


def matching_labels(policy: LabelPolicy, labels: Iterable[str]) -> tuple[str, ...]:
    present = set(labels)
    return tuple(
        label
        for label in policy.labels
        if label in present and policy.override_for(label) is not OverrideMode.DISABLED
    )


def resolve_label(policy: LabelPolicy, label: str) -> EffectiveLabel:
    override = policy.override_for(label)
    if override is OverrideMode.DISABLED:
        raise ValueError(f"Label {label!r} is disabled")
    delay_ms = policy.default_delay_ms
    comment = policy.default_comment
    if isinstance(override, LabelOverride):
        if override.has_delay:
            delay_ms = override.delay_ms
        if override.has_comment:
            comment = override.comment
    return EffectiveLabel(label=label, delay_ms=delay_ms, comment=comment)


def effective_label(policy: LabelPolicy, matching: Iterable[str]) -> EffectiveLabel | None:
    """Pick the label governing delay and comment.

    Shortest resolved delay wins. A suppressed delay ranks after every concrete
    delay, and equal delays fall back to the label name.
    """
    candidates = [resolve_label(policy, label) for label in dict.fromkeys(matching)]
    if not candidates:
        return None
    return min(candidates, key=_tie_break_key)


def render_comment(template: str, effective: EffectiveLabel, *, author_login: str) -> str:
    delay_text = "" if effective.delay_ms is None else humanize_duration_ms(effective.delay_ms)
    return (
        template.replace("$DELAY", delay_text)
        .replace("$LABEL", effective.label)
        .replace("$AUTHOR", author_login)
    )


def _tie_break_key(candidate: EffectiveLabel) -> tuple[int, str]:
    delay = sys.maxsize if candidate.delay_ms is None else candidate.delay_ms
    return delay, candidate.label
