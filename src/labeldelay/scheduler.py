from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Protocol

from labeldelay.analytics import AnalyticsEvent, AnalyticsSink, track
from labeldelay.config import LabelPolicy
from labeldelay.identity import key_for
from labeldelay.job_store import JobStore, now_ms
from labeldelay.labels import effective_label, matching_labels, render_comment
from labeldelay.models import (
    ALL_ACTIONS,
    COMMENT,
    ActionKind,
    EffectiveLabel,
    JobPayload,
    ScheduledJob,
    ScheduleOutcome,
    Thread,
)
from labeldelay.observability import log_event


LOGGER = logging.getLogger("labeldelay.scheduler")


class ThreadCommenter(Protocol):
    def post_issue_comment(self, number: int, body: str) -> int | None: ...


class ActionScheduler:
    def __init__(
        self,
        *,
        jobs: JobStore,
        analytics: AnalyticsSink,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._jobs = jobs
        self._analytics = analytics
        self._clock = clock

    def on_labels_changed(
        self,
        thread: Thread,
        policy: LabelPolicy,
        action: ActionKind,
        *,
        github: ThreadCommenter,
    ) -> ScheduleOutcome:
        key = key_for(thread, action)
        if thread.is_closed:
            log_event(
                LOGGER,
                "schedule_skipped",
                job_key=key,
                action=action,
                reason="thread_closed",
            )
            return ScheduleOutcome(result="skipped_closed", key=key, action=action)

        matches = matching_labels(policy, thread.labels)
        if not matches:
            removed = self._jobs.remove_job(key)
            log_event(
                LOGGER,
                "job_cancelled",
                job_key=key,
                action=action,
                reason="no_matching_labels",
                existed=removed,
            )
            return ScheduleOutcome(result="cancelled", key=key, action=action)

        effective = effective_label(policy, matches)
        if effective is None:
            raise RuntimeError(f"No effective label for {key} despite matches {matches}")
        wants_notice = effective.comment is not None and action != COMMENT

        if effective.delay_ms is None:
            notified = False
            # No job row to carry the flag; the plain existence check can race.
            if wants_notice and self._jobs.get_job(key) is None:
                self._post_notice(thread, effective, key=key, github=github)
                notified = True
            removed = self._jobs.remove_job(key)
            log_event(
                LOGGER,
                "job_cancelled",
                job_key=key,
                action=action,
                reason="delay_suppressed",
                label=effective.label,
                existed=removed,
                notified=notified,
            )
            return ScheduleOutcome(
                result="suppressed",
                key=key,
                action=action,
                effective=effective,
                notified=notified,
            )

        fire_at_ms = self._clock() + effective.delay_ms
        payload = JobPayload(
            owner=thread.owner,
            repo=thread.repo,
            number=thread.number,
            installation_id=thread.installation_id,
            action=action,
        )
        job, claimed = self._jobs.create_or_replace(
            key,
            payload,
            fire_at_ms=fire_at_ms,
            claim_notification=wants_notice,
        )
        if claimed:
            try:
                comment_id = self._post_notice(thread, effective, key=key, github=github)
            except Exception:
                self._jobs.release_notification(key)
                raise
            if comment_id is not None:
                self._jobs.record_notice_comment(key, comment_id=comment_id)

        log_event(
            LOGGER,
            "job_scheduled",
            job_key=key,
            action=action,
            label=effective.label,
            delay_ms=effective.delay_ms,
            fire_at_ms=fire_at_ms,
            revision=job.revision,
            notified=claimed,
        )
        track(self._analytics, lambda: _job_created_event(thread, job))
        return ScheduleOutcome(
            result="scheduled",
            key=key,
            action=action,
            effective=effective,
            fire_at_ms=fire_at_ms,
            notified=claimed,
        )

    def cancel(self, thread: Thread, action: ActionKind, *, reason: str) -> bool:
        key = key_for(thread, action)
        removed = self._jobs.remove_job(key)
        log_event(
            LOGGER, "job_cancelled", job_key=key, action=action, reason=reason, existed=removed
        )
        return removed

    def cancel_all(self, thread: Thread, *, reason: str = "thread_closed") -> tuple[str, ...]:
        removed: list[str] = []
        for action in ALL_ACTIONS:
            if self.cancel(thread, action, reason=reason):
                removed.append(key_for(thread, action))
        return tuple(removed)

    def _post_notice(
        self,
        thread: Thread,
        effective: EffectiveLabel,
        *,
        key: str,
        github: ThreadCommenter,
    ) -> int | None:
        if effective.comment is None:
            return None
        body = render_comment(effective.comment, effective, author_login=thread.author_login)
        comment_id = github.post_issue_comment(thread.number, body)
        log_event(
            LOGGER,
            "notification_posted",
            job_key=key,
            issue_number=thread.number,
            label=effective.label,
        )
        return comment_id


def _job_created_event(thread: Thread, job: ScheduledJob) -> AnalyticsEvent:
    properties = job.payload.as_dict()
    properties["id"] = job.key
    properties["fire_at_ms"] = job.fire_at_ms
    return AnalyticsEvent(
        user_id=(
            str(thread.installation_id) if thread.installation_id is not None else thread.owner
        ),
        event=f"{job.payload.action.capitalize()} job created",
        properties=properties,
    )
