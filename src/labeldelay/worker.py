from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Final, Protocol

from labeldelay.config import LabelPolicy, RepoPolicy, RepoPolicyLoader, RepositoryFileReader
from labeldelay.labels import effective_label, matching_labels, render_comment
from labeldelay.models import (
    CLOSE,
    COMMENT,
    MERGE,
    EffectiveLabel,
    JobPayload,
    MergeMethod,
    PullRequestSnapshot,
    ScheduledJob,
    Thread,
)
from labeldelay.observability import log_event


LOGGER = logging.getLogger("labeldelay.worker")
RETRY_JOB_MESSAGE: Final[str] = "Retry job"
_UNSETTLED_MERGE_STATES: Final[frozenset[str]] = frozenset(
    {"unknown", "blocked", "behind", "dirty", "draft"}
)


class ActionExecutionError(RuntimeError):
    """A fired job could not perform its action against the platform."""


class RetryJob(ActionExecutionError):
    """Expected, transient condition. Retried without alerting."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(RETRY_JOB_MESSAGE)
        self.reason = reason


class WorkerGitHub(RepositoryFileReader, Protocol):
    def get_thread(self, number: int) -> Thread: ...

    def get_pull_request(self, number: int) -> PullRequestSnapshot: ...

    def close_thread(self, number: int) -> None: ...

    def merge_pull_request(self, number: int, *, method: MergeMethod, head_sha: str) -> None: ...

    def post_issue_comment(self, number: int, body: str) -> int | None: ...


GitHubFactory = Callable[[JobPayload], WorkerGitHub]


class JobWorker:
    def __init__(
        self,
        *,
        github_factory: GitHubFactory,
        policy_loader: RepoPolicyLoader,
    ) -> None:
        self._github_factory = github_factory
        self._policy_loader = policy_loader

    def process(self, job: ScheduledJob) -> str:
        payload = job.payload
        github = self._github_factory(payload)
        thread = github.get_thread(payload.number)
        if thread.is_closed:
            return self._skip(job, "thread_closed")

        policy = self._policy_loader.load(github)
        effective = _current_effective_label(policy, payload.action, thread)
        if effective is None:
            return self._skip(job, "label_removed")
        if effective.delay_ms is None:
            return self._skip(job, "delay_suppressed")

        if payload.action == CLOSE:
            github.close_thread(thread.number)
            return self._done(job, "closed", label=effective.label)
        if payload.action == MERGE:
            return self._merge(job, github, thread, policy, effective)
        if payload.action == COMMENT:
            if effective.comment is None:
                return self._skip(job, "comment_disabled")
            body = render_comment(effective.comment, effective, author_login=thread.author_login)
            github.post_issue_comment(thread.number, body)
            return self._done(job, "commented", label=effective.label)
        raise ActionExecutionError(f"Unsupported action {payload.action!r} for {job.key}")

    def _merge(
        self,
        job: ScheduledJob,
        github: WorkerGitHub,
        thread: Thread,
        policy: RepoPolicy,
        effective: EffectiveLabel,
    ) -> str:
        if not thread.is_pull_request:
            return self._skip(job, "not_a_pull_request")
        pull = github.get_pull_request(thread.number)
        if pull.merged:
            return self._skip(job, "already_merged")
        if pull.state == "closed":
            return self._skip(job, "thread_closed")
        if pull.mergeable is not True or pull.mergeable_state in _UNSETTLED_MERGE_STATES:
            raise RetryJob(
                f"pull request #{pull.number} not mergeable "
                f"(mergeable={pull.mergeable}, state={pull.mergeable_state or 'unknown'})"
            )
        github.merge_pull_request(
            pull.number, method=policy.merge_settings.method, head_sha=pull.head_sha
        )
        return self._done(job, "merged", label=effective.label)

    def _skip(self, job: ScheduledJob, reason: str) -> str:
        log_event(
            LOGGER,
            "job_skipped",
            job_key=job.key,
            action=job.payload.action,
            reason=reason,
        )
        return f"skipped_{reason}"

    def _done(self, job: ScheduledJob, outcome: str, *, label: str) -> str:
        log_event(
            LOGGER,
            "job_action_performed",
            job_key=job.key,
            action=job.payload.action,
            outcome=outcome,
            label=label,
        )
        return outcome


def _current_effective_label(
    policy: RepoPolicy, action: str, thread: Thread
) -> EffectiveLabel | None:
    label_policy: LabelPolicy = policy.for_action(action)
    return effective_label(label_policy, matching_labels(label_policy, thread.labels))
