from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
from typing import Protocol

from labeldelay.comment_commands import (
    ParsedCommand,
    commands_help,
    is_bot_login,
    is_privileged_association,
    parse_command,
)
from labeldelay.config import RepoPolicyLoader
from labeldelay.durations import humanize_duration_ms
from labeldelay.events import (
    EventPayloadError,
    WebhookEvent,
    as_object_dict,
    optional_int,
    thread_from_event,
)
from labeldelay.job_store import JobStore, now_ms
from labeldelay.models import (
    ALL_ACTIONS,
    CLOSE,
    COMMENT,
    MERGE,
    ActionKind,
    ScheduledJob,
    Thread,
)
from labeldelay.observability import log_event, log_warning_event
from labeldelay.scheduler import ActionScheduler
from labeldelay.worker import WorkerGitHub


LOGGER = logging.getLogger("labeldelay.handlers")


class HandlerGitHub(WorkerGitHub, Protocol):
    def list_open_threads_with_any_labels(self, labels: tuple[str, ...]) -> list[Thread]: ...

    def delete_branch(self, ref: str) -> bool: ...

    def create_tag(self, tag: str, sha: str) -> None: ...


GatewayFactory = Callable[[str, str, int | None], HandlerGitHub]


class WebhookHandlers:
    def __init__(
        self,
        *,
        scheduler: ActionScheduler,
        jobs: JobStore,
        policy_loader: RepoPolicyLoader,
        github_factory: GatewayFactory,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._scheduler = scheduler
        self._jobs = jobs
        self._policy_loader = policy_loader
        self._github_factory = github_factory
        self._clock = clock

    def schedule_close(self, event: WebhookEvent) -> None:
        self._schedule(event, CLOSE)

    def schedule_merge(self, event: WebhookEvent) -> None:
        self._schedule(event, MERGE)

    def schedule_comment(self, event: WebhookEvent) -> None:
        self._schedule(event, COMMENT)

    def cancel_on_close(self, event: WebhookEvent) -> None:
        thread = thread_from_event(event)
        removed = self._scheduler.cancel_all(thread, reason="thread_closed")
        log_event(
            LOGGER,
            "thread_closed",
            repo_full_name=thread.full_name,
            issue_number=thread.number,
            removed_count=len(removed),
        )

    def delete_merged_branch(self, event: WebhookEvent) -> None:
        merged = _merged_pull_request(event)
        if merged is None:
            return
        owner, repo = event.repository_coordinates()
        github = self._github_factory(owner, repo, event.installation_id)
        policy = self._policy_loader.load(github)
        if not policy.merge_settings.delete_branch:
            return
        head_ref, head_full_name, base_full_name = _branch_coordinates(merged)
        if not head_ref or head_full_name != base_full_name:
            log_event(
                LOGGER,
                "branch_delete_skipped",
                pr_number=optional_int(merged.get("number")),
                reason="fork_or_missing_ref",
            )
            return
        github.delete_branch(head_ref)

    def create_merge_tag(self, event: WebhookEvent) -> None:
        merged = _merged_pull_request(event)
        if merged is None:
            return
        owner, repo = event.repository_coordinates()
        github = self._github_factory(owner, repo, event.installation_id)
        policy = self._policy_loader.load(github)
        template = policy.merge_settings.tag_template
        if template is None:
            return
        sha = merged.get("merge_commit_sha")
        number = optional_int(merged.get("number"))
        if not isinstance(sha, str) or not sha or number is None:
            log_event(LOGGER, "tag_skipped", pr_number=number, reason="missing_merge_commit")
            return
        github.create_tag(render_tag_name(template, number=number), sha)

    def handle_comment_command(self, event: WebhookEvent) -> None:
        comment = as_object_dict(event.payload.get("comment"))
        if comment is None:
            raise EventPayloadError(f"{event.qualified_name} payload has no comment")
        user = as_object_dict(comment.get("user"))
        login = user.get("login") if user else None
        if not isinstance(login, str) or is_bot_login(login):
            return
        body = comment.get("body")
        parsed = parse_command(body) if isinstance(body, str) else None
        if parsed is None:
            return

        thread = thread_from_event(event)
        association = comment.get("author_association")
        if not isinstance(association, str) or not is_privileged_association(association):
            log_event(
                LOGGER,
                "comment_command_ignored",
                issue_number=thread.number,
                actor=login,
                reason="not_authorized",
            )
            return

        github = self._github_factory(thread.owner, thread.repo, thread.installation_id)
        reply = self._run_command(thread, parsed)
        github.post_issue_comment(thread.number, f"@{login} {reply}")
        log_event(
            LOGGER,
            "comment_command_handled",
            issue_number=thread.number,
            actor=login,
            command=parsed.normalized_command,
        )

    def release_deleted_notice(self, event: WebhookEvent) -> None:
        comment = as_object_dict(event.payload.get("comment"))
        comment_id = optional_int(comment.get("id")) if comment else None
        if comment_id is None:
            return
        thread = thread_from_event(event)
        released = self._jobs.release_notification_for_comment(
            owner=thread.owner,
            repo=thread.repo,
            number=thread.number,
            comment_id=comment_id,
        )
        if released:
            log_event(
                LOGGER,
                "notification_released",
                issue_number=thread.number,
                comment_id=comment_id,
                job_keys=",".join(released),
            )

    def backfill_installation(self, event: WebhookEvent) -> None:
        owner = event.account_login
        if owner is None:
            raise EventPayloadError(f"{event.qualified_name} payload has no account")
        failures: list[str] = []
        for repo in _installed_repositories(event):
            try:
                self._backfill_repo(owner, repo, event.installation_id)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "backfill_failed",
                    repo_full_name=f"{owner}/{repo}",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                failures.append(f"{owner}/{repo}")
        if failures:
            raise RuntimeError(f"Backfill failed for: {', '.join(failures)}")

    def _schedule(self, event: WebhookEvent, action: ActionKind) -> None:
        thread = thread_from_event(event)
        github = self._github_factory(thread.owner, thread.repo, thread.installation_id)
        policy = self._policy_loader.load(github)
        self._scheduler.on_labels_changed(
            thread, policy.for_action(action), action, github=github
        )

    def _backfill_repo(self, owner: str, repo: str, installation_id: int | None) -> None:
        github = self._github_factory(owner, repo, installation_id)
        policy = self._policy_loader.load(github)
        scheduled = 0
        for action in ALL_ACTIONS:
            label_policy = policy.for_action(action)
            if not label_policy.labels:
                continue
            for thread in github.list_open_threads_with_any_labels(label_policy.labels):
                if not _action_applies(action, thread):
                    continue
                outcome = self._scheduler.on_labels_changed(
                    thread, label_policy, action, github=github
                )
                if outcome.result == "scheduled":
                    scheduled += 1
        log_event(
            LOGGER,
            "backfill_completed",
            repo_full_name=f"{owner}/{repo}",
            scheduled_count=scheduled,
        )

    def _run_command(self, thread: Thread, parsed: ParsedCommand) -> str:
        if parsed.command == "help":
            return commands_help()
        if parsed.command == "status":
            jobs = self._jobs.list_jobs(owner=thread.owner, repo=thread.repo, number=thread.number)
            return render_status(jobs, now=self._clock())
        if parsed.command == "cancel":
            action = parsed.get_arg("action")
            if action is None:
                removed = self._scheduler.cancel_all(thread, reason="comment_command")
            else:
                kind = _as_action(action)
                removed = (
                    (kind,)
                    if self._scheduler.cancel(thread, kind, reason="comment_command")
                    else ()
                )
            if not removed:
                return "there was nothing pending to cancel."
            return f"cancelled {len(removed)} pending job(s)."
        return f"{parsed.parse_error}\n\n{commands_help()}"


def render_status(jobs: tuple[ScheduledJob, ...], *, now: int) -> str:
    if not jobs:
        return "no delayed actions are pending on this thread."
    lines = ["pending delayed actions:"]
    for job in jobs:
        fire_at = datetime.fromtimestamp(job.fire_at_ms / 1000, tz=timezone.utc)
        remaining = max(job.fire_at_ms - now, 0)
        lines.append(
            f"- `{job.payload.action}` at {fire_at.strftime('%Y-%m-%d %H:%M UTC')} "
            f"(in {humanize_duration_ms(remaining)})"
        )
    return "\n".join(lines)


def render_tag_name(template: str, *, number: int) -> str:
    return template.replace("$NUMBER", str(number)).strip()


def _action_applies(action: ActionKind, thread: Thread) -> bool:
    if action == CLOSE:
        return not thread.is_pull_request
    if action == MERGE:
        return thread.is_pull_request
    return True


def _as_action(value: str) -> ActionKind:
    for action in ALL_ACTIONS:
        if action == value:
            return action
    raise ValueError(f"Unknown action kind: {value!r}")


def _merged_pull_request(event: WebhookEvent) -> dict[str, object] | None:
    pull = as_object_dict(event.payload.get("pull_request"))
    if pull is None or pull.get("merged") is not True:
        return None
    return pull


def _branch_coordinates(pull: dict[str, object]) -> tuple[str, str, str]:
    head = as_object_dict(pull.get("head")) or {}
    base = as_object_dict(pull.get("base")) or {}
    head_repo = as_object_dict(head.get("repo")) or {}
    base_repo = as_object_dict(base.get("repo")) or {}
    ref = head.get("ref")
    head_full_name = head_repo.get("full_name")
    base_full_name = base_repo.get("full_name")
    return (
        ref if isinstance(ref, str) else "",
        head_full_name if isinstance(head_full_name, str) else "",
        base_full_name if isinstance(base_full_name, str) else "",
    )


def _installed_repositories(event: WebhookEvent) -> tuple[str, ...]:
    key = "repositories_added" if event.name == "installation_repositories" else "repositories"
    raw = event.payload.get(key)
    if not isinstance(raw, list):
        return ()
    names: list[str] = []
    for item in raw:
        item_obj = as_object_dict(item)
        name = item_obj.get("name") if item_obj else None
        if isinstance(name, str) and name and name not in names:
            names.append(name)
    return tuple(names)
