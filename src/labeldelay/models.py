from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal


ActionKind = Literal["close", "merge", "comment"]
ThreadState = Literal["open", "closed"]
MergeMethod = Literal["merge", "squash", "rebase"]
ScheduleResult = Literal["skipped_closed", "cancelled", "scheduled", "suppressed"]

CLOSE: Final[ActionKind] = "close"
MERGE: Final[ActionKind] = "merge"
COMMENT: Final[ActionKind] = "comment"
ALL_ACTIONS: Final[tuple[ActionKind, ...]] = (CLOSE, MERGE, COMMENT)


@dataclass(frozen=True)
class Thread:
    owner: str
    repo: str
    number: int
    state: ThreadState
    labels: tuple[str, ...]
    author_login: str
    installation_id: int | None = None
    is_pull_request: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    state: ThreadState
    merged: bool
    mergeable: bool | None
    mergeable_state: str
    head_ref: str
    head_sha: str
    head_repo_full_name: str
    title: str


@dataclass(frozen=True)
class EffectiveLabel:
    label: str
    delay_ms: int | None
    comment: str | None


@dataclass(frozen=True)
class JobPayload:
    owner: str
    repo: str
    number: int
    installation_id: int | None
    action: ActionKind

    def as_dict(self) -> dict[str, object]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "number": self.number,
            "installation_id": self.installation_id,
            "action": self.action,
        }


@dataclass(frozen=True)
class ScheduledJob:
    key: str
    payload: JobPayload
    fire_at_ms: int
    notified: bool
    attempts: int
    revision: int
    last_error: str | None = None
    leased_until_ms: int | None = None
    notice_comment_id: int | None = None


@dataclass(frozen=True)
class ScheduleOutcome:
    result: ScheduleResult
    key: str
    action: ActionKind
    effective: EffectiveLabel | None = None
    fire_at_ms: int | None = None
    notified: bool = False
