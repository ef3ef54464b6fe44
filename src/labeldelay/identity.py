from __future__ import annotations

from dataclasses import dataclass
from typing import cast

from labeldelay.models import ALL_ACTIONS, CLOSE, ActionKind, Thread


@dataclass(frozen=True)
class JobCoordinates:
    owner: str
    repo: str
    number: int
    action: ActionKind


def key_for(thread: Thread, action: ActionKind) -> str:
    return key_for_coordinates(thread.owner, thread.repo, thread.number, action)


def key_for_coordinates(owner: str, repo: str, number: int, action: ActionKind) -> str:
    if action not in ALL_ACTIONS:
        raise ValueError(f"Unknown action kind: {action!r}")
    if not owner or not repo or ":" in owner or ":" in repo:
        raise ValueError(f"Invalid repository coordinates: {owner!r}/{repo!r}")
    if number < 1:
        raise ValueError(f"Invalid thread number: {number}")
    # Close jobs keep the bare key so existing jobs stay addressable.
    base = f"{owner}:{repo}:{number}"
    if action == CLOSE:
        return base
    return f"{base}:{action}"


def parse_key(key: str) -> JobCoordinates:
    parts = key.split(":")
    if len(parts) == 3:
        owner, repo, raw_number = parts
        action: str = CLOSE
    elif len(parts) == 4:
        owner, repo, raw_number, action = parts
    else:
        raise ValueError(f"Invalid job key: {key!r}")
    if action not in ALL_ACTIONS or (action == CLOSE and len(parts) == 4):
        raise ValueError(f"Invalid job key action: {key!r}")
    try:
        number = int(raw_number)
    except ValueError as exc:
        raise ValueError(f"Invalid job key number: {key!r}") from exc
    coordinates = JobCoordinates(
        owner=owner, repo=repo, number=number, action=cast(ActionKind, action)
    )
    if key_for_coordinates(owner, repo, number, coordinates.action) != key:
        raise ValueError(f"Non-canonical job key: {key!r}")
    return coordinates
