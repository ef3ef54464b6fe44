from __future__ import annotations

from dataclasses import dataclass
from typing import cast

from labeldelay.models import Thread, ThreadState


class EventPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class WebhookEvent:
    name: str
    payload: dict[str, object]
    delivery_id: str | None = None

    @property
    def action(self) -> str:
        action = self.payload.get("action")
        return action if isinstance(action, str) else ""

    @property
    def qualified_name(self) -> str:
        if not self.action:
            return self.name
        return f"{self.name}.{self.action}"

    @property
    def installation_id(self) -> int | None:
        installation = as_object_dict(self.payload.get("installation"))
        if installation is None:
            return None
        return optional_int(installation.get("id"))

    @property
    def account_login(self) -> str | None:
        """Owner of the repository, falling back to the installation account."""
        repository = as_object_dict(self.payload.get("repository"))
        if repository is not None:
            owner = as_object_dict(repository.get("owner"))
            login = owner.get("login") if owner else None
            if isinstance(login, str) and login:
                return login
        installation = as_object_dict(self.payload.get("installation"))
        account = as_object_dict(installation.get("account")) if installation else None
        login = account.get("login") if account else None
        if isinstance(login, str) and login:
            return login
        return None

    def repository_coordinates(self) -> tuple[str, str]:
        repository = as_object_dict(self.payload.get("repository"))
        if repository is None:
            raise EventPayloadError(f"{self.qualified_name} payload has no repository")
        name = repository.get("name")
        owner = self.account_login
        if not isinstance(name, str) or not name or owner is None:
            raise EventPayloadError(f"{self.qualified_name} payload has no repository owner/name")
        return owner, name


def thread_from_event(event: WebhookEvent) -> Thread:
    owner, repo = event.repository_coordinates()
    item = as_object_dict(event.payload.get("pull_request"))
    is_pull_request = item is not None
    if item is None:
        item = as_object_dict(event.payload.get("issue"))
        if item is None:
            raise EventPayloadError(f"{event.qualified_name} payload has no issue or pull request")
        is_pull_request = "pull_request" in item

    number = item.get("number")
    if not isinstance(number, int) or isinstance(number, bool) or number < 1:
        raise EventPayloadError(f"{event.qualified_name} payload has an invalid thread number")
    state = item.get("state")
    if state not in {"open", "closed"}:
        raise EventPayloadError(f"{event.qualified_name} payload has an invalid state: {state!r}")
    user = as_object_dict(item.get("user"))
    author = user.get("login") if user else None
    return Thread(
        owner=owner,
        repo=repo,
        number=number,
        state=cast(ThreadState, state),
        labels=label_names(item.get("labels")),
        author_login=author if isinstance(author, str) else "",
        installation_id=event.installation_id,
        is_pull_request=is_pull_request,
    )


def label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = as_object_dict(entry)
        name = entry_obj.get("name") if entry_obj else None
        if isinstance(name, str) and name:
            names.append(name)
    return tuple(names)


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
