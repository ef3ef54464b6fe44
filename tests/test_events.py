from __future__ import annotations

import pytest

from labeldelay.events import EventPayloadError, WebhookEvent, label_names, thread_from_event


def _issue_payload(**issue_overrides: object) -> dict[str, object]:
    issue: dict[str, object] = {
        "number": 7,
        "state": "open",
        "labels": [{"name": "duplicate"}, {"name": "bug"}],
        "user": {"login": "reporter"},
    }
    issue.update(issue_overrides)
    return {
        "action": "labeled",
        "issue": issue,
        "repository": {"name": "test-issue-bot", "owner": {"login": "mfix22"}},
        "installation": {"id": 135737, "account": {"login": "mfix22"}},
    }


def test_event_names_and_installation() -> None:
    event = WebhookEvent(name="issues", payload=_issue_payload(), delivery_id="d-1")

    assert event.action == "labeled"
    assert event.qualified_name == "issues.labeled"
    assert event.installation_id == 135737
    assert event.account_login == "mfix22"
    assert event.repository_coordinates() == ("mfix22", "test-issue-bot")


def test_event_without_action_uses_bare_name() -> None:
    event = WebhookEvent(name="ping", payload={"zen": "Keep it logically awesome."})
    assert event.qualified_name == "ping"
    assert event.installation_id is None
    assert event.account_login is None


def test_account_login_falls_back_to_installation_account() -> None:
    event = WebhookEvent(
        name="installation",
        payload={"action": "created", "installation": {"id": 1, "account": {"login": "octo-org"}}},
    )
    assert event.account_login == "octo-org"
    with pytest.raises(EventPayloadError, match="no repository"):
        event.repository_coordinates()


def test_thread_from_issue_event() -> None:
    thread = thread_from_event(WebhookEvent(name="issues", payload=_issue_payload()))

    assert thread.owner == "mfix22"
    assert thread.repo == "test-issue-bot"
    assert thread.number == 7
    assert thread.state == "open"
    assert thread.labels == ("duplicate", "bug")
    assert thread.author_login == "reporter"
    assert thread.installation_id == 135737
    assert thread.is_pull_request is False


def test_issue_payload_with_pull_request_link_is_a_pull_request() -> None:
    payload = _issue_payload(pull_request={"url": "https://api.github.com/pulls/7"})
    thread = thread_from_event(WebhookEvent(name="issue_comment", payload=payload))
    assert thread.is_pull_request is True


def test_thread_from_pull_request_event() -> None:
    payload = _issue_payload()
    payload["pull_request"] = payload.pop("issue")
    thread = thread_from_event(WebhookEvent(name="pull_request", payload=payload))
    assert thread.is_pull_request is True
    assert thread.number == 7


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"number": 0}, "invalid thread number"),
        ({"number": True}, "invalid thread number"),
        ({"state": "merged"}, "invalid state"),
    ],
)
def test_malformed_threads_raise(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(EventPayloadError, match=message):
        thread_from_event(WebhookEvent(name="issues", payload=_issue_payload(**overrides)))


def test_missing_thread_raises() -> None:
    payload = _issue_payload()
    del payload["issue"]
    with pytest.raises(EventPayloadError, match="no issue or pull request"):
        thread_from_event(WebhookEvent(name="issues", payload=payload))


def test_label_names_ignores_malformed_entries() -> None:
    assert label_names([{"name": "a"}, {"color": "red"}, "b", {"name": ""}, {"name": "c"}]) == (
        "a",
        "c",
    )
    assert label_names(None) == ()
