from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import json
import logging
import re
from typing import cast
from urllib.parse import quote, urlencode

from labeldelay.models import MergeMethod, PullRequestSnapshot, Thread, ThreadState
from labeldelay.observability import log_event
from labeldelay.shell import CommandError, run


LOGGER = logging.getLogger("labeldelay.github_gateway")
_HTTP_STATUS_IN_STDERR = re.compile(r"\(HTTP (\d{3})\)")
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    installation_id: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_thread(self, number: int) -> Thread:
        path = f"/repos/{self.owner}/{self.name}/issues/{number}"
        payload_obj = _as_object_dict(self._api_get(path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for issue")
        thread = self._thread_from_issue(payload_obj)
        log_event(LOGGER, "github_read", endpoint="issue", issue_number=thread.number)
        return thread

    def list_open_threads_with_any_labels(self, labels: tuple[str, ...]) -> list[Thread]:
        deduped: dict[int, Thread] = {}
        for label in labels:
            page = 1
            while True:
                query = urlencode(
                    {"state": "open", "labels": label, "per_page": _PAGE_SIZE, "page": page}
                )
                payload = self._api_get(f"/repos/{self.owner}/{self.name}/issues?{query}")
                if not isinstance(payload, list):
                    raise GitHubApiError("Unexpected GitHub response: expected list for issues")
                for item in payload:
                    item_obj = _as_object_dict(item)
                    if item_obj is None:
                        continue
                    thread = self._thread_from_issue(item_obj)
                    deduped.setdefault(thread.number, thread)
                if len(payload) < _PAGE_SIZE:
                    break
                page += 1
        threads = [deduped[number] for number in sorted(deduped)]
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues_by_label",
            label_count=len(labels),
            count=len(threads),
        )
        return threads

    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{number}"
        payload_obj = _as_object_dict(self._api_get(path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")
        head = _as_object_dict(payload_obj.get("head"))
        if head is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head")
        head_repo = _as_object_dict(head.get("repo"))
        mergeable_raw = payload_obj.get("mergeable")
        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            state=_as_state(payload_obj.get("state")),
            merged=payload_obj.get("merged") is True,
            mergeable=mergeable_raw if isinstance(mergeable_raw, bool) else None,
            mergeable_state=_as_string(payload_obj.get("mergeable_state")).strip().lower(),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            head_repo_full_name=_as_string(head_repo.get("full_name") if head_repo else None),
            title=_as_string(payload_obj.get("title")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def get_repository_file(self, path: str) -> str | None:
        api_path = f"/repos/{self.owner}/{self.name}/contents/{quote(path.lstrip('/'))}"
        try:
            payload = self._api_get(api_path)
        except GitHubApiError as exc:
            if exc.status_code == 404:
                log_event(LOGGER, "github_read", endpoint="contents", path=path, found=False)
                return None
            raise
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError(f"Unexpected GitHub response: {path} is not a file")
        encoded = _as_string(payload_obj.get("content"))
        try:
            text = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise GitHubApiError(f"Unable to decode {path} from GitHub contents API") from exc
        log_event(LOGGER, "github_read", endpoint="contents", path=path, found=True)
        return text

    def post_issue_comment(self, number: int, body: str) -> int | None:
        path = f"/repos/{self.owner}/{self.name}/issues/{number}/comments"
        try:
            payload = self._api_write("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=number,
                error_type=type(exc).__name__,
            )
            raise
        payload_obj = _as_object_dict(payload)
        comment_id = _as_optional_int(payload_obj.get("id")) if payload_obj else None
        log_event(
            LOGGER, "github_issue_comment_posted", issue_number=number, comment_id=comment_id
        )
        return comment_id

    def close_thread(self, number: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{number}"
        try:
            self._api_write("PATCH", path, payload={"state": "closed"})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_thread_close_failed",
                repo_full_name=self.full_name,
                issue_number=number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_thread_closed", issue_number=number)

    def merge_pull_request(self, number: int, *, method: MergeMethod, head_sha: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{number}/merge"
        payload: dict[str, object] = {"merge_method": method}
        if head_sha:
            payload["sha"] = head_sha
        try:
            self._api_write("PUT", path, payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_merge_failed",
                repo_full_name=self.full_name,
                pr_number=number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_pull_request_merged", pr_number=number, method=method)

    def delete_branch(self, ref: str) -> bool:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(ref)}"
        try:
            self._api_write("DELETE", path)
        except GitHubApiError as exc:
            # 422 means the ref is already gone.
            if exc.status_code in {404, 422}:
                log_event(LOGGER, "github_branch_missing", ref=ref)
                return False
            raise
        log_event(LOGGER, "github_branch_deleted", ref=ref)
        return True

    def create_tag(self, tag: str, sha: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs"
        self._api_write("POST", path, payload={"ref": f"refs/tags/{tag}", "sha": sha})
        log_event(LOGGER, "github_tag_created", tag=tag, sha=sha)

    def _thread_from_issue(self, item_obj: dict[str, object]) -> Thread:
        user_obj = _as_object_dict(item_obj.get("user"))
        return Thread(
            owner=self.owner,
            repo=self.name,
            number=_as_int(item_obj.get("number"), field="number"),
            state=_as_state(item_obj.get("state")),
            labels=_label_names(item_obj.get("labels")),
            author_login=_as_string(user_obj.get("login") if user_obj else None),
            installation_id=self.installation_id,
            is_pull_request="pull_request" in item_obj,
        )

    def _api_get(self, path: str) -> object:
        raw = run(["gh", "api", "--method", "GET", "--include", path], check=False)
        status_code, _headers, body = _parse_http_response(raw)
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_event(
                LOGGER,
                "github_get_failed",
                path=path,
                status_code=status_code,
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubApiError(
                f"GitHub GET {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub GET {path} returned invalid JSON") from exc

    def _api_write(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload)
        except CommandError as exc:
            raise GitHubApiError(
                f"GitHub {method.upper()} {path} failed: {_preview_for_log(exc.stderr)}",
                status_code=_status_from_stderr(exc.stderr),
            ) from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub {method.upper()} {path} returned invalid JSON") from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _status_from_stderr(stderr: str) -> int | None:
    match = _HTTP_STATUS_IN_STDERR.search(stderr)
    if match is None:
        return None
    return int(match.group(1))


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        if isinstance(entry, str):
            names.append(entry)
            continue
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_state(value: object) -> ThreadState:
    normalized = _as_string(value).strip().lower()
    if normalized not in {"open", "closed"}:
        raise GitHubApiError(f"Unexpected GitHub thread state: {value!r}")
    return cast(ThreadState, normalized)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
