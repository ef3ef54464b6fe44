from __future__ import annotations

from pathlib import Path

import pytest

from labeldelay.config import (
    DEFAULT_COMMENT,
    DEFAULT_DELAY_MS,
    DEFAULT_DELAYED_COMMENT,
    DEFAULT_MERGE_COMMENT,
    ConfigError,
    LabelOverride,
    OverrideMode,
    RepoPolicyLoader,
    load_config,
    parse_repo_policy,
    resolve_repo_policy,
)


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


REPO_CONFIG = """
labels:
  - duplicate
  - wontfix
  - invalid
  - stale
delayTime: 1ms

comment: This issue has been marked to be closed in $DELAY.

labelConfig:
  duplicate:
    delayTime: 5ms
    comment: $LABEL issue created! Closing in $DELAY . . .
  stale: false
  invalid: true
  wontfix:
    delayTime: 10ms
    comment: false

merge:
  labels: [automerge]
  delayTime: 1h
  method: squash
  deleteBranch: true
  tagName: release-$NUMBER

delayedComment:
  labels: [needs-info]
  delayTime: 3 days
  comment: "@$AUTHOR still waiting on info for `$LABEL`"
"""


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "labeldelay.toml",
        """
[runtime]
base_dir = "~/tmp/labeldelay"
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.base_dir == Path("~/tmp/labeldelay").expanduser()
    assert cfg.runtime.worker_count == 4
    assert cfg.runtime.poll_interval_seconds == 1.0
    assert cfg.runtime.job_lease_seconds == 300
    assert cfg.runtime.max_attempts == 5
    assert cfg.runtime.retry_backoff_seconds == 10.0
    assert cfg.server.host == "127.0.0.1"
    assert cfg.server.port == 3000
    assert cfg.server.webhook_secret_env == "GITHUB_WEBHOOK_SECRET"
    assert cfg.github.repo_config_path == ".github/labeldelay.yml"
    assert cfg.github.allowed_owners == frozenset()
    assert cfg.state_db_path == cfg.runtime.base_dir / "jobs.db"


def test_load_config_reads_all_sections(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "labeldelay.toml",
        """
[runtime]
base_dir = "/tmp/ld"
worker_count = 2
poll_interval_seconds = 0.5
job_lease_seconds = 60
max_attempts = 3
retry_backoff_seconds = 2

[server]
host = "0.0.0.0"
port = 8080
webhook_secret_env = "LD_SECRET"

[github]
repo_config_path = ".github/delays.yml"
allowed_owners = [" MFix22 ", "octo"]
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.worker_count == 2
    assert cfg.runtime.poll_interval_seconds == 0.5
    assert cfg.runtime.retry_backoff_seconds == 2.0
    assert cfg.server.port == 8080
    assert cfg.server.webhook_secret_env == "LD_SECRET"
    assert cfg.github.repo_config_path == ".github/delays.yml"
    assert cfg.github.allowed_owners == frozenset({"mfix22", "octo"})
    assert cfg.github.allows("MFIX22") is True
    assert cfg.github.allows("someone-else") is False
    assert cfg.github.allows(" ") is False


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("", r"\[runtime\] is required"),
        ('[runtime]\nbase_dir = ""\n', "base_dir is required"),
        ('[runtime]\nbase_dir = "/x"\nworker_count = 0\n', "worker_count must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\nworker_count = true\n', "worker_count must be an integer"),
        ('[runtime]\nbase_dir = "/x"\npoll_interval_seconds = 0\n', "must be > 0"),
        ('[runtime]\nbase_dir = "/x"\nmax_attempts = 0\n', "max_attempts must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\n[server]\nport = 70000\n', "server.port"),
        ('[runtime]\nbase_dir = "/x"\n[github]\nallowed_owners = "octo"\n', "allowed_owners"),
        ('server = 3\n[runtime]\nbase_dir = "/x"\n', r"\[server\] must be a TOML table"),
        ("[runtime\n", "Invalid TOML"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "labeldelay.toml", body)
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)


def test_parse_repo_policy_resolves_close_section() -> None:
    policy = parse_repo_policy(REPO_CONFIG).close

    assert policy.labels == ("duplicate", "wontfix", "invalid", "stale")
    assert policy.default_delay_ms == 1
    assert policy.default_comment == "This issue has been marked to be closed in $DELAY."
    assert policy.override_for("stale") is OverrideMode.DISABLED
    assert policy.override_for("invalid") is OverrideMode.USE_DEFAULT
    assert policy.override_for("unknown") is OverrideMode.USE_DEFAULT
    assert policy.override_for("duplicate") == LabelOverride(
        delay_ms=5,
        has_delay=True,
        comment="$LABEL issue created! Closing in $DELAY . . .",
        has_comment=True,
    )
    assert policy.override_for("wontfix") == LabelOverride(
        delay_ms=10, has_delay=True, comment=None, has_comment=True
    )


def test_parse_repo_policy_resolves_merge_and_comment_sections() -> None:
    repo_policy = parse_repo_policy(REPO_CONFIG)

    assert repo_policy.merge.labels == ("automerge",)
    assert repo_policy.merge.default_delay_ms == 60 * 60 * 1000
    assert repo_policy.merge.default_comment == DEFAULT_MERGE_COMMENT
    assert repo_policy.merge_settings.method == "squash"
    assert repo_policy.merge_settings.delete_branch is True
    assert repo_policy.merge_settings.tag_template == "release-$NUMBER"

    assert repo_policy.comment.labels == ("needs-info",)
    assert repo_policy.comment.default_delay_ms == 3 * 24 * 60 * 60 * 1000
    assert repo_policy.comment.default_comment == "@$AUTHOR still waiting on info for `$LABEL`"
    assert repo_policy.for_action("comment") is repo_policy.comment
    with pytest.raises(ValueError, match="Unknown action kind"):
        repo_policy.for_action("reopen")


@pytest.mark.parametrize("text", [None, "", "   \n"])
def test_absent_document_yields_safe_defaults(text: str | None) -> None:
    repo_policy = parse_repo_policy(text)

    for action in ("close", "merge", "comment"):
        policy = repo_policy.for_action(action)
        assert policy.labels == ()
        assert policy.default_delay_ms == DEFAULT_DELAY_MS
        assert policy.overrides == {}
    assert repo_policy.close.default_comment == DEFAULT_COMMENT
    assert repo_policy.comment.default_comment == DEFAULT_DELAYED_COMMENT
    assert repo_policy.merge_settings.method == "merge"
    assert repo_policy.merge_settings.delete_branch is False
    assert repo_policy.merge_settings.tag_template is None


def test_delay_false_or_negative_suppresses_scheduling() -> None:
    policy = resolve_repo_policy(
        {
            "labels": ["a", "b"],
            "delayTime": False,
            "labelConfig": {"b": {"delayTime": "-5s"}},
        }
    ).close

    assert policy.default_delay_ms is None
    assert policy.override_for("b") == LabelOverride(delay_ms=None, has_delay=True)


def test_quoted_false_comment_disables_notice() -> None:
    policy = resolve_repo_policy({"labels": ["a"], "comment": "false"}).close
    assert policy.default_comment is None


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        (["not", "a", "mapping"], "repository config must be a mapping"),
        ({"labels": "duplicate"}, "labels must be a list"),
        ({"labels": [""]}, "non-empty strings"),
        ({"delayTime": "soon"}, "delayTime"),
        ({"delayTime": True}, "delayTime must be a duration"),
        ({"comment": 3}, "comment must be a string or false"),
        ({"labelConfig": {"a": {"color": "red"}}}, "unknown keys: color"),
        ({"labelConfig": {"a": 5}}, "labelConfig.a must be a mapping"),
        ({"merge": {"method": "octopus"}}, "merge.method"),
        ({"merge": {"deleteBranch": "yes"}}, "merge.deleteBranch"),
        ({"merge": []}, "merge must be a mapping"),
    ],
)
def test_invalid_documents_raise_config_error(raw: object, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        resolve_repo_policy(raw)


def test_yaml_syntax_error_raises_config_error() -> None:
    with pytest.raises(ConfigError, match="Invalid YAML"):
        parse_repo_policy("labels: [unclosed\n")


def test_repo_policy_loader_reads_configured_path() -> None:
    requested: list[str] = []

    class FakeReader:
        def get_repository_file(self, path: str) -> str | None:
            requested.append(path)
            return "labels: [stale]\n"

    policy = RepoPolicyLoader(".github/delays.yml").load(FakeReader())

    assert requested == [".github/delays.yml"]
    assert policy.close.labels == ("stale",)
