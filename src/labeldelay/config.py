from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import tomllib
from typing import Final, Protocol, TypeAlias, cast

import yaml

from labeldelay.durations import parse_duration_ms
from labeldelay.models import MergeMethod


DEFAULT_DELAY_MS: Final[int] = 7 * 24 * 60 * 60 * 1000
DEFAULT_COMMENT: Final[str] = (
    "This thread was labeled `$LABEL` and will be closed in $DELAY unless the label is removed."
)
DEFAULT_MERGE_COMMENT: Final[str] = (
    "This pull request was labeled `$LABEL` and will be merged in $DELAY once it is mergeable."
)
DEFAULT_DELAYED_COMMENT: Final[str] = "@$AUTHOR this thread has been labeled `$LABEL` for $DELAY."
DEFAULT_REPO_CONFIG_PATH: Final[str] = ".github/labeldelay.yml"


class ConfigError(ValueError):
    pass


class RepositoryFileReader(Protocol):
    def get_repository_file(self, path: str) -> str | None: ...


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int = 4
    poll_interval_seconds: float = 1.0
    job_lease_seconds: int = 300
    max_attempts: int = 5
    retry_backoff_seconds: float = 10.0


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    webhook_secret_env: str = "GITHUB_WEBHOOK_SECRET"


@dataclass(frozen=True)
class GitHubConfig:
    repo_config_path: str = DEFAULT_REPO_CONFIG_PATH
    allowed_owners: frozenset[str] = frozenset()

    def allows(self, owner: str) -> bool:
        if not self.allowed_owners:
            return True
        normalized = owner.strip().lower()
        if not normalized:
            return False
        return normalized in self.allowed_owners


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)

    @property
    def state_db_path(self) -> Path:
        return self.runtime.base_dir / "jobs.db"


class OverrideMode(Enum):
    DISABLED = "disabled"
    USE_DEFAULT = "use_default"


@dataclass(frozen=True)
class LabelOverride:
    delay_ms: int | None = None
    has_delay: bool = False
    comment: str | None = None
    has_comment: bool = False


OverrideEntry: TypeAlias = OverrideMode | LabelOverride


@dataclass(frozen=True)
class LabelPolicy:
    default_delay_ms: int | None = DEFAULT_DELAY_MS
    default_comment: str | None = DEFAULT_COMMENT
    labels: tuple[str, ...] = ()
    overrides: dict[str, OverrideEntry] = field(default_factory=dict)

    def override_for(self, label: str) -> OverrideEntry:
        return self.overrides.get(label, OverrideMode.USE_DEFAULT)


@dataclass(frozen=True)
class MergeSettings:
    method: MergeMethod = "merge"
    delete_branch: bool = False
    tag_template: str | None = None


@dataclass(frozen=True)
class RepoPolicy:
    close: LabelPolicy = field(default_factory=LabelPolicy)
    merge: LabelPolicy = field(default_factory=LabelPolicy)
    comment: LabelPolicy = field(default_factory=LabelPolicy)
    merge_settings: MergeSettings = field(default_factory=MergeSettings)

    def for_action(self, action: str) -> LabelPolicy:
        if action == "close":
            return self.close
        if action == "merge":
            return self.merge
        if action == "comment":
            return self.comment
        raise ValueError(f"Unknown action kind: {action!r}")


def load_config(path: Path) -> AppConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    runtime_data = _require_table(data, "runtime")
    server_data = _optional_table(data, "server") or {}
    github_data = _optional_table(data, "github") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        poll_interval_seconds=_number_with_default(runtime_data, "poll_interval_seconds", 1.0),
        job_lease_seconds=_int_with_default(runtime_data, "job_lease_seconds", 300),
        max_attempts=_int_with_default(runtime_data, "max_attempts", 5),
        retry_backoff_seconds=_number_with_default(runtime_data, "retry_backoff_seconds", 10.0),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds <= 0:
        raise ConfigError("runtime.poll_interval_seconds must be > 0")
    if runtime.job_lease_seconds < 1:
        raise ConfigError("runtime.job_lease_seconds must be >= 1")
    if runtime.max_attempts < 1:
        raise ConfigError("runtime.max_attempts must be >= 1")
    if runtime.retry_backoff_seconds < 0:
        raise ConfigError("runtime.retry_backoff_seconds must be >= 0")

    server = ServerConfig(
        host=_str_with_default(server_data, "host", "127.0.0.1"),
        port=_int_with_default(server_data, "port", 3000),
        webhook_secret_env=_str_with_default(
            server_data, "webhook_secret_env", "GITHUB_WEBHOOK_SECRET"
        ),
    )
    if not 0 < server.port < 65536:
        raise ConfigError("server.port must be between 1 and 65535")

    github = GitHubConfig(
        repo_config_path=_str_with_default(
            github_data, "repo_config_path", DEFAULT_REPO_CONFIG_PATH
        ),
        allowed_owners=_owner_set(github_data, "allowed_owners"),
    )
    return AppConfig(runtime=runtime, server=server, github=github)


@dataclass(frozen=True)
class RepoPolicyLoader:
    config_path: str = DEFAULT_REPO_CONFIG_PATH

    def load(self, github: RepositoryFileReader) -> RepoPolicy:
        return parse_repo_policy(github.get_repository_file(self.config_path))


def parse_repo_policy(text: str | None) -> RepoPolicy:
    if text is None or not text.strip():
        return resolve_repo_policy(None)
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in repository config: {exc}") from exc
    return resolve_repo_policy(raw)


def resolve_repo_policy(raw: object) -> RepoPolicy:
    document = {} if raw is None else _as_mapping(raw, where="repository config")
    merge_data = _optional_section(document, "merge")
    comment_data = _optional_section(document, "delayedComment")
    return RepoPolicy(
        close=resolve_label_policy(document, where="repository config"),
        merge=resolve_label_policy(
            merge_data or {}, where="merge", default_comment=DEFAULT_MERGE_COMMENT
        ),
        comment=resolve_label_policy(
            comment_data or {}, where="delayedComment", default_comment=DEFAULT_DELAYED_COMMENT
        ),
        merge_settings=_resolve_merge_settings(merge_data or {}),
    )


def resolve_label_policy(
    data: dict[str, object], *, where: str, default_comment: str | None = DEFAULT_COMMENT
) -> LabelPolicy:
    labels = _label_list(data, "labels", where=where)
    default_delay_ms = DEFAULT_DELAY_MS
    if "delayTime" in data:
        default_delay_ms = _delay_value(data["delayTime"], where=f"{where}.delayTime")
    if "comment" in data:
        default_comment = _comment_value(data["comment"], where=f"{where}.comment")

    overrides: dict[str, OverrideEntry] = {}
    raw_label_config = data.get("labelConfig")
    if raw_label_config is not None:
        label_config = _as_mapping(raw_label_config, where=f"{where}.labelConfig")
        for label, entry in label_config.items():
            overrides[label] = _override_entry(entry, where=f"{where}.labelConfig.{label}")

    return LabelPolicy(
        default_delay_ms=default_delay_ms,
        default_comment=default_comment,
        labels=labels,
        overrides=overrides,
    )


def _override_entry(value: object, *, where: str) -> OverrideEntry:
    if value is False:
        return OverrideMode.DISABLED
    if value is True or value is None:
        return OverrideMode.USE_DEFAULT
    entry = _as_mapping(value, where=where)
    unknown = sorted(key for key in entry if key not in {"delayTime", "comment"})
    if unknown:
        raise ConfigError(f"{where} has unknown keys: {', '.join(unknown)}")
    override = LabelOverride()
    if "delayTime" in entry:
        override = LabelOverride(
            delay_ms=_delay_value(entry["delayTime"], where=f"{where}.delayTime"),
            has_delay=True,
        )
    if "comment" in entry:
        override = LabelOverride(
            delay_ms=override.delay_ms,
            has_delay=override.has_delay,
            comment=_comment_value(entry["comment"], where=f"{where}.comment"),
            has_comment=True,
        )
    return override


def _resolve_merge_settings(data: dict[str, object]) -> MergeSettings:
    method_raw = data.get("method", "merge")
    if not isinstance(method_raw, str) or method_raw.strip().lower() not in {
        "merge",
        "squash",
        "rebase",
    }:
        raise ConfigError("merge.method must be one of: merge, squash, rebase")
    delete_branch = data.get("deleteBranch", False)
    if not isinstance(delete_branch, bool):
        raise ConfigError("merge.deleteBranch must be a boolean")
    tag_template = _comment_value(data.get("tagName", False), where="merge.tagName")
    return MergeSettings(
        method=cast(MergeMethod, method_raw.strip().lower()),
        delete_branch=delete_branch,
        tag_template=tag_template,
    )


def _delay_value(value: object, *, where: str) -> int | None:
    if value is False or value is None:
        return None
    if not isinstance(value, str | int | float) or isinstance(value, bool):
        raise ConfigError(f"{where} must be a duration string, a number, or false")
    try:
        delay_ms = parse_duration_ms(value)
    except ValueError as exc:
        raise ConfigError(f"{where}: {exc}") from exc
    if delay_ms < 0:
        return None
    return delay_ms


def _comment_value(value: object, *, where: str) -> str | None:
    if value is False or value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{where} must be a string or false")
    # YAML authors sometimes quote the literal `false`.
    if value.strip().lower() == "false" or not value.strip():
        return None
    return value


def _label_list(data: dict[str, object], key: str, *, where: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{where}.{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{where}.{key} must be a list of non-empty strings")
        if item not in out:
            out.append(item)
    return tuple(out)


def _optional_section(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    return _as_mapping(value, where=key)


def _as_mapping(value: object, *, where: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{where} must have string keys")
    return cast(dict[str, object], value)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _owner_set(data: dict[str, object], key: str) -> frozenset[str]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} entries must be non-empty strings")
        out.add(item.strip().lower())
    return frozenset(out)
