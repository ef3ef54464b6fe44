from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Final, Literal

from labeldelay.models import ALL_ACTIONS


_COMMAND_PATTERN = re.compile(r"(?mi)^\s*/labeldelay(?:\s+(.+))?\s*$")
_PRIVILEGED_ASSOCIATIONS: Final[frozenset[str]] = frozenset(
    {"OWNER", "MEMBER", "COLLABORATOR"}
)
CommandName = Literal["status", "cancel", "help", "invalid"]


@dataclass(frozen=True)
class ParsedCommand:
    command: CommandName
    normalized_command: str
    args: tuple[tuple[str, str], ...]
    parse_error: str | None

    def get_arg(self, key: str) -> str | None:
        for arg_key, arg_value in self.args:
            if arg_key == key:
                return arg_value
        return None


def is_bot_login(login: str) -> bool:
    return login.strip().lower().endswith("[bot]")


def is_privileged_association(association: str) -> bool:
    return association.strip().upper() in _PRIVILEGED_ASSOCIATIONS


def parse_command(text: str) -> ParsedCommand | None:
    match = _COMMAND_PATTERN.search(text)
    if match is None:
        return None

    remainder = (match.group(1) or "").strip()
    if not remainder:
        return _invalid("/labeldelay", {}, "Missing subcommand.")

    tokens = remainder.split()
    command_token = tokens[0].strip().lower()
    arg_tokens = tokens[1:]

    parsed_args: dict[str, str] = {}
    for raw_arg in arg_tokens:
        key_raw, sep, value_raw = raw_arg.partition("=")
        key = key_raw.strip().lower()
        value = value_raw.strip()
        if not sep or not key or not value:
            return _invalid(
                f"/labeldelay {remainder}",
                parsed_args,
                f"Invalid argument format: {raw_arg!r}. Expected key=value.",
            )
        if key in parsed_args:
            return _invalid(f"/labeldelay {remainder}", parsed_args, f"Duplicate argument: {key}.")
        parsed_args[key] = value

    if command_token in {"help", "status"}:
        if parsed_args:
            return _invalid(
                f"/labeldelay {command_token}",
                parsed_args,
                f"/labeldelay {command_token} does not accept arguments.",
            )
        return ParsedCommand(
            command="help" if command_token == "help" else "status",
            normalized_command=f"/labeldelay {command_token}",
            args=(),
            parse_error=None,
        )

    if command_token == "cancel":
        unknown_keys = sorted(key for key in parsed_args if key != "action")
        if unknown_keys:
            return _invalid(
                f"/labeldelay cancel {' '.join(arg_tokens)}".strip(),
                parsed_args,
                f"Unknown cancel arguments: {', '.join(unknown_keys)}.",
            )
        if "action" not in parsed_args:
            return ParsedCommand(
                command="cancel",
                normalized_command="/labeldelay cancel",
                args=(),
                parse_error=None,
            )
        action = parsed_args["action"].strip().lower()
        if action not in ALL_ACTIONS:
            return _invalid(
                f"/labeldelay cancel action={parsed_args['action']}",
                parsed_args,
                f"action must be one of: {', '.join(ALL_ACTIONS)}.",
            )
        return ParsedCommand(
            command="cancel",
            normalized_command=f"/labeldelay cancel action={action}",
            args=(("action", action),),
            parse_error=None,
        )

    return _invalid(
        f"/labeldelay {remainder}", parsed_args, f"Unknown subcommand: {command_token}."
    )


def commands_help() -> str:
    return (
        "Supported commands:\n"
        "- `/labeldelay status`\n"
        "- `/labeldelay cancel`\n"
        "- `/labeldelay cancel action=close|merge|comment`\n"
        "- `/labeldelay help`"
    )


def _invalid(normalized: str, args: dict[str, str], error: str) -> ParsedCommand:
    return ParsedCommand(
        command="invalid",
        normalized_command=normalized,
        args=tuple(sorted(args.items())),
        parse_error=error,
    )
