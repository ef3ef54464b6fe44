from __future__ import annotations

from collections.abc import Sequence
import logging
import subprocess

from labeldelay.observability import log_warning_event


LOGGER = logging.getLogger("labeldelay.shell")
DEFAULT_TIMEOUT_SECONDS = 60.0


class CommandError(RuntimeError):
    def __init__(self, message: str, *, exit_code: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


def run(
    argv: Sequence[str],
    *,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> str:
    """Run a subprocess and return stdout, raising CommandError on failure when ``check``."""
    command = " ".join(argv)
    try:
        proc = subprocess.run(
            list(argv),
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        log_warning_event(
            LOGGER, "command_timed_out", command=command, timeout_seconds=timeout_seconds
        )
        raise CommandError(
            f"Command timed out after {timeout_seconds}s: {command}",
            exit_code=-1,
            stdout=_decoded(exc.stdout),
            stderr=_decoded(exc.stderr),
        ) from exc

    if check and proc.returncode != 0:
        log_warning_event(
            LOGGER,
            "command_failed",
            command=command,
            exit_code=proc.returncode,
            stderr=_preview(proc.stderr),
        )
        raise CommandError(
            f"Command failed with exit code {proc.returncode}: {command}\n"
            f"stderr:\n{proc.stderr}",
            exit_code=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
    return proc.stdout


def _decoded(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
