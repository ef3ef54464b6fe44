from __future__ import annotations

import subprocess

import pytest

from labeldelay.observability import configure_logging
from labeldelay.shell import DEFAULT_TIMEOUT_SECONDS, CommandError, _decoded, _preview, run


def test_run_success(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["gh"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(("gh", "api", "/rate_limit"), input_text="{}")

    assert out == "ok"
    assert called["args"] == (["gh", "api", "/rate_limit"],)
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["input"] == "{}"
    assert kwargs["check"] is False
    assert kwargs["timeout"] == DEFAULT_TIMEOUT_SECONDS


def test_run_failure_raises_and_logs(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(
            args=["gh"], returncode=1, stdout="", stderr="gh: Not Found (HTTP 404)"
        )

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="exit code 1") as excinfo:
        run(["gh", "api", "/missing"])

    assert excinfo.value.exit_code == 1
    assert excinfo.value.stderr == "gh: Not Found (HTTP 404)"
    stderr = capsys.readouterr().err
    assert "event=command_failed" in stderr
    assert "exit_code=1" in stderr


def test_run_without_check_returns_stdout_of_failed_command(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: subprocess.CompletedProcess(
            args=["gh"], returncode=1, stdout="HTTP/2.0 404 Not Found\n\n{}", stderr="x"
        ),
    )

    assert run(["gh"], check=False).startswith("HTTP/2.0 404")


def test_run_timeout_becomes_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        raise subprocess.TimeoutExpired(cmd="gh", timeout=float(kwargs["timeout"]), stderr=b"slow")  # type: ignore[arg-type]

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="timed out after 2.5s") as excinfo:
        run(["gh", "api", "/slow"], timeout_seconds=2.5)

    assert excinfo.value.exit_code == -1
    assert excinfo.value.stderr == "slow"


def test_preview_and_decoded_helpers() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _decoded(None) == ""
    assert _decoded(b"caf\xc3\xa9") == "café"
    assert _decoded("text") == "text"
