"""
Unit tests for ktx/command.py
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from ktx.command import CommandError, CommandNotFoundError, run_command, run_json
from tests.conftest import make_proc


async def _async_return(val):
    return val


# ---------------------------------------------------------------------------
# run_command()
# ---------------------------------------------------------------------------

async def test_run_command_success(mock_run):
    mock_run((b"  hello world  \n", b"", 0))
    out = await run_command("gcloud", ["info"])
    assert out == "hello world"


async def test_run_command_passes_argv_without_shell(mock_run):
    mock_run((b"", b"", 0))
    await run_command("aws", ["eks", "list-clusters", "--region", "us-east-1; rm -rf /"])
    assert mock_run.calls[0]["argv"] == ["aws", "eks", "list-clusters", "--region", "us-east-1; rm -rf /"]


async def test_run_command_merges_env(mock_run, monkeypatch):
    monkeypatch.setenv("HOME", "/home/op")
    mock_run((b"", b"", 0))
    await run_command("aws", ["sts"], env={"AWS_PROFILE": "dev"})
    env = mock_run.calls[0]["env"]
    assert env["AWS_PROFILE"] == "dev"
    assert env["HOME"] == "/home/op"


async def test_run_command_without_env_inherits(mock_run):
    mock_run((b"", b"", 0))
    await run_command("az", ["account", "show"])
    assert mock_run.calls[0]["env"] is None


async def test_run_command_nonzero_exit_uses_stderr(mock_run):
    mock_run((b"", b"ERROR: (gcloud.projects.list) something broke", 1))
    with pytest.raises(CommandError, match="something broke") as exc:
        await run_command("gcloud", ["projects", "list"])
    assert exc.value.returncode == 1
    assert exc.value.program == "gcloud"


async def test_run_command_nonzero_exit_no_stderr(mock_run):
    mock_run((b"", b"", 2))
    with pytest.raises(CommandError, match="exited with code 2"):
        await run_command("az", ["aks", "list"])


async def test_run_command_adds_login_hint(mock_run):
    mock_run((b"", b"ERROR: Please run 'az login' to setup account.", 1))
    with pytest.raises(CommandError, match="Azure CLI is not logged in") as exc:
        await run_command("az", ["aks", "list"])
    # The raw stderr is kept separately for classification.
    assert exc.value.stderr == "ERROR: Please run 'az login' to setup account."


async def test_run_command_not_found(monkeypatch):
    async def missing(*args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("asyncio.create_subprocess_exec", missing)
    with pytest.raises(CommandNotFoundError, match="kubelogin not found"):
        await run_command("kubelogin", ["get-token"])


async def test_run_command_timeout(monkeypatch):
    async def fake_wait_for(coro, timeout):
        coro.close()
        raise asyncio.TimeoutError

    monkeypatch.setattr("asyncio.wait_for", fake_wait_for)

    proc = make_proc()
    proc.returncode = None
    monkeypatch.setattr(
        "asyncio.create_subprocess_exec",
        lambda *a, **kw: _async_return(proc),
    )

    with pytest.raises(CommandError, match="timed out"):
        await run_command("gcloud", ["container", "clusters", "list"], timeout=1)

    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


async def test_run_command_cancelled_kills_child(monkeypatch):
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(30)

    proc = make_proc()
    proc.returncode = None
    proc.communicate = AsyncMock(side_effect=hang)
    monkeypatch.setattr(
        "asyncio.create_subprocess_exec",
        lambda *a, **kw: _async_return(proc),
    )

    task = asyncio.create_task(run_command("aws", ["eks", "get-token", "--cluster-name", "prod"]))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


async def test_run_command_cancelled_after_exit_does_not_kill(monkeypatch):
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(30)

    proc = make_proc()
    proc.communicate = AsyncMock(side_effect=hang)
    monkeypatch.setattr(
        "asyncio.create_subprocess_exec",
        lambda *a, **kw: _async_return(proc),
    )

    task = asyncio.create_task(run_command("gcloud", ["projects", "list"]))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    proc.kill.assert_not_called()
    proc.wait.assert_awaited_once()


async def test_run_command_utf8_replacement(mock_run):
    mock_run((b"valid \xff invalid", b"", 0))
    out = await run_command("aws", ["configure", "list-profiles"])
    assert "\xff" not in out
    assert "valid" in out


# ---------------------------------------------------------------------------
# run_json()
# ---------------------------------------------------------------------------

async def test_run_json_parses_list(mock_run):
    payload = [{"name": "analytics", "location": "us-central1"}]
    mock_run((json.dumps(payload).encode(), b"", 0))
    assert await run_json("gcloud", ["container", "clusters", "list"]) == payload


async def test_run_json_empty_output_is_empty_list(mock_run):
    mock_run((b"", b"", 0))
    assert await run_json("az", ["aks", "list"]) == []


async def test_run_json_invalid(mock_run):
    mock_run((b"Listed 0 items.", b"", 0))
    with pytest.raises(CommandError, match="not valid JSON"):
        await run_json("gcloud", ["projects", "list"])
