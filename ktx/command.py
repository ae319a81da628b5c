"""
Async wrapper for external programs: cloud provider CLIs (gcloud, aws, az)
and kubeconfig exec credential plugins.

Uses asyncio.create_subprocess_exec, so no shell is involved.
All callers must pass values as explicit list elements, never interpolated
into a shell string.

  - Concurrency semaphore to limit parallel subprocess count
  - Per-call timeout; a timed-out or cancelled process is killed and reaped
  - Enriched error messages for common login / throttling failures
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Mapping, Sequence


COMMAND_TIMEOUT = 60  # seconds
MAX_OUTPUT_BYTES = 10 * 1024 * 1024  # 10 MB
MAX_CONCURRENT_COMMANDS = 8


# ---------------------------------------------------------------------------
# Error enrichment
# ---------------------------------------------------------------------------

_ERROR_HINTS = {
    "You do not currently have an active account selected": (
        "gcloud is not logged in. Run `gcloud auth login`."
    ),
    "Reauthentication failed": (
        "gcloud credentials expired. Run `gcloud auth login` again."
    ),
    "Unable to locate credentials": (
        "No AWS credentials for this profile. Run `aws configure` or `aws sso login`."
    ),
    "ExpiredToken": (
        "AWS session token expired. Refresh it (e.g. `aws sso login`)."
    ),
    "Please run 'az login'": (
        "Azure CLI is not logged in. Run `az login`."
    ),
    "AADSTS": (
        "Azure AD rejected the token. Run `az login` again."
    ),
    "Throttling": (
        "The provider API is throttling requests. Retrying later usually helps."
    ),
}


def _enrich_error(raw_stderr: str) -> str:
    """Prepend an actionable hint to common provider CLI errors."""
    for pattern, hint in _ERROR_HINTS.items():
        if pattern in raw_stderr:
            return f"{hint}\n\nstderr: {raw_stderr}"
    return raw_stderr


# ---------------------------------------------------------------------------
# Concurrency control
# ---------------------------------------------------------------------------

_semaphore: asyncio.Semaphore | None = None


def _get_semaphore() -> asyncio.Semaphore:
    global _semaphore
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(MAX_CONCURRENT_COMMANDS)
    return _semaphore


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CommandError(Exception):
    """Raised when a program exits non-zero or times out."""

    def __init__(self, message: str, *, program: str = "", stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.program = program
        self.stderr = stderr
        self.returncode = returncode


class CommandNotFoundError(CommandError):
    """The program is not installed or not on PATH."""


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill ``proc`` if it is still running and reap it."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_command(
    program: str,
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> str:
    """Run ``program`` with ``args`` and return stdout as a string."""
    timeout = timeout or COMMAND_TIMEOUT
    full_env = {**os.environ, **env} if env else None

    async with _get_semaphore():
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
            )
        except FileNotFoundError:
            raise CommandNotFoundError(
                f"{program} not found. Ensure it is installed and on your PATH.",
                program=program,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise CommandError(
                f"{program} timed out after {timeout}s: {program} {' '.join(args)}",
                program=program,
            )
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

    if len(stdout) > MAX_OUTPUT_BYTES:
        stdout = stdout[:MAX_OUTPUT_BYTES]

    if proc.returncode != 0:
        err = stderr.decode(errors="replace").strip()
        message = _enrich_error(err) if err else f"{program} exited with code {proc.returncode}"
        raise CommandError(message, program=program, stderr=err, returncode=proc.returncode)

    return stdout.decode(errors="replace").strip()


async def run_json(
    program: str,
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> dict | list:
    """Run a program whose stdout is a JSON document and parse it."""
    output = await run_command(program, args, env=env, timeout=timeout)
    if not output:
        return []
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        raise CommandError(
            f"{program} returned output that is not valid JSON: {output[:200]}",
            program=program,
        )
