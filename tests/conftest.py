"""
Shared fixtures for the test suite.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ktx.runtime import set_session
from ktx.settings import Settings
from ktx.store import ConfigStore


# ---------------------------------------------------------------------------
# Subprocess mock factory
# ---------------------------------------------------------------------------

def make_proc(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    """Mimics the object returned by asyncio.create_subprocess_exec."""
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.kill = MagicMock()
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.fixture
def mock_run(monkeypatch):
    """
    Patches asyncio.create_subprocess_exec with a fake that pops responses
    from a queue. Every call's argv and env are recorded on ``queue.calls``.

    Usage:
        mock_run((b"output", b"", 0))
        mock_run((b"out1", b"", 0), (b"out2", b"", 0))  # multiple calls
    """
    responses: list[tuple[bytes, bytes, int]] = []
    calls: list[dict] = []

    async def fake_exec(*args, **kwargs):
        assert responses, f"Unexpected command: {args}"
        calls.append({"argv": list(args), "env": kwargs.get("env")})
        stdout, stderr, rc = responses.pop(0)
        return make_proc(stdout, stderr, rc)

    monkeypatch.setattr("asyncio.create_subprocess_exec", fake_exec)

    def queue(*items: tuple[bytes, bytes, int]):
        responses.extend(items)

    queue.calls = calls
    return queue


@pytest.fixture
def mock_cli(monkeypatch):
    """
    Routes fake subprocess calls by command line instead of call order, for
    code that runs several CLI calls concurrently.

    Usage:
        mock_cli.add("gcloud --format json projects list", [{"projectId": "p"}])
        mock_cli.add("eks list-clusters --region eu-west-1", stderr="boom", rc=1)

    A route matches when its key is a substring of the joined argv; the
    longest matching key wins. Several responses for one key are consumed in
    order, the last one repeating.
    """
    routes: dict[str, list[tuple[bytes, bytes, int]]] = {}
    calls: list[str] = []

    class Router:
        def add(self, key: str, payload=None, *, stderr: str = "", rc: int = 0, raw: str | None = None):
            if raw is not None:
                stdout = raw.encode()
            elif payload is None:
                stdout = b""
            else:
                stdout = json.dumps(payload).encode()
            routes.setdefault(key, []).append((stdout, stderr.encode(), rc))
            return self

        @property
        def calls(self) -> list[str]:
            return calls

        def count(self, fragment: str) -> int:
            return sum(1 for c in calls if fragment in c)

    async def fake_exec(*args, **kwargs):
        line = " ".join(args)
        calls.append(line)
        matches = [k for k in routes if k in line]
        assert matches, f"Unexpected command: {line}"
        queue = routes[max(matches, key=len)]
        stdout, stderr, rc = queue.pop(0) if len(queue) > 1 else queue[0]
        return make_proc(stdout, stderr, rc)

    monkeypatch.setattr("asyncio.create_subprocess_exec", fake_exec)
    return Router()


# ---------------------------------------------------------------------------
# HTTP mock factory
# ---------------------------------------------------------------------------

def client_factory(handler):
    """HealthProber client factory serving every request from ``handler``."""

    def factory(**kwargs):
        return httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            headers=kwargs.get("headers"),
            auth=kwargs.get("auth"),
        )

    return factory


# ---------------------------------------------------------------------------
# Sample kubeconfig
# ---------------------------------------------------------------------------

SAMPLE_KUBECONFIG = """\
# Shared with other tools; keep the x-* keys.
apiVersion: v1
kind: Config
preferences: {}
clusters:
- cluster:
    server: https://10.0.0.1:6443
    extensions:
    - extension:
        last-update: "2024-01-01"
      name: vendor-extension
  name: prod-east
- cluster:
    insecure-skip-tls-verify: true
    server: https://10.0.0.2:6443
  name: old-staging
users:
- name: prod-admin
  user:
    token: abc123   # rotated monthly
- name: staging-user
  user:
    token: def456
contexts:
- context:
    cluster: prod-east
    namespace: payments
    user: prod-admin
  name: prod-east
- context:
    cluster: old-staging
    user: staging-user
  name: old-staging
current-context: prod-east
x-custom-tool:
  last-sync: '2024-01-01T00:00:00Z'
  pinned: [prod-east]
"""

OTHER_KUBECONFIG = """\
apiVersion: v1
kind: Config
clusters:
- cluster:
    server: https://192.168.1.10:6443
  name: kind-dev
users:
- name: kind-dev
  user:
    client-certificate-data: Y2VydA==
    client-key-data: a2V5
contexts:
- context:
    cluster: kind-dev
    user: kind-dev
  name: kind-dev
current-context: kind-dev
"""


@pytest.fixture
def kubeconfig_path(tmp_path) -> Path:
    path = tmp_path / "config"
    path.write_text(SAMPLE_KUBECONFIG)
    path.chmod(0o600)
    return path


@pytest.fixture
def store(kubeconfig_path) -> ConfigStore:
    return ConfigStore(kubeconfig_path)


@pytest.fixture
def settings(kubeconfig_path) -> Settings:
    return Settings(kubeconfig=kubeconfig_path)


@pytest.fixture(autouse=True)
def _reset_runtime():
    yield
    set_session(None)
