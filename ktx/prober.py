"""
HealthProber: concurrent reachability / authentication checks.

Each probe resolves a context's cluster and user from a document snapshot,
obtains credentials (running exec plugins when needed) and issues
``GET <server>/api``. Outcomes are data, not exceptions:

  transport error / timeout     → unreachable
  HTTP 401 / 403                → auth_failed
  credential plugin failure     → auth_failed
  any other HTTP response       → reachable
  unusable local TLS material   → unknown

Probes run as asyncio tasks bounded by a semaphore. A ``ProbeBatch`` is a
one-shot async iterator of ``HealthRecord`` values in completion order; it can
be cancelled at any time, keeping the results that already arrived.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import ssl
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

import httpx

from ktx.command import CommandError, run_command
from ktx.kubeconfig import (
    BasicAuth,
    ClientCertificateAuth,
    Cluster,
    ExecAuth,
    KubeConfigDocument,
    TokenAuth,
    User,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_MAX_CONCURRENCY = 8
PROBE_PATH = "/api"
VERSION_PATH = "/version"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"


@dataclass(frozen=True)
class HealthRecord:
    context: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_checked: datetime | None = None
    last_error: str | None = None
    server_version: str | None = None
    consecutive_failures: int = 0


@dataclass(frozen=True)
class SweepPlan:
    """Stale contexts may be removed; auth failures need explicit confirmation."""

    stale: tuple[str, ...] = ()
    auth_failed: tuple[str, ...] = ()


class ProbeError(Exception):
    """A probe batch was used incorrectly."""


class ProbeIncompleteError(ProbeError):
    """Sweeping requires a probe pass that ran to completion."""


class _CredentialError(Exception):
    pass


class _LocalTLSError(Exception):
    pass


@dataclass(frozen=True)
class _Target:
    context: str
    cluster: Cluster | None
    user: User | None
    error: str | None = None


# ---------------------------------------------------------------------------
# Credential / TLS helpers
# ---------------------------------------------------------------------------

def _b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=False)
    except ValueError as e:
        raise _LocalTLSError(f"invalid base64 data: {e}") from e


def _ssl_context(cluster: Cluster, cert_pem: bytes | None, key_pem: bytes | None,
                 cert_file: str | None, key_file: str | None) -> ssl.SSLContext:
    try:
        if cluster.certificate_authority_data:
            ctx = ssl.create_default_context(cadata=_b64(cluster.certificate_authority_data).decode())
        elif cluster.certificate_authority:
            ctx = ssl.create_default_context(cafile=cluster.certificate_authority)
        else:
            ctx = ssl.create_default_context()
        if cluster.insecure_skip_tls_verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE

        if cert_pem and key_pem:
            # load_cert_chain only reads files; the material lives on disk only while loading.
            with tempfile.TemporaryDirectory(prefix="ktx-") as tmp:
                cert_path = Path(tmp) / "client.crt"
                key_path = Path(tmp) / "client.key"
                cert_path.write_bytes(cert_pem)
                key_path.write_bytes(key_pem)
                key_path.chmod(0o600)
                ctx.load_cert_chain(str(cert_path), str(key_path))
        elif cert_file and key_file:
            ctx.load_cert_chain(cert_file, key_file)
    except (ssl.SSLError, OSError, ValueError) as e:
        raise _LocalTLSError(f"unusable TLS material: {e}") from e
    return ctx


def _exec_info(auth: ExecAuth, cluster: Cluster) -> str:
    spec: dict[str, Any] = {"interactive": False}
    if auth.provide_cluster_info:
        cluster_info = {"server": cluster.server}
        if cluster.certificate_authority_data:
            cluster_info["certificate-authority-data"] = cluster.certificate_authority_data
        if cluster.insecure_skip_tls_verify:
            cluster_info["insecure-skip-tls-verify"] = True
        spec["cluster"] = cluster_info
    return json.dumps({"apiVersion": auth.api_version, "kind": "ExecCredential", "spec": spec})


async def _run_exec_plugin(auth: ExecAuth, cluster: Cluster, timeout: float) -> Mapping[str, Any]:
    env = dict(auth.env)
    env["KUBERNETES_EXEC_INFO"] = _exec_info(auth, cluster)
    try:
        output = await run_command(auth.command, auth.args, env=env, timeout=timeout)
    except CommandError as e:
        raise _CredentialError(f"credential plugin '{auth.command}' failed: {e}") from e
    try:
        credential = json.loads(output)
    except json.JSONDecodeError as e:
        raise _CredentialError(f"credential plugin '{auth.command}' returned invalid JSON") from e
    status = credential.get("status") if isinstance(credential, dict) else None
    if not isinstance(status, dict):
        raise _CredentialError(f"credential plugin '{auth.command}' returned no status")
    return status


# ---------------------------------------------------------------------------
# Prober
# ---------------------------------------------------------------------------

ClientFactory = Callable[..., httpx.AsyncClient]


class HealthProber:
    """Builds probe batches over immutable snapshots of a document."""

    def __init__(self, client_factory: ClientFactory | None = None):
        self._client_factory = client_factory or httpx.AsyncClient

    def probe(
        self,
        doc: KubeConfigDocument,
        contexts: Iterable[str] | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        previous: Mapping[str, HealthRecord] | None = None,
    ) -> ProbeBatch:
        names = list(dict.fromkeys(contexts)) if contexts is not None else [c.name for c in doc.contexts]
        targets = [self._resolve(doc, name) for name in names]
        return ProbeBatch(self, targets, timeout=timeout, max_concurrency=max_concurrency,
                          previous=dict(previous or {}))

    @staticmethod
    def _resolve(doc: KubeConfigDocument, name: str) -> _Target:
        ctx = doc.context(name)
        if ctx is None:
            return _Target(name, None, None, f"context '{name}' does not exist")
        cluster = doc.cluster(ctx.cluster)
        if cluster is None:
            return _Target(name, None, None, f"cluster '{ctx.cluster}' is not defined")
        if not cluster.server:
            return _Target(name, None, None, f"cluster '{ctx.cluster}' has no server")
        user = doc.user(ctx.user)
        if user is None:
            return _Target(name, cluster, None, f"user '{ctx.user}' is not defined")
        return _Target(name, cluster, user)

    async def check(self, target: _Target, timeout: float) -> HealthRecord:
        """Probe one resolved target. Never raises for network or credential failures."""
        if target.error:
            return _record(target.context, HealthStatus.UNREACHABLE, error=target.error)

        cluster, user = target.cluster, target.user
        try:
            client_kwargs = await self._client_kwargs(cluster, user, timeout)
        except _CredentialError as e:
            return _record(target.context, HealthStatus.AUTH_FAILED, error=str(e))
        except _LocalTLSError as e:
            return _record(target.context, HealthStatus.UNKNOWN, error=str(e))

        base = cluster.server.rstrip("/")
        async with self._client_factory(**client_kwargs) as client:
            try:
                response = await asyncio.wait_for(client.get(base + PROBE_PATH), timeout=timeout)
            except asyncio.TimeoutError:
                return _record(target.context, HealthStatus.UNREACHABLE,
                               error=f"timed out after {timeout}s")
            except httpx.TimeoutException as e:
                return _record(target.context, HealthStatus.UNREACHABLE,
                               error=f"timed out: {e or type(e).__name__}")
            except httpx.HTTPError as e:
                return _record(target.context, HealthStatus.UNREACHABLE,
                               error=str(e) or type(e).__name__)

            if response.status_code in (401, 403):
                return _record(target.context, HealthStatus.AUTH_FAILED,
                               error=f"HTTP {response.status_code}: credentials rejected")

            note = None if response.is_success else f"HTTP {response.status_code}"
            version = await self._server_version(client, base, timeout)
        return _record(target.context, HealthStatus.REACHABLE, error=note, version=version)

    @staticmethod
    async def _server_version(client: httpx.AsyncClient, base: str, timeout: float) -> str | None:
        try:
            response = await asyncio.wait_for(client.get(base + VERSION_PATH), timeout=timeout)
            if response.is_success:
                return response.json().get("gitVersion")
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError, AttributeError):
            pass
        return None

    async def _client_kwargs(self, cluster: Cluster, user: User, timeout: float) -> dict[str, Any]:
        auth = user.auth
        headers: dict[str, str] = {}
        basic: tuple[str, str] | None = None
        cert_pem = key_pem = None
        cert_file = key_file = None

        if isinstance(auth, ExecAuth):
            status = await _run_exec_plugin(auth, cluster, timeout)
            if status.get("token"):
                headers["Authorization"] = f"Bearer {status['token']}"
            elif status.get("clientCertificateData") and status.get("clientKeyData"):
                cert_pem = str(status["clientCertificateData"]).encode()
                key_pem = str(status["clientKeyData"]).encode()
            else:
                raise _CredentialError(f"credential plugin '{auth.command}' returned no token or certificate")
        elif isinstance(auth, TokenAuth):
            token = auth.token
            if not token and auth.token_file:
                try:
                    token = Path(auth.token_file).expanduser().read_text().strip()
                except OSError as e:
                    raise _CredentialError(f"cannot read token file {auth.token_file}: {e}") from e
            if token:
                headers["Authorization"] = f"Bearer {token}"
        elif isinstance(auth, BasicAuth):
            basic = (auth.username, auth.password)
        elif isinstance(auth, ClientCertificateAuth):
            if auth.certificate_data and auth.key_data:
                cert_pem, key_pem = _b64(auth.certificate_data), _b64(auth.key_data)
            cert_file, key_file = auth.certificate_file, auth.key_file

        verify = _ssl_context(cluster, cert_pem, key_pem, cert_file, key_file)
        kwargs: dict[str, Any] = {
            "verify": verify,
            "headers": headers,
            "timeout": httpx.Timeout(timeout),
            "follow_redirects": False,
        }
        if basic:
            kwargs["auth"] = basic
        if cluster.proxy_url:
            kwargs["proxy"] = cluster.proxy_url
        return kwargs


def _record(context: str, status: HealthStatus, *, error: str | None = None,
            version: str | None = None) -> HealthRecord:
    return HealthRecord(
        context=context,
        status=status,
        last_checked=datetime.now(timezone.utc),
        last_error=error,
        server_version=version,
    )


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

@dataclass
class ProbeBatch:
    prober: HealthProber
    targets: list[_Target]
    timeout: float = DEFAULT_TIMEOUT
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    previous: dict[str, HealthRecord] = field(default_factory=dict)
    results: dict[str, HealthRecord] = field(default_factory=dict)

    def __post_init__(self):
        self._started = False
        self._completed = False
        self._cancel_event = asyncio.Event()

    @property
    def contexts(self) -> list[str]:
        return [t.context for t in self.targets]

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop issuing probes and abandon in-flight ones. Does not block."""
        self._cancel_event.set()

    def __aiter__(self) -> AsyncIterator[HealthRecord]:
        if self._started:
            raise ProbeError("probe batch has already been consumed")
        self._started = True
        return self._iterate()

    async def run(self) -> dict[str, HealthRecord]:
        """Consume the whole batch and return every record received."""
        async for _ in self:
            pass
        return dict(self.results)

    async def _guarded(self, semaphore: asyncio.Semaphore, target: _Target) -> HealthRecord:
        async with semaphore:
            if self._cancel_event.is_set():
                raise asyncio.CancelledError
            # One budget for the whole check: exec plugin, /api and /version.
            try:
                record = await asyncio.wait_for(self.prober.check(target, self.timeout), self.timeout)
            except asyncio.TimeoutError:
                record = _record(target.context, HealthStatus.UNREACHABLE,
                                 error=f"timed out after {self.timeout}s")
            except Exception as exc:  # noqa: BLE001
                logger.warning("Probe of %s failed unexpectedly: %s", target.context, exc)
                record = _record(target.context, HealthStatus.UNKNOWN, error=f"probe error: {exc}")
        return self._with_history(record)

    def _with_history(self, record: HealthRecord) -> HealthRecord:
        if record.status is not HealthStatus.UNREACHABLE:
            return record
        prior = self.previous.get(record.context)
        streak = prior.consecutive_failures if prior and prior.status is HealthStatus.UNREACHABLE else 0
        return replace(record, consecutive_failures=streak + 1)

    async def _iterate(self) -> AsyncIterator[HealthRecord]:
        semaphore = asyncio.Semaphore(max(1, self.max_concurrency))
        pending = {asyncio.create_task(self._guarded(semaphore, t)) for t in self.targets}
        waiter = asyncio.create_task(self._cancel_event.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                for task in done - {waiter}:
                    pending.discard(task)
                    if task.cancelled():
                        continue
                    record = task.result()
                    self.results[record.context] = record
                    yield record
                if waiter in done:
                    break
            else:
                self._completed = not self._cancel_event.is_set()
        finally:
            waiter.cancel()
            for task in pending:
                task.cancel()

    def sweep(self, threshold: int = 1) -> SweepPlan:
        """Plan removals from the final state of this pass.

        ``threshold`` is how many consecutive passes a context must have been
        unreachable for. Auth failures are reported separately and never
        proposed as stale.
        """
        if not self._completed:
            raise ProbeIncompleteError("sweep needs a probe pass that ran to completion")
        stale = sorted(
            r.context for r in self.results.values()
            if r.status is HealthStatus.UNREACHABLE and r.consecutive_failures >= threshold
        )
        auth_failed = sorted(
            r.context for r in self.results.values() if r.status is HealthStatus.AUTH_FAILED
        )
        return SweepPlan(stale=tuple(stale), auth_failed=tuple(auth_failed))
