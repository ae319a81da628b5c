"""
Unit tests for ktx/session.py
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from ktx.discovery.base import Account, AuthError, CloudDiscoverer, DiscoveredCluster, DiscoveryError, Provider
from ktx.kubeconfig import ContextNotFoundError, DanglingReferenceError, ExecAuth, User
from ktx.prober import HealthProber, HealthStatus, ProbeIncompleteError
from ktx.session import (
    InvalidTransitionError,
    Level,
    NothingPendingError,
    Session,
    SessionError,
    State,
)
from ktx.store import ConfigStore, ConfigWriteError
from tests.conftest import OTHER_KUBECONFIG, client_factory


REFUSED = httpx.ConnectError("[Errno 111] Connection refused")


def _prober(table: dict[str, object]) -> HealthProber:
    async def handler(request: httpx.Request) -> httpx.Response:
        action = table[request.url.host]
        if isinstance(action, Exception):
            raise action
        return httpx.Response(action)

    return HealthProber(client_factory(handler))


class FakeDiscoverer(CloudDiscoverer):
    """Serves a fixed cluster list; ``gate`` holds list_clusters open until set."""

    provider = Provider.GKE
    program = "gcloud"

    def __init__(self, clusters=(), *, error: Exception | None = None, configured: bool = True, gate=None):
        super().__init__()
        self.clusters = list(clusters)
        self.error = error
        self.configured = configured
        self.gate = gate
        self.calls = 0

    async def is_configured(self) -> bool:
        return self.configured

    async def list_accounts(self) -> list[Account]:
        return []

    async def list_clusters(self, account_context=None) -> list[DiscoveredCluster]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.clusters)

    def build_auth(self, cluster: DiscoveredCluster, name: str) -> User:
        return User(name=name, auth=ExecAuth("gke-gcloud-auth-plugin", provide_cluster_info=True))


def _cluster(name: str = "analytics", endpoint: str = "https://34.1.2.3") -> DiscoveredCluster:
    return DiscoveredCluster(
        provider=Provider.GKE, account="proj1", region="us-central1",
        name=name, endpoint=endpoint, scope=("proj1",),
    )


@pytest.fixture
def session(store, settings) -> Session:
    prober = _prober({"10.0.0.1": 200, "10.0.0.2": REFUSED})
    return Session(store, settings=settings, prober=prober)


def _reload(session: Session):
    return ConfigStore(session.store.path).load()


# ---------------------------------------------------------------------------
# Search and transitions
# ---------------------------------------------------------------------------

def test_starts_browsing(session):
    assert session.state is State.BROWSING
    assert session.generation == 0
    assert [e.context_name for e in session.visible_entries()] == ["old-staging", "prod-east"]


def test_search_moves_between_browsing_and_searching(session):
    assert [e.context_name for e in session.search("staging")] == ["old-staging"]
    assert session.state is State.SEARCHING
    session.clear_search()
    assert session.state is State.BROWSING


def test_confirm_without_pending_is_invalid(session):
    with pytest.raises(InvalidTransitionError, match="Cannot confirm while browsing"):
        session.confirm()


def test_no_mutation_while_confirming(session):
    session.request_delete(["old-staging"])
    with pytest.raises(InvalidTransitionError):
        session.switch("old-staging")
    with pytest.raises(InvalidTransitionError):
        session.search("x")


def test_subscribers_see_transitions(session):
    events = []
    unsubscribe = session.subscribe(events.append)
    session.search("prod")
    unsubscribe()
    session.clear_search()

    assert [(e.previous, e.state) for e in events] == [(State.BROWSING, State.SEARCHING)]


def test_failing_listener_does_not_break_session(session):
    def boom(event):
        raise RuntimeError("listener bug")

    session.subscribe(boom)
    session.search("prod")
    assert session.state is State.SEARCHING


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

def test_delete_requires_confirmation(session):
    assert session.request_delete(["old-staging"]) == ("old-staging",)
    assert session.state is State.CONFIRMING_DELETION
    # Nothing is written before confirm.
    assert _reload(session).context("old-staging") is not None

    removed = session.confirm()

    assert removed["contexts"] == ["old-staging"]
    assert session.state is State.BROWSING
    assert session.generation == 1
    assert _reload(session).context("old-staging") is None
    assert session.message.level is Level.SUCCESS
    assert session.store.backup_path is not None


def test_cancel_deletion_leaves_file_alone(session, kubeconfig_path):
    before = kubeconfig_path.read_text()
    session.request_delete(["old-staging"])
    session.cancel()

    assert session.state is State.BROWSING
    assert session.pending_deletion == ()
    assert kubeconfig_path.read_text() == before
    assert session.message.text == "Cancelled"


def test_delete_unknown_context(session):
    with pytest.raises(ContextNotFoundError):
        session.request_delete(["ghost"])
    assert session.state is State.BROWSING


def test_confirm_selection_narrows_deletion(session):
    session.request_delete(["old-staging", "prod-east"])
    session.confirm(["prod-east"])
    doc = _reload(session)
    assert doc.context("prod-east") is None
    assert doc.context("old-staging") is not None


def test_confirm_selection_matching_nothing(session):
    session.request_delete(["old-staging"])
    with pytest.raises(NothingPendingError):
        session.confirm(["prod-east"])
    assert session.state is State.CONFIRMING_DELETION


def test_delete_with_prune_removes_orphans(store, settings):
    session = Session(store, settings=replace(settings, prune_orphans=True))
    session.request_delete(["old-staging"])
    removed = session.confirm()

    assert removed["clusters"] == ["old-staging"]
    assert removed["users"] == ["staging-user"]
    assert _reload(session).cluster("old-staging") is None


def test_failed_write_rolls_back(session, monkeypatch, kubeconfig_path):
    before = kubeconfig_path.read_text()

    def failing_save(doc, path=None):
        raise ConfigWriteError("disk full")

    monkeypatch.setattr(session.store, "save", failing_save)
    session.request_delete(["old-staging"])
    with pytest.raises(ConfigWriteError):
        session.confirm()

    assert session.state is State.BROWSING
    assert session.generation == 0
    assert session.document.context("old-staging") is not None
    assert session.index.get("old-staging") is not None
    assert session.message.level is Level.ERROR
    assert "disk full" in session.message.text
    assert kubeconfig_path.read_text() == before


# ---------------------------------------------------------------------------
# Direct mutations
# ---------------------------------------------------------------------------

def test_switch_persists_current_context(session):
    session.switch("old-staging")
    assert _reload(session).current_context == "old-staging"
    assert session.index.get("old-staging").is_current


def test_switch_unknown(session):
    with pytest.raises(ContextNotFoundError):
        session.switch("ghost")


def test_mutation_returns_to_searching(session):
    session.search("staging")
    session.switch("old-staging")
    assert session.state is State.SEARCHING


async def test_rename_keeps_health(session):
    await session.probe(["old-staging"])
    session.rename("old-staging", "staging-legacy")

    entry = session.index.get("staging-legacy")
    assert entry.status is HealthStatus.UNREACHABLE
    assert session.index.get("old-staging") is None
    assert _reload(session).context("staging-legacy") is not None


def test_create_context(session):
    session.create_context("payments-admin", "prod-east", "prod-admin", namespace="payments")
    assert _reload(session).context("payments-admin").namespace == "payments"


def test_create_context_with_dangling_reference_is_rejected(session):
    with pytest.raises(DanglingReferenceError) as exc:
        session.create_context("broken", "no-such-cluster", "prod-admin")
    assert "no-such-cluster" in str(exc.value)
    assert _reload(session).context("broken") is None
    assert session.state is State.BROWSING


def test_import_kubeconfig_twice_is_idempotent(session, tmp_path):
    other = tmp_path / "kind.yaml"
    other.write_text(OTHER_KUBECONFIG)

    first = session.import_kubeconfig(other)
    assert [o.context for o in first.added] == ["kind-dev"]
    assert session.generation == 1

    second = session.import_kubeconfig(other)
    assert not second.changed
    assert session.generation == 1
    assert session.message.level is Level.INFO


def test_refresh_picks_up_external_edit(session, kubeconfig_path):
    kubeconfig_path.write_text(kubeconfig_path.read_text().replace("name: old-staging\ncurrent", "name: legacy\ncurrent"))
    assert session.refresh() == 2
    assert session.index.get("legacy") is not None
    assert session.generation == 1


# ---------------------------------------------------------------------------
# Probing and sweep
# ---------------------------------------------------------------------------

async def test_probe_then_sweep_stages_stale_contexts(session):
    results = await session.probe()

    assert results["prod-east"].status is HealthStatus.REACHABLE
    assert results["old-staging"].status is HealthStatus.UNREACHABLE
    assert session.state is State.BROWSING
    assert session.index.get("old-staging").status is HealthStatus.UNREACHABLE

    plan = session.sweep()
    assert plan.stale == ("old-staging",)
    assert session.state is State.CONFIRMING_DELETION
    assert session.pending_deletion == ("old-staging",)


def test_sweep_without_probe(session):
    with pytest.raises(SessionError, match="run a probe first"):
        session.sweep()


async def test_sweep_with_nothing_stale(store, settings):
    session = Session(store, settings=settings, prober=_prober({"10.0.0.1": 200, "10.0.0.2": 200}))
    await session.probe()
    session.sweep()
    assert session.state is State.BROWSING
    assert session.message.text == "No stale contexts found"


async def test_probe_emits_health_events(session):
    events = []
    session.subscribe(events.append)
    await session.probe()

    health = [r.context for e in events for r in e.health]
    assert sorted(health) == ["old-staging", "prod-east"]
    assert events[0].state is State.PROBING
    assert events[-1].state is State.BROWSING


async def test_cancel_probe_keeps_partial_results(store, settings):
    release = asyncio.Event()

    async def handler(request):
        if request.url.host == "10.0.0.2":
            await release.wait()
        return httpx.Response(200)

    session = Session(store, settings=settings, prober=HealthProber(client_factory(handler)))

    def on_event(event):
        if event.health:
            session.cancel()

    session.subscribe(on_event)
    results = await session.probe(timeout=30)

    assert list(results) == ["prod-east"]
    assert session.state is State.BROWSING
    assert "cancelled" in session.message.text
    with pytest.raises(ProbeIncompleteError):
        session.sweep()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

async def test_discover_confirm_then_rediscover_finds_nothing(store, settings):
    discoverer = FakeDiscoverer([_cluster()])
    session = Session(store, settings=settings, discoverers={Provider.GKE: discoverer})

    new = await session.discover()
    assert [c.base_name for c in new] == ["gke-proj1-analytics"]
    assert session.state is State.CONFIRMING_IMPORT

    result = session.confirm()
    assert [o.context for o in result.added] == ["gke-proj1-analytics"]
    assert _reload(session).context("gke-proj1-analytics") is not None

    assert await session.discover() == []
    assert session.state is State.BROWSING
    assert "already present" in session.message.text


async def test_discover_confirm_selection(store, settings):
    clusters = [_cluster(), _cluster("web", "https://2.2.2.2")]
    session = Session(store, settings=settings, discoverers={Provider.GKE: FakeDiscoverer(clusters)})
    await session.discover([Provider.GKE])
    session.confirm(["gke-proj1-web"])

    doc = _reload(session)
    assert doc.context("gke-proj1-web") is not None
    assert doc.context("gke-proj1-analytics") is None


async def test_discover_skips_unconfigured_providers(store, settings):
    unconfigured = FakeDiscoverer([_cluster()], configured=False)
    session = Session(store, settings=settings, discoverers={Provider.GKE: unconfigured})
    assert await session.discover() == []
    assert unconfigured.calls == 0


async def test_discover_provider_error_becomes_message(store, settings):
    failing = FakeDiscoverer(error=AuthError("gcloud is not logged in", provider=Provider.GKE))
    session = Session(store, settings=settings, discoverers={Provider.GKE: failing})

    assert await session.discover(["gke"]) == []
    errors = [m for m in session.messages if m.level is Level.ERROR]
    assert errors and "gcloud is not logged in" in errors[0].text
    assert session.state is State.BROWSING


async def test_discover_unknown_provider(session):
    with pytest.raises(SessionError, match="eks"):
        await session.discover(["eks"])


async def test_discover_unrecognised_provider_name(session):
    with pytest.raises(DiscoveryError, match="Unknown provider 'openshift'"):
        await session.discover(["openshift"])
    assert session.state is State.BROWSING


async def test_cancel_discovery(store, settings):
    gate = asyncio.Event()
    session = Session(store, settings=settings, discoverers={Provider.GKE: FakeDiscoverer([_cluster()], gate=gate)})

    task = asyncio.ensure_future(session.discover(["gke"]))
    while session.state is not State.DISCOVERING:
        await asyncio.sleep(0)
    session.cancel()

    assert await task == []
    assert session.state is State.BROWSING
    assert session.message.text == "Discovery cancelled"


async def test_cancel_import_discards_staged_clusters(store, settings):
    session = Session(store, settings=settings, discoverers={Provider.GKE: FakeDiscoverer([_cluster()])})
    await session.discover(["gke"])
    session.cancel()
    assert session.pending_import == ()
    assert _reload(session).context("gke-proj1-analytics") is None
