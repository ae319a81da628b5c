"""
Unit tests for ktx/index.py
"""

from __future__ import annotations

import pytest

from ktx.index import ContextIndex
from ktx.kubeconfig import Cluster, Context, KubeConfigDocument, TokenAuth, User
from ktx.prober import HealthRecord, HealthStatus
from ktx.store import parse_document
from tests.conftest import SAMPLE_KUBECONFIG


def _doc(*contexts: tuple[str, str]) -> KubeConfigDocument:
    """Build a document with one cluster/user per (context name, endpoint)."""
    doc = KubeConfigDocument.empty()
    for name, endpoint in contexts:
        doc.add_cluster(Cluster(name, endpoint))
        doc.add_user(User(name, TokenAuth(token="t")))
        doc.add_context(Context(name, name, name))
    return doc


def test_entries_projection():
    index = ContextIndex(parse_document(SAMPLE_KUBECONFIG))
    entry = index.get("prod-east")
    assert entry.cluster_endpoint == "https://10.0.0.1:6443"
    assert entry.user_auth_kind == "token"
    assert entry.namespace == "payments"
    assert entry.is_current is True
    assert entry.status is HealthStatus.UNKNOWN
    assert [e.context_name for e in index.entries] == ["old-staging", "prod-east"]


def test_missing_references_are_marked():
    doc = parse_document(SAMPLE_KUBECONFIG.replace("user: staging-user", "user: ghost"))
    entry = ContextIndex(doc).get("old-staging")
    assert entry.user_auth_kind == "missing"


def test_search_ranks_name_substring_before_endpoint_and_subsequence():
    index = ContextIndex(_doc(
        ("prod", "https://a.example.com"),
        ("production-eu", "https://b.example.com"),
        ("staging", "https://prod-lb.example.com"),
        ("p-r-o-d", "https://c.example.com"),
    ))
    names = [e.context_name for e in index.search("prod")]
    assert names == ["prod", "production-eu", "staging", "p-r-o-d"]


def test_search_is_case_insensitive_and_excludes_non_matches():
    index = ContextIndex(_doc(("Prod-East", "https://10.0.0.1"), ("dev", "https://10.0.0.2")))
    assert [e.context_name for e in index.search("PROD")] == ["Prod-East"]
    assert index.search("zzz") == []


def test_search_ties_break_by_length_then_name():
    index = ContextIndex(_doc(("east-b", "https://x"), ("east-a", "https://y"), ("east", "https://z")))
    assert [e.context_name for e in index.search("east")] == ["east", "east-a", "east-b"]


def test_empty_query_returns_everything():
    index = ContextIndex(_doc(("b", "https://x"), ("a", "https://y")))
    assert [e.context_name for e in index.search("  ")] == ["a", "b"]


def test_health_survives_refresh_and_drops_vanished_contexts():
    doc = _doc(("a", "https://x"), ("b", "https://y"))
    index = ContextIndex(doc)
    index.update_health([
        HealthRecord("a", HealthStatus.REACHABLE),
        HealthRecord("b", HealthStatus.UNREACHABLE, consecutive_failures=1),
    ])
    assert index.get("a").status is HealthStatus.REACHABLE

    doc.delete_contexts(["b"])
    index.refresh(doc)
    assert index.get("a").status is HealthStatus.REACHABLE
    assert index.get("b") is None
    assert set(index.health) == {"a"}


@pytest.mark.parametrize("query", ["10.0.0.1", "6443"])
def test_search_matches_endpoint(query):
    index = ContextIndex(parse_document(SAMPLE_KUBECONFIG))
    assert "prod-east" in [e.context_name for e in index.search(query)]
