"""
ContextIndex: searchable projection of a kubeconfig document.

The index never mutates the document. It is rebuilt with ``refresh`` after
every load or save and carries the last known ``HealthRecord`` per context
across rebuilds (keyed by context name).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Mapping

from ktx.kubeconfig import KubeConfigDocument
from ktx.prober import HealthRecord, HealthStatus


@dataclass(frozen=True)
class IndexEntry:
    context_name: str
    cluster_name: str
    cluster_endpoint: str
    user_name: str
    user_auth_kind: str
    namespace: str | None
    health: HealthRecord
    is_current: bool = False

    @property
    def status(self) -> HealthStatus:
        return self.health.status


def _subsequence(needle: str, haystack: str) -> bool:
    it = iter(haystack)
    return all(ch in it for ch in needle)


def _rank(query: str, entry: IndexEntry) -> int | None:
    name = entry.context_name.lower()
    endpoint = entry.cluster_endpoint.lower()
    if query in name:
        return 0
    if query in endpoint:
        return 1
    if _subsequence(query, name):
        return 2
    if _subsequence(query, endpoint):
        return 3
    return None


class ContextIndex:
    def __init__(self, doc: KubeConfigDocument | None = None):
        self._entries: list[IndexEntry] = []
        self._health: dict[str, HealthRecord] = {}
        if doc is not None:
            self.refresh(doc)

    def refresh(self, doc: KubeConfigDocument) -> None:
        """Rebuild entries from ``doc``. Health for vanished contexts is dropped."""
        clusters = {c.name: c for c in doc.clusters}
        users = {u.name: u for u in doc.users}
        current = doc.current_context
        entries = []
        for ctx in doc.contexts:
            cluster = clusters.get(ctx.cluster)
            user = users.get(ctx.user)
            entries.append(IndexEntry(
                context_name=ctx.name,
                cluster_name=ctx.cluster,
                cluster_endpoint=cluster.server if cluster else "",
                user_name=ctx.user,
                user_auth_kind=user.auth.kind if user else "missing",
                namespace=ctx.namespace,
                health=self._health.get(ctx.name) or HealthRecord(ctx.name),
                is_current=ctx.name == current,
            ))
        self._entries = sorted(entries, key=lambda e: e.context_name)
        names = {e.context_name for e in self._entries}
        self._health = {k: v for k, v in self._health.items() if k in names}

    def update_health(self, records: Iterable[HealthRecord]) -> None:
        updates = {r.context: r for r in records}
        if not updates:
            return
        self._health.update(updates)
        self._entries = [
            replace(e, health=updates[e.context_name]) if e.context_name in updates else e
            for e in self._entries
        ]

    @property
    def entries(self) -> list[IndexEntry]:
        return list(self._entries)

    @property
    def health(self) -> Mapping[str, HealthRecord]:
        return dict(self._health)

    def get(self, name: str) -> IndexEntry | None:
        for entry in self._entries:
            if entry.context_name == name:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def search(self, query: str) -> list[IndexEntry]:
        """Case-insensitive fuzzy match on context name and cluster endpoint.

        Substring matches rank above subsequence matches, and name matches
        above endpoint matches. Ties go to the shorter name, then lexical order.
        """
        query = query.strip().lower()
        if not query:
            return self.entries
        ranked = []
        for entry in self._entries:
            tier = _rank(query, entry)
            if tier is not None:
                ranked.append((tier, len(entry.context_name), entry.context_name, entry))
        ranked.sort(key=lambda item: item[:3])
        return [item[3] for item in ranked]
