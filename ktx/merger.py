"""
Merger: folds discovered clusters or another kubeconfig into a document.

Naming policy for every cluster, user and context:

  1. start from a base name (``gke-proj1-analytics`` or the imported name)
  2. if the name is free, take it
  3. if it exists and is equivalent (same endpoint/trust, same auth, same
     references), reuse it, so importing twice is a no-op
  4. otherwise try ``<base>-2``, ``<base>-3``, ... until 2 or 3 applies

Existing entries are never overwritten or deleted. Merging works on a copy
unless ``in_place`` is given; the caller decides whether to persist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Mapping

from ktx.discovery.base import CloudDiscoverer, DiscoveredCluster, Provider
from ktx.kubeconfig import Cluster, Context, KubeConfigDocument, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeOutcome:
    source: str
    context: str
    cluster: str
    user: str
    added: bool


@dataclass
class MergeResult:
    document: KubeConfigDocument
    outcomes: list[MergeOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def added(self) -> list[MergeOutcome]:
        return [o for o in self.outcomes if o.added]

    @property
    def reused(self) -> list[MergeOutcome]:
        return [o for o in self.outcomes if not o.added]

    @property
    def names(self) -> dict[str, str]:
        """Source identifier → final context name."""
        return {o.source: o.context for o in self.outcomes}

    @property
    def changed(self) -> bool:
        return bool(self.added)


def _claim(base: str, lookup: Callable[[str], object | None], same: Callable[[object], bool]) -> tuple[str, bool]:
    """Return (name, reused) for the first candidate that is free or equivalent."""
    candidate, counter = base, 1
    while True:
        existing = lookup(candidate)
        if existing is None:
            return candidate, False
        if same(existing):
            return candidate, True
        counter += 1
        candidate = f"{base}-{counter}"


def _source_id(cluster: DiscoveredCluster) -> str:
    return "/".join(cluster.key)


class Merger:
    def __init__(self, discoverers: Mapping[Provider, CloudDiscoverer] | None = None):
        self._discoverers = dict(discoverers or {})

    def _build_user(self, cluster: DiscoveredCluster, name: str) -> User:
        discoverer = self._discoverers.get(cluster.provider)
        if discoverer is None:
            raise KeyError(f"No discoverer registered for provider '{cluster.provider.value}'")
        return discoverer.build_auth(cluster, name)

    # -- discovered clusters ------------------------------------------------

    def merge(
        self,
        doc: KubeConfigDocument,
        discovered: Iterable[DiscoveredCluster],
        *,
        in_place: bool = False,
    ) -> MergeResult:
        result = MergeResult(document=doc if in_place else doc.copy())
        for item in discovered:
            base = item.base_name
            cluster = item.to_cluster(base)
            user = self._build_user(item, base)
            outcome = self._place(result.document, _source_id(item), base, cluster, user, None, base)
            result.outcomes.append(outcome)
        return result

    def pending(self, doc: KubeConfigDocument, discovered: Iterable[DiscoveredCluster]) -> list[DiscoveredCluster]:
        """Discovered clusters that are not yet present in ``doc``."""
        items = list(discovered)
        added = {o.source for o in self.merge(doc, items).added}
        return [item for item in items if _source_id(item) in added]

    # -- another kubeconfig -------------------------------------------------

    def merge_kubeconfig(
        self,
        doc: KubeConfigDocument,
        other: KubeConfigDocument,
        *,
        in_place: bool = False,
    ) -> MergeResult:
        result = MergeResult(document=doc if in_place else doc.copy())
        for ctx in other.contexts:
            cluster = other.cluster(ctx.cluster)
            user = other.user(ctx.user)
            if cluster is None or user is None:
                logger.warning("Skipping context %s: unresolved cluster or user", ctx.name)
                result.skipped.append(ctx.name)
                continue
            outcome = self._place(
                result.document, ctx.name, cluster.name, cluster, user, ctx.namespace, ctx.name,
                user_base=user.name,
            )
            result.outcomes.append(outcome)
        return result

    # -- shared -------------------------------------------------------------

    @staticmethod
    def _place(
        doc: KubeConfigDocument,
        source: str,
        cluster_base: str,
        cluster: Cluster,
        user: User,
        namespace: str | None,
        context_base: str,
        *,
        user_base: str | None = None,
    ) -> MergeOutcome:
        cluster_name, cluster_reused = _claim(cluster_base, doc.cluster, lambda c: c.equivalent(cluster))
        if not cluster_reused:
            doc.add_cluster(replace(cluster, name=cluster_name))

        user_name, user_reused = _claim(user_base or cluster_base, doc.user, lambda u: u.equivalent(user))
        if not user_reused:
            doc.add_user(User(name=user_name, auth=user.auth))

        def same_context(existing: Context) -> bool:
            return (existing.cluster, existing.user, existing.namespace) == (cluster_name, user_name, namespace)

        context_name, context_reused = _claim(context_base, doc.context, same_context)
        if not context_reused:
            doc.add_context(Context(name=context_name, cluster=cluster_name, user=user_name, namespace=namespace))
            logger.info("Merged context %s (cluster %s, user %s)", context_name, cluster_name, user_name)

        return MergeOutcome(
            source=source,
            context=context_name,
            cluster=cluster_name,
            user=user_name,
            added=not context_reused,
        )
