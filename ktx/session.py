"""
Session: the single owner of the in-memory kubeconfig document.

Intents from the UI collaborator arrive as method calls. Each one is only
legal in certain states; anything else raises ``InvalidTransitionError``.

  Browsing ⇄ Searching                    search / clear_search
  Browsing → Probing → Browsing           probe (cancel keeps partial results)
  Browsing → ConfirmingDeletion           request_delete / sweep
  Browsing → Discovering → ConfirmingImport
  Confirming* → Persisting → Browsing     confirm
  Confirming* → Browsing                  cancel
  Browsing → Persisting → Browsing        switch / rename / create / import file

Every write goes through ``_persist``: the mutation runs on a copy, the copy
is saved, and only then does it become the live document. A failed save
rolls back to the last saved snapshot and surfaces the error.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from ktx.discovery.base import AccountContext, CloudDiscoverer, DiscoveredCluster, Provider
from ktx.index import ContextIndex, IndexEntry
from ktx.kubeconfig import Context, ContextNotFoundError, KubeConfigDocument, KubeconfigError
from ktx.merger import MergeResult, Merger
from ktx.prober import HealthProber, HealthRecord, ProbeBatch, SweepPlan
from ktx.settings import Settings
from ktx.store import ConfigStore

logger = logging.getLogger(__name__)

MESSAGE_HISTORY = 50


class State(str, Enum):
    BROWSING = "browsing"
    SEARCHING = "searching"
    PROBING = "probing"
    DISCOVERING = "discovering"
    CONFIRMING_DELETION = "confirming_deletion"
    CONFIRMING_IMPORT = "confirming_import"
    PERSISTING = "persisting"


IDLE = (State.BROWSING, State.SEARCHING)
CONFIRMING = (State.CONFIRMING_DELETION, State.CONFIRMING_IMPORT)


class Level(str, Enum):
    ERROR = "error"
    INFO = "info"
    SUCCESS = "success"


@dataclass(frozen=True)
class Message:
    level: Level
    text: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SessionEvent:
    state: State
    previous: State
    generation: int
    message: Message | None = None
    health: tuple[HealthRecord, ...] = ()


@dataclass(frozen=True)
class SessionSnapshot:
    state: State
    generation: int
    query: str
    current_context: str
    entries: tuple[IndexEntry, ...]
    pending_deletion: tuple[str, ...] = ()
    pending_import: tuple[DiscoveredCluster, ...] = ()
    message: Message | None = None


class SessionError(Exception):
    pass


class InvalidTransitionError(SessionError):
    def __init__(self, intent: str, state: State):
        self.intent = intent
        self.state = state
        super().__init__(f"Cannot {intent} while {state.value.replace('_', ' ')}")


class NothingPendingError(SessionError):
    """confirm() with an empty selection."""


Listener = Callable[[SessionEvent], Any]


class Session:
    def __init__(
        self,
        store: ConfigStore,
        *,
        settings: Settings | None = None,
        prober: HealthProber | None = None,
        discoverers: Mapping[Provider, CloudDiscoverer] | None = None,
        document: KubeConfigDocument | None = None,
    ):
        self.store = store
        self.settings = settings or Settings(kubeconfig=store.path)
        self.prober = prober or HealthProber()
        self.discoverers = dict(discoverers or {})
        self.merger = Merger(self.discoverers)

        self._doc = document if document is not None else store.load()
        self._saved = self._doc.copy()
        self.index = ContextIndex(self._doc)

        self._state = State.BROWSING
        self._generation = 0
        self._query = ""
        self._messages: deque[Message] = deque(maxlen=MESSAGE_HISTORY)
        self._listeners: list[Listener] = []

        self._batch: ProbeBatch | None = None
        self._last_pass: ProbeBatch | None = None
        self._discovery: asyncio.Future | None = None
        self._discovery_cancelled = False
        self._pending_deletion: tuple[str, ...] = ()
        self._pending_import: tuple[DiscoveredCluster, ...] = ()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def document(self) -> KubeConfigDocument:
        """A copy of the live document. Mutations must go through intents."""
        return self._doc.copy()

    @property
    def message(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def pending_deletion(self) -> tuple[str, ...]:
        return self._pending_deletion

    @property
    def pending_import(self) -> tuple[DiscoveredCluster, ...]:
        return self._pending_import

    def visible_entries(self) -> list[IndexEntry]:
        return self.index.search(self._query)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            generation=self._generation,
            query=self._query,
            current_context=self._doc.current_context,
            entries=tuple(self.visible_entries()),
            pending_deletion=self._pending_deletion,
            pending_import=self._pending_import,
            message=self.message,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for every transition. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _home(self) -> State:
        return State.SEARCHING if self._query else State.BROWSING

    def _require(self, intent: str, *states: State) -> None:
        if self._state not in states:
            raise InvalidTransitionError(intent, self._state)

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Session listener failed")

    def _notify(self, level: Level, text: str) -> Message:
        message = Message(level, text)
        self._messages.append(message)
        log = logger.error if level is Level.ERROR else logger.info
        log("%s", text)
        return message

    def _transition(self, state: State, message: Message | None = None) -> None:
        previous, self._state = self._state, state
        self._emit(SessionEvent(state, previous, self._generation, message))

    def _persist(self, mutate: Callable[[KubeConfigDocument], Any], describe: Callable[[Any], str]) -> Any:
        """Apply ``mutate`` to a copy, save it, then make it live."""
        self._transition(State.PERSISTING)
        working = self._doc.copy()
        try:
            result = mutate(working)
            self.store.save(working)
        except KubeconfigError as e:
            self._doc = self._saved.copy()
            self.index.refresh(self._doc)
            self._transition(self._home(), self._notify(Level.ERROR, str(e)))
            raise
        except BaseException:
            self._doc = self._saved.copy()
            self.index.refresh(self._doc)
            self._transition(self._home())
            raise
        self._doc = working
        self._saved = working.copy()
        self._generation += 1
        self.index.refresh(self._doc)
        self._transition(self._home(), self._notify(Level.SUCCESS, describe(result)))
        return result

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str) -> list[IndexEntry]:
        self._require("search", *IDLE)
        self._query = query.strip()
        if self._home() is not self._state:
            self._transition(self._home())
        return self.visible_entries()

    def clear_search(self) -> list[IndexEntry]:
        return self.search("")

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe(self, names: Iterable[str] | None = None, *, timeout: float | None = None) -> dict[str, HealthRecord]:
        """Probe ``names`` (all contexts when None), updating the index as results arrive."""
        self._require("probe", *IDLE)
        batch = self.prober.probe(
            self._doc,
            names,
            timeout=timeout or self.settings.probe_timeout,
            max_concurrency=self.settings.max_concurrency,
            previous=self.index.health,
        )
        self._batch = batch
        self._transition(State.PROBING)
        try:
            async for record in batch:
                self.index.update_health([record])
                self._emit(SessionEvent(self._state, self._state, self._generation, health=(record,)))
        finally:
            self._batch = None
            self._last_pass = batch
            total = len(batch.targets)
            if batch.completed:
                message = self._notify(Level.INFO, f"Probed {total} context(s)")
            else:
                message = self._notify(Level.INFO, f"Probe cancelled after {len(batch.results)} of {total} context(s)")
            self._transition(self._home(), message)
        return dict(batch.results)

    def sweep(self, threshold: int = 1, *, include_auth_failed: bool = False) -> SweepPlan:
        """Propose deleting stale contexts from the last completed probe pass."""
        self._require("sweep", *IDLE)
        if self._last_pass is None:
            raise SessionError("No probe pass to sweep; run a probe first")
        plan = self._last_pass.sweep(threshold)
        live = set(self._doc.names("contexts"))
        names = [n for n in plan.stale if n in live]
        if include_auth_failed:
            names.extend(n for n in plan.auth_failed if n in live)
        if names:
            self.request_delete(names)
        else:
            self._notify(Level.INFO, "No stale contexts found")
        return plan

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def request_delete(self, names: Iterable[str]) -> tuple[str, ...]:
        self._require("delete", *IDLE)
        selected = tuple(sorted(set(names)))
        if not selected:
            raise NothingPendingError("No contexts selected for deletion")
        for name in selected:
            if self._doc.context(name) is None:
                raise ContextNotFoundError(name)
        self._pending_deletion = selected
        self._transition(State.CONFIRMING_DELETION)
        return selected

    def _delete(self, names: Sequence[str]) -> Callable[[KubeConfigDocument], dict[str, list[str]]]:
        prune = self.settings.prune_orphans

        def mutate(doc: KubeConfigDocument) -> dict[str, list[str]]:
            removed = {"contexts": doc.delete_contexts(names), "clusters": [], "users": []}
            if prune:
                removed["clusters"], removed["users"] = doc.prune_orphans()
            return removed

        return mutate

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(
        self,
        providers: Iterable[Provider | str] | None = None,
        account_context: AccountContext | None = None,
    ) -> list[DiscoveredCluster]:
        """List clusters from each provider and stage the new ones for import."""
        self._require("discover", *IDLE)
        if providers is None:
            selected = await self._configured_providers()
        else:
            selected = [Provider.parse(p) for p in providers]
        unknown = [p for p in selected if p not in self.discoverers]
        if unknown:
            raise SessionError(f"No discoverer for provider(s): {', '.join(p.value for p in unknown)}")

        self._transition(State.DISCOVERING)
        self._discovery_cancelled = False
        self._discovery = asyncio.ensure_future(asyncio.gather(
            *(self.discoverers[p].list_clusters(account_context) for p in selected),
            return_exceptions=True,
        ))
        try:
            results = await self._discovery
        except asyncio.CancelledError:
            if not self._discovery_cancelled:
                self._transition(self._home())
                raise
            self._transition(self._home(), self._notify(Level.INFO, "Discovery cancelled"))
            return []
        finally:
            self._discovery = None

        found: list[DiscoveredCluster] = []
        for provider, result in zip(selected, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    self._transition(self._home())
                    raise result
                logger.warning("%s discovery failed: %s", provider.value, result)
                self._notify(Level.ERROR, f"{provider.value}: {result}")
            else:
                found.extend(result)

        new = self.merger.pending(self._doc, found)
        if not new:
            self._transition(self._home(), self._notify(
                Level.INFO, f"No new clusters found ({len(found)} already present)"
            ))
            return []
        self._pending_import = tuple(new)
        self._transition(State.CONFIRMING_IMPORT, self._notify(
            Level.INFO, f"Found {len(new)} new cluster(s)"
        ))
        return new

    async def _configured_providers(self) -> list[Provider]:
        providers = list(self.discoverers)
        checks = await asyncio.gather(*(self.discoverers[p].is_configured() for p in providers))
        return [p for p, ok in zip(providers, checks) if ok]

    def _import(self, clusters: Sequence[DiscoveredCluster]) -> Callable[[KubeConfigDocument], MergeResult]:
        def mutate(doc: KubeConfigDocument) -> MergeResult:
            return self.merger.merge(doc, clusters, in_place=True)

        return mutate

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def confirm(self, selection: Iterable[str] | None = None) -> Any:
        """Apply the staged deletion or import, optionally narrowed to ``selection``.

        Selections name contexts for deletions and base names
        (``gke-proj1-analytics``) for imports.
        """
        self._require("confirm", *CONFIRMING)
        chosen = None if selection is None else set(selection)

        if self._state is State.CONFIRMING_DELETION:
            names = [n for n in self._pending_deletion if chosen is None or n in chosen]
            if not names:
                raise NothingPendingError("Selection matches none of the pending deletions")
            self._pending_deletion = ()
            return self._persist(self._delete(names), _describe_deletion)

        clusters = [c for c in self._pending_import if chosen is None or c.base_name in chosen]
        if not clusters:
            raise NothingPendingError("Selection matches none of the pending imports")
        self._pending_import = ()
        return self._persist(self._import(clusters), _describe_merge)

    def cancel(self) -> None:
        """Abort the current probe or discovery, or discard staged changes."""
        if self._state is State.PROBING and self._batch is not None:
            self._batch.cancel()
            return
        if self._state is State.DISCOVERING and self._discovery is not None:
            self._discovery_cancelled = True
            self._discovery.cancel()
            return
        self._require("cancel", *CONFIRMING)
        self._pending_deletion = ()
        self._pending_import = ()
        self._transition(self._home(), self._notify(Level.INFO, "Cancelled"))

    # ------------------------------------------------------------------
    # Direct mutations
    # ------------------------------------------------------------------

    def switch(self, name: str) -> str:
        self._require("switch context", *IDLE)
        if self._doc.context(name) is None:
            raise ContextNotFoundError(name)

        def mutate(doc: KubeConfigDocument) -> str:
            doc.current_context = name
            return name

        return self._persist(mutate, lambda n: f"Switched to context {n}")

    def rename(self, old: str, new: str) -> str:
        self._require("rename context", *IDLE)

        def mutate(doc: KubeConfigDocument) -> str:
            doc.rename_context(old, new)
            return new

        record = self.index.health.get(old)
        result = self._persist(mutate, lambda n: f"Renamed context {old} to {n}")
        if record is not None and old != new:
            self.index.update_health([replace(record, context=new)])
        return result

    def create_context(self, name: str, cluster: str, user: str, namespace: str | None = None) -> str:
        self._require("create context", *IDLE)

        def mutate(doc: KubeConfigDocument) -> str:
            doc.add_context(Context(name=name, cluster=cluster, user=user, namespace=namespace))
            return name

        return self._persist(mutate, lambda n: f"Created context {n}")

    def import_kubeconfig(self, path: str | Path) -> MergeResult:
        """Merge every context of another kubeconfig file into this one."""
        self._require("import", *IDLE)
        other = ConfigStore(path, strict=False).load()
        preview = self.merger.merge_kubeconfig(self._doc, other)
        if not preview.changed:
            self._notify(Level.INFO, f"Nothing new to import from {path}")
            return preview

        def mutate(doc: KubeConfigDocument) -> MergeResult:
            return self.merger.merge_kubeconfig(doc, other, in_place=True)

        return self._persist(mutate, _describe_merge)

    def refresh(self) -> int:
        """Re-read the document from disk, picking up external edits."""
        self._require("refresh", *IDLE)
        try:
            doc = self.store.load()
        except KubeconfigError as e:
            self._notify(Level.ERROR, str(e))
            raise
        self._doc = doc
        self._saved = doc.copy()
        self._generation += 1
        self.index.refresh(self._doc)
        self._last_pass = None
        self._transition(self._state, self._notify(Level.INFO, f"Reloaded {len(self.index)} context(s)"))
        return len(self.index)


def _describe_deletion(removed: dict[str, list[str]]) -> str:
    text = f"Deleted {len(removed['contexts'])} context(s): {', '.join(removed['contexts'])}"
    if removed["clusters"] or removed["users"]:
        text += f" (pruned {len(removed['clusters'])} cluster(s), {len(removed['users'])} user(s))"
    return text


def _describe_merge(result: MergeResult) -> str:
    added = ", ".join(o.context for o in result.added) or "none"
    return f"Imported {len(result.added)} context(s), reused {len(result.reused)}: {added}"
