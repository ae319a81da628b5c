"""
Kubeconfig document model.

The document wraps the round-trip YAML tree loaded by ``ktx.store`` and
exposes typed views over it:

  Cluster   server endpoint plus TLS / proxy settings
  User      a name plus exactly one ``AuthMethod`` variant
  Context   a (cluster, user, namespace) triple referencing the above by name

Typed values are parsed from the raw tree on access and written back into it
on mutation, so keys this module does not understand are never dropped.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ruamel.yaml.comments import CommentedMap, CommentedSeq


CLUSTERS = "clusters"
USERS = "users"
CONTEXTS = "contexts"
CURRENT_CONTEXT = "current-context"

_COLLECTION_BODY = {CLUSTERS: "cluster", USERS: "user", CONTEXTS: "context"}
_KIND = {CLUSTERS: "cluster", USERS: "user", CONTEXTS: "context"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class KubeconfigError(Exception):
    """Base class for kubeconfig load, validation and persistence failures."""


class ValidationError(KubeconfigError):
    """The document violates a structural invariant."""


class DanglingReferenceError(ValidationError):
    def __init__(self, context: str, kind: str, ref: str):
        self.context = context
        self.kind = kind
        self.ref = ref
        super().__init__(f"Context '{context}' references missing {kind} '{ref}'")


class DuplicateNameError(ValidationError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"Duplicate {kind} name '{name}'")


class ContextNotFoundError(KubeconfigError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Context '{name}' does not exist")


# ---------------------------------------------------------------------------
# Authentication variants
# ---------------------------------------------------------------------------

STATIC_CREDENTIAL = "static"
EXEC_CREDENTIAL = "exec"


@dataclass(frozen=True)
class ClientCertificateAuth:
    kind = "client-certificate"
    capability = STATIC_CREDENTIAL

    certificate_data: str | None = None
    key_data: str | None = None
    certificate_file: str | None = None
    key_file: str | None = None


@dataclass(frozen=True)
class TokenAuth:
    kind = "token"
    capability = STATIC_CREDENTIAL

    token: str | None = None
    token_file: str | None = None


@dataclass(frozen=True)
class BasicAuth:
    kind = "basic"
    capability = STATIC_CREDENTIAL

    username: str
    password: str


@dataclass(frozen=True)
class ExecAuth:
    """Credential plugin invoked at connection time (client.authentication.k8s.io)."""

    kind = "exec"
    capability = EXEC_CREDENTIAL

    command: str
    args: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    api_version: str = "client.authentication.k8s.io/v1beta1"
    install_hint: str | None = None
    provide_cluster_info: bool = False
    interactive_mode: str | None = None


@dataclass(frozen=True)
class AuthProviderAuth:
    """Legacy in-tree auth provider (gcp, azure, oidc). Kept verbatim."""

    kind = "auth-provider"
    capability = EXEC_CREDENTIAL

    name: str
    config: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class NoAuth:
    kind = "none"
    capability = STATIC_CREDENTIAL


AuthMethod = (
    ClientCertificateAuth | TokenAuth | BasicAuth | ExecAuth | AuthProviderAuth | NoAuth
)


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def auth_from_mapping(body: Mapping[str, Any] | None) -> AuthMethod:
    """Parse a kubeconfig ``user:`` stanza into its ``AuthMethod`` variant.

    Precedence when a stanza carries several methods follows client-go:
    exec, client certificate, token, basic, auth-provider.
    """
    body = body or {}
    if body.get("exec"):
        spec = body["exec"]
        env = tuple(
            (str(item.get("name", "")), str(item.get("value", "")))
            for item in (spec.get("env") or [])
        )
        return ExecAuth(
            command=str(spec.get("command", "")),
            args=tuple(str(a) for a in (spec.get("args") or [])),
            env=env,
            api_version=str(spec.get("apiVersion") or ExecAuth.api_version),
            install_hint=_opt_str(spec.get("installHint")),
            provide_cluster_info=bool(spec.get("provideClusterInfo", False)),
            interactive_mode=_opt_str(spec.get("interactiveMode")),
        )
    if body.get("client-certificate-data") or body.get("client-certificate"):
        return ClientCertificateAuth(
            certificate_data=_opt_str(body.get("client-certificate-data")),
            key_data=_opt_str(body.get("client-key-data")),
            certificate_file=_opt_str(body.get("client-certificate")),
            key_file=_opt_str(body.get("client-key")),
        )
    if body.get("token") or body.get("tokenFile"):
        return TokenAuth(token=_opt_str(body.get("token")), token_file=_opt_str(body.get("tokenFile")))
    if body.get("username") is not None and body.get("password") is not None:
        return BasicAuth(username=str(body["username"]), password=str(body["password"]))
    if body.get("auth-provider"):
        provider = body["auth-provider"]
        config = tuple(sorted((str(k), str(v)) for k, v in (provider.get("config") or {}).items()))
        return AuthProviderAuth(name=str(provider.get("name", "")), config=config)
    return NoAuth()


def auth_to_mapping(auth: AuthMethod) -> CommentedMap:
    """Render an ``AuthMethod`` as a kubeconfig ``user:`` stanza."""
    body = CommentedMap()
    if isinstance(auth, ExecAuth):
        spec = CommentedMap()
        spec["apiVersion"] = auth.api_version
        spec["command"] = auth.command
        if auth.args:
            spec["args"] = CommentedSeq(auth.args)
        if auth.env:
            spec["env"] = CommentedSeq(
                CommentedMap([("name", name), ("value", value)]) for name, value in auth.env
            )
        if auth.install_hint:
            spec["installHint"] = auth.install_hint
        if auth.provide_cluster_info:
            spec["provideClusterInfo"] = True
        if auth.interactive_mode:
            spec["interactiveMode"] = auth.interactive_mode
        body["exec"] = spec
    elif isinstance(auth, ClientCertificateAuth):
        for key, value in (
            ("client-certificate-data", auth.certificate_data),
            ("client-key-data", auth.key_data),
            ("client-certificate", auth.certificate_file),
            ("client-key", auth.key_file),
        ):
            if value:
                body[key] = value
    elif isinstance(auth, TokenAuth):
        if auth.token:
            body["token"] = auth.token
        if auth.token_file:
            body["tokenFile"] = auth.token_file
    elif isinstance(auth, BasicAuth):
        body["username"] = auth.username
        body["password"] = auth.password
    elif isinstance(auth, AuthProviderAuth):
        provider = CommentedMap()
        provider["name"] = auth.name
        if auth.config:
            provider["config"] = CommentedMap(auth.config)
        body["auth-provider"] = provider
    return body


# ---------------------------------------------------------------------------
# Named entities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Cluster:
    name: str
    server: str
    certificate_authority_data: str | None = None
    certificate_authority: str | None = None
    insecure_skip_tls_verify: bool = False
    proxy_url: str | None = None
    tls_server_name: str | None = None

    def equivalent(self, other: Cluster) -> bool:
        """Same endpoint and trust settings, regardless of name."""
        return (
            self.server.rstrip("/") == other.server.rstrip("/")
            and self.certificate_authority_data == other.certificate_authority_data
            and self.certificate_authority == other.certificate_authority
            and self.insecure_skip_tls_verify == other.insecure_skip_tls_verify
            and self.proxy_url == other.proxy_url
        )

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> Cluster:
        body = entry.get("cluster") or {}
        return cls(
            name=str(entry.get("name", "")),
            server=str(body.get("server", "")),
            certificate_authority_data=_opt_str(body.get("certificate-authority-data")),
            certificate_authority=_opt_str(body.get("certificate-authority")),
            insecure_skip_tls_verify=bool(body.get("insecure-skip-tls-verify", False)),
            proxy_url=_opt_str(body.get("proxy-url")),
            tls_server_name=_opt_str(body.get("tls-server-name")),
        )

    def to_entry(self) -> CommentedMap:
        body = CommentedMap()
        if self.certificate_authority_data:
            body["certificate-authority-data"] = self.certificate_authority_data
        if self.certificate_authority:
            body["certificate-authority"] = self.certificate_authority
        if self.insecure_skip_tls_verify:
            body["insecure-skip-tls-verify"] = True
        if self.proxy_url:
            body["proxy-url"] = self.proxy_url
        if self.tls_server_name:
            body["tls-server-name"] = self.tls_server_name
        body["server"] = self.server
        return CommentedMap([("cluster", body), ("name", self.name)])


@dataclass(frozen=True)
class User:
    name: str
    auth: AuthMethod = field(default_factory=NoAuth)

    def equivalent(self, other: User) -> bool:
        return self.auth == other.auth

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> User:
        return cls(name=str(entry.get("name", "")), auth=auth_from_mapping(entry.get("user")))

    def to_entry(self) -> CommentedMap:
        return CommentedMap([("name", self.name), ("user", auth_to_mapping(self.auth))])


@dataclass(frozen=True)
class Context:
    name: str
    cluster: str
    user: str
    namespace: str | None = None

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> Context:
        body = entry.get("context") or {}
        return cls(
            name=str(entry.get("name", "")),
            cluster=str(body.get("cluster", "")),
            user=str(body.get("user", "")),
            namespace=_opt_str(body.get("namespace")),
        )

    def to_entry(self) -> CommentedMap:
        body = CommentedMap([("cluster", self.cluster), ("user", self.user)])
        if self.namespace:
            body["namespace"] = self.namespace
        return CommentedMap([("context", body), ("name", self.name)])


_ENTITY = {CLUSTERS: Cluster, USERS: User, CONTEXTS: Context}


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class KubeConfigDocument:
    """In-memory kubeconfig. Owns the raw round-trip tree it was loaded from."""

    def __init__(self, raw: CommentedMap | None = None, *, indent: int = 2, block_seq_indent: int = 0):
        self._raw = raw if raw is not None else CommentedMap()
        self.indent = indent
        self.block_seq_indent = block_seq_indent

    @classmethod
    def empty(cls) -> KubeConfigDocument:
        raw = CommentedMap()
        raw["apiVersion"] = "v1"
        raw["kind"] = "Config"
        raw["preferences"] = CommentedMap()
        raw[CLUSTERS] = CommentedSeq()
        raw[USERS] = CommentedSeq()
        raw[CONTEXTS] = CommentedSeq()
        raw[CURRENT_CONTEXT] = ""
        return cls(raw)

    @property
    def raw(self) -> CommentedMap:
        return self._raw

    def copy(self) -> KubeConfigDocument:
        return KubeConfigDocument(
            copy.deepcopy(self._raw), indent=self.indent, block_seq_indent=self.block_seq_indent
        )

    # -- raw access ---------------------------------------------------------

    def _entries(self, key: str) -> list:
        items = self._raw.get(key)
        return items if isinstance(items, list) else []

    def _writable(self, key: str) -> list:
        items = self._raw.get(key)
        if not isinstance(items, list):
            items = CommentedSeq()
            self._raw[key] = items
        return items

    def _find(self, key: str, name: str) -> Mapping[str, Any] | None:
        for entry in self._entries(key):
            if isinstance(entry, Mapping) and entry.get("name") == name:
                return entry
        return None

    def names(self, key: str) -> list[str]:
        return [str(e.get("name", "")) for e in self._entries(key) if isinstance(e, Mapping)]

    # -- typed views --------------------------------------------------------

    @property
    def clusters(self) -> list[Cluster]:
        return [Cluster.from_entry(e) for e in self._entries(CLUSTERS) if isinstance(e, Mapping)]

    @property
    def users(self) -> list[User]:
        return [User.from_entry(e) for e in self._entries(USERS) if isinstance(e, Mapping)]

    @property
    def contexts(self) -> list[Context]:
        return [Context.from_entry(e) for e in self._entries(CONTEXTS) if isinstance(e, Mapping)]

    def cluster(self, name: str) -> Cluster | None:
        entry = self._find(CLUSTERS, name)
        return Cluster.from_entry(entry) if entry is not None else None

    def user(self, name: str) -> User | None:
        entry = self._find(USERS, name)
        return User.from_entry(entry) if entry is not None else None

    def context(self, name: str) -> Context | None:
        entry = self._find(CONTEXTS, name)
        return Context.from_entry(entry) if entry is not None else None

    @property
    def current_context(self) -> str:
        return str(self._raw.get(CURRENT_CONTEXT) or "")

    @current_context.setter
    def current_context(self, name: str) -> None:
        self._raw[CURRENT_CONTEXT] = name

    # -- mutation -----------------------------------------------------------

    def _add(self, key: str, entity: Cluster | User | Context) -> None:
        if self._find(key, entity.name) is not None:
            raise DuplicateNameError(_KIND[key], entity.name)
        self._writable(key).append(entity.to_entry())

    def add_cluster(self, cluster: Cluster) -> None:
        self._add(CLUSTERS, cluster)

    def add_user(self, user: User) -> None:
        self._add(USERS, user)

    def add_context(self, context: Context) -> None:
        self._add(CONTEXTS, context)

    def rename_context(self, old: str, new: str) -> None:
        entry = self._find(CONTEXTS, old)
        if entry is None:
            raise ContextNotFoundError(old)
        if old == new:
            return
        if self._find(CONTEXTS, new) is not None:
            raise DuplicateNameError("context", new)
        entry["name"] = new
        if self.current_context == old:
            self.current_context = new

    def delete_contexts(self, names: Iterable[str]) -> list[str]:
        """Remove contexts by name. Returns the names actually removed."""
        targets = set(names)
        missing = targets.difference(self.names(CONTEXTS))
        if missing:
            raise ContextNotFoundError(sorted(missing)[0])
        entries = self._writable(CONTEXTS)
        removed = []
        for index in reversed(range(len(entries))):
            entry = entries[index]
            if isinstance(entry, Mapping) and entry.get("name") in targets:
                removed.append(str(entry["name"]))
                del entries[index]
        if self.current_context in targets:
            self.current_context = ""
        return sorted(removed)

    def prune_orphans(self) -> tuple[list[str], list[str]]:
        """Drop clusters and users that no context references."""
        contexts = self.contexts
        used = {CLUSTERS: {c.cluster for c in contexts}, USERS: {c.user for c in contexts}}
        removed: dict[str, list[str]] = {CLUSTERS: [], USERS: []}
        for key in (CLUSTERS, USERS):
            if not isinstance(self._raw.get(key), list):
                continue
            entries = self._raw[key]
            for index in reversed(range(len(entries))):
                entry = entries[index]
                if isinstance(entry, Mapping) and entry.get("name") not in used[key]:
                    removed[key].append(str(entry.get("name", "")))
                    del entries[index]
        return sorted(removed[CLUSTERS]), sorted(removed[USERS])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate(doc: KubeConfigDocument, *, check_references: bool = True) -> None:
    """Raise ``ValidationError`` for duplicate names or dangling context references."""
    for key in (CLUSTERS, USERS, CONTEXTS):
        seen: set[str] = set()
        for name in doc.names(key):
            if name in seen:
                raise DuplicateNameError(_KIND[key], name)
            seen.add(name)

    if not check_references:
        return

    clusters = set(doc.names(CLUSTERS))
    users = set(doc.names(USERS))
    for ctx in doc.contexts:
        if ctx.cluster not in clusters:
            raise DanglingReferenceError(ctx.name, "cluster", ctx.cluster)
        if ctx.user not in users:
            raise DanglingReferenceError(ctx.name, "user", ctx.user)


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_name(value: str) -> str:
    """Collapse characters kubectl users would have to quote into dashes."""
    return _UNSAFE_NAME_CHARS.sub("-", value).strip("-")
