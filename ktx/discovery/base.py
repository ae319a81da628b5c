"""
CloudDiscoverer: one interface over GKE, EKS and AKS.

Each provider shells out to the operator's own CLI (gcloud / aws / az) using
whatever credentials that CLI already has. Discovery is read-only: only
list / describe / get-token style commands are issued.

Failures are classified from the CLI's stderr:

  AuthError         credentials missing or expired; surfaced immediately
  RateLimitedError  throttled; retried with exponential backoff
  ApiError          transient (5xx, timeouts) is retried, anything else is not
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, TypeVar

from ktx.command import CommandError, CommandNotFoundError, run_command, run_json
from ktx.kubeconfig import Cluster, User, sanitize_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
BACKOFF_FACTOR = 2


class Provider(str, Enum):
    GKE = "gke"
    EKS = "eks"
    AKS = "aks"

    @classmethod
    def parse(cls, value: Provider | str) -> Provider:
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise DiscoveryError(f"Unknown provider '{value}'; expected one of {choices}") from None


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DiscoveryError(Exception):
    """Base class for provider discovery failures."""

    def __init__(self, message: str, *, provider: Provider | None = None):
        super().__init__(message)
        self.provider = provider


class AuthError(DiscoveryError):
    """Provider credentials are missing, expired or rejected. Never retried."""


class ApiError(DiscoveryError):
    def __init__(self, message: str, *, provider: Provider | None = None, transient: bool = False):
        super().__init__(message, provider=provider)
        self.transient = transient


class RateLimitedError(ApiError):
    def __init__(self, message: str, *, provider: Provider | None = None):
        super().__init__(message, provider=provider, transient=True)


_AUTH_PATTERNS = re.compile(
    r"not currently have an active account|reauthentication|gcloud auth login|"
    r"unable to locate credentials|expiredtoken|invalidclienttokenid|unrecognizedclient|"
    r"the sso session|token has expired|az login|aadsts|unauthenticated|permission_denied|"
    r"accessdenied|authorizationfailed|invalid_grant",
    re.IGNORECASE,
)
_RATE_LIMIT_PATTERNS = re.compile(
    r"\b429\b|too many requests|throttl|rate exceeded|ratelimit|rate limit|quota exceeded|"
    r"resource_exhausted",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS = re.compile(
    r"\b50[0234]\b|internal error|service unavailable|timed out|timeout|connection reset|"
    r"temporarily unavailable|could not connect|unavailable",
    re.IGNORECASE,
)


def classify(error: CommandError, provider: Provider | None = None) -> DiscoveryError:
    """Map a failed CLI invocation onto the discovery error taxonomy."""
    text = f"{error.stderr}\n{error}"
    if isinstance(error, CommandNotFoundError):
        return AuthError(str(error), provider=provider)
    if _AUTH_PATTERNS.search(text):
        return AuthError(str(error), provider=provider)
    if _RATE_LIMIT_PATTERNS.search(text):
        return RateLimitedError(str(error), provider=provider)
    if _TRANSIENT_PATTERNS.search(text):
        return ApiError(str(error), provider=provider, transient=True)
    return ApiError(str(error), provider=provider)


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AccountContext:
    """Narrows discovery to one account (project / profile / subscription) and region."""

    account: str | None = None
    region: str | None = None


@dataclass(frozen=True)
class Account:
    id: str
    label: str


@dataclass(frozen=True)
class DiscoveredCluster:
    provider: Provider
    account: str
    region: str
    name: str
    endpoint: str
    ca_data: str | None = None
    auth: Mapping[str, Any] = field(default_factory=dict, hash=False)
    scope: tuple[str, ...] = ()

    @property
    def base_name(self) -> str:
        """``<provider>-<scope...>-<cluster>``, safe to type unquoted."""
        parts = [self.provider.value, *self.scope, self.name]
        return "-".join(p for p in (sanitize_name(part) for part in parts) if p)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.provider.value, self.account, self.region, self.name)

    def to_cluster(self, name: str) -> Cluster:
        return Cluster(name=name, server=self.endpoint, certificate_authority_data=self.ca_data)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class CloudDiscoverer(abc.ABC):
    provider: Provider
    program: str

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep

    @abc.abstractmethod
    async def is_configured(self) -> bool:
        """True when the provider CLI is installed and signed in."""

    @abc.abstractmethod
    async def list_accounts(self) -> list[Account]:
        ...

    @abc.abstractmethod
    async def list_clusters(self, account_context: AccountContext | None = None) -> list[DiscoveredCluster]:
        ...

    @abc.abstractmethod
    def build_auth(self, cluster: DiscoveredCluster, name: str) -> User:
        """Construct the User entry that authenticates against ``cluster``."""

    # -- shared plumbing ----------------------------------------------------

    async def _call(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        parse_json: bool = True,
    ) -> Any:
        """Run the provider CLI, retrying transient failures."""
        runner = run_json if parse_json else run_command
        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await runner(self.program, args, env=env, timeout=self.timeout)
            except CommandError as e:
                error = classify(e, self.provider)
            retryable = isinstance(error, ApiError) and error.transient
            if not retryable or attempt == self.max_attempts:
                raise error
            logger.debug(
                "%s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                self.program, args[0] if args else "", attempt, self.max_attempts, delay, error,
            )
            await self._sleep(delay)
            delay *= BACKOFF_FACTOR
        raise AssertionError("unreachable")

    async def _probe_cli(self, args: Sequence[str], *, parse_json: bool = True) -> Any:
        """Best-effort single call used by ``is_configured``."""
        runner = run_json if parse_json else run_command
        try:
            return await runner(self.program, args, timeout=self.timeout)
        except CommandError as e:
            logger.debug("%s is not usable: %s", self.program, e)
            return None

    async def _across(
        self,
        scopes: Iterable[T],
        fetch: Callable[[T], Awaitable[list[DiscoveredCluster]]],
    ) -> list[DiscoveredCluster]:
        """Fetch clusters for every scope concurrently, isolating per-scope failures.

        Raises only when every scope failed, re-raising the first error.
        """
        scopes = list(scopes)
        if not scopes:
            return []
        results = await asyncio.gather(*(fetch(s) for s in scopes), return_exceptions=True)
        clusters: list[DiscoveredCluster] = []
        errors: list[BaseException] = []
        for scope, result in zip(scopes, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("%s discovery failed for %s: %s", self.provider.value, scope, result)
                errors.append(result)
            else:
                clusters.extend(result)
        if errors and len(errors) == len(scopes):
            raise errors[0]
        return sorted(clusters, key=lambda c: c.key)
