"""
Process-wide session used by the tool server.

The session is built lazily on first use from ``Settings.from_env()`` so that
importing the tool modules never touches the kubeconfig file.
"""

from __future__ import annotations

from ktx.command import CommandError
from ktx.discovery.aks import AKSDiscoverer
from ktx.discovery.base import CloudDiscoverer, DiscoveryError, Provider
from ktx.discovery.eks import EKSDiscoverer
from ktx.discovery.gke import GKEDiscoverer
from ktx.kubeconfig import KubeconfigError
from ktx.prober import HealthProber, ProbeError
from ktx.session import Session, SessionError
from ktx.settings import Settings
from ktx.store import ConfigStore

# Failures a tool handler reports as an error result instead of raising.
EXPECTED_ERRORS = (KubeconfigError, SessionError, ProbeError, DiscoveryError, CommandError)

_DISCOVERERS: dict[Provider, type[CloudDiscoverer]] = {
    Provider.GKE: GKEDiscoverer,
    Provider.EKS: EKSDiscoverer,
    Provider.AKS: AKSDiscoverer,
}

_settings: Settings | None = None
_session: Session | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def make_discoverers(settings: Settings) -> dict[Provider, CloudDiscoverer]:
    return {
        provider: cls(max_attempts=settings.discovery_attempts, timeout=settings.command_timeout)
        for provider, cls in _DISCOVERERS.items()
    }


def build_session(settings: Settings) -> Session:
    store = ConfigStore(settings.kubeconfig, strict=settings.strict_load)
    return Session(
        store,
        settings=settings,
        prober=HealthProber(),
        discoverers=make_discoverers(settings),
    )


def get_session() -> Session:
    global _session
    if _session is None:
        _session = build_session(get_settings())
    return _session


def set_session(session: Session | None, settings: Settings | None = None) -> None:
    """Install (or clear, with None) the process-wide session and settings."""
    global _session, _settings
    _session = session
    if settings is not None or session is None:
        _settings = settings
