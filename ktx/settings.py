"""
Environment-driven configuration.

  KTX_KUBECONFIG           kubeconfig path (else first KUBECONFIG entry, else ~/.kube/config)
  KTX_PROBE_TIMEOUT        per-probe timeout in seconds (default 5)
  KTX_MAX_CONCURRENCY      parallel probes (default 8)
  KTX_COMMAND_TIMEOUT      provider CLI timeout in seconds (default 60)
  KTX_DISCOVERY_ATTEMPTS   attempts per provider call before giving up (default 3)
  KTX_PRUNE_ORPHANS=true   drop unreferenced clusters/users after deleting contexts
  KTX_STRICT_LOAD=false    accept documents with dangling context references on load
  KTX_READ_ONLY=true       only expose non-mutating tools
  KTX_LOG_LEVEL            stdlib logging level name (default WARNING)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_KUBECONFIG = Path("~/.kube/config")
_TRUE = ("1", "true", "yes", "on")


def _flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE


def _number(environ: Mapping[str, str], name: str, default: float, cast=float):
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive, using %s", name, raw, default)
        return default
    return value


def default_kubeconfig_path(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    explicit = environ.get("KTX_KUBECONFIG", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    for entry in environ.get("KUBECONFIG", "").split(os.pathsep):
        if entry.strip():
            return Path(entry.strip()).expanduser()
    return DEFAULT_KUBECONFIG.expanduser()


@dataclass(frozen=True)
class Settings:
    kubeconfig: Path
    probe_timeout: float = 5.0
    max_concurrency: int = 8
    command_timeout: float = 60.0
    discovery_attempts: int = 3
    prune_orphans: bool = False
    strict_load: bool = True
    read_only: bool = False
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        environ = os.environ if environ is None else environ
        return cls(
            kubeconfig=default_kubeconfig_path(environ),
            probe_timeout=_number(environ, "KTX_PROBE_TIMEOUT", 5.0),
            max_concurrency=_number(environ, "KTX_MAX_CONCURRENCY", 8, int),
            command_timeout=_number(environ, "KTX_COMMAND_TIMEOUT", 60.0),
            discovery_attempts=_number(environ, "KTX_DISCOVERY_ATTEMPTS", 3, int),
            prune_orphans=_flag(environ, "KTX_PRUNE_ORPHANS", False),
            strict_load=_flag(environ, "KTX_STRICT_LOAD", True),
            read_only=_flag(environ, "KTX_READ_ONLY", False),
            log_level=environ.get("KTX_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )


def configure_logging(level: str = "WARNING") -> None:
    """Send engine logs to stderr; stdout belongs to the stdio transport."""
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
