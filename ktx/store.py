"""
ConfigStore: the only component that touches the kubeconfig file on disk.

  load()      parse with ruamel.yaml in round-trip mode so comments, quoting,
              key order and unknown keys survive a load/save cycle
  save()      validate, back up once per process, then write a temp file in the
              same directory, fsync it and atomically rename it over the target
  validate()  uniqueness + reference checks (see ktx.kubeconfig.validate)
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import stat
import tempfile
from datetime import datetime
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError
from ruamel.yaml.util import load_yaml_guess_indent

from ktx.kubeconfig import KubeConfigDocument, KubeconfigError, validate as validate_document

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".ktx-backup"
_DEFAULT_MODE = 0o600


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigNotFoundError(KubeconfigError):
    """The kubeconfig path does not exist."""


class ConfigParseError(KubeconfigError):
    """The kubeconfig file is not a YAML mapping."""


class ConfigPermissionError(KubeconfigError):
    """The kubeconfig file cannot be read."""


class ConfigWriteError(KubeconfigError):
    """Persisting failed; the original file was left untouched."""


# ---------------------------------------------------------------------------
# YAML handling
# ---------------------------------------------------------------------------

def _make_yaml(indent: int = 2, block_seq_indent: int = 0) -> YAML:
    """Emitter for a guessed layout.

    ``indent`` is where a sequence item's content starts relative to its
    parent key and ``block_seq_indent`` is where its dash sits, as returned
    by ``load_yaml_guess_indent``. Nested mappings step by the difference.
    """
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    # Long base64 blobs (certificate-authority-data) must never be folded.
    yaml.width = 1 << 20
    mapping = indent - block_seq_indent if 0 < block_seq_indent < indent else indent
    yaml.indent(mapping=mapping, sequence=indent, offset=block_seq_indent)
    return yaml


def parse_document(text: str, *, source: str = "<string>") -> KubeConfigDocument:
    """Parse kubeconfig text, keeping the layout it was written with."""
    if not text.strip():
        return KubeConfigDocument.empty()
    try:
        _, indent, block_seq_indent = load_yaml_guess_indent(text)
        raw = _make_yaml().load(text)
    except YAMLError as e:
        raise ConfigParseError(f"{source}: invalid YAML: {e}") from e
    if raw is None:
        return KubeConfigDocument.empty()
    if not isinstance(raw, dict):
        raise ConfigParseError(f"{source}: kubeconfig root must be a mapping, got {type(raw).__name__}")
    if indent is None or block_seq_indent is None:
        indent, block_seq_indent = 2, 0
    return KubeConfigDocument(raw, indent=indent, block_seq_indent=block_seq_indent)


def dump_document(doc: KubeConfigDocument) -> str:
    stream = io.StringIO()
    _make_yaml(doc.indent, doc.block_seq_indent).dump(doc.raw, stream)
    return stream.getvalue()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConfigStore:
    """Loads and atomically persists one kubeconfig path."""

    def __init__(self, path: str | os.PathLike, *, strict: bool = True):
        self.path = Path(path).expanduser()
        self.strict = strict
        self.backup_path: Path | None = None

    def load(self, path: str | os.PathLike | None = None) -> KubeConfigDocument:
        target = Path(path).expanduser() if path else self.path
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"Kubeconfig not found: {target}") from e
        except PermissionError as e:
            raise ConfigPermissionError(f"No read access to {target}") from e
        except UnicodeDecodeError as e:
            raise ConfigParseError(f"{target}: not valid UTF-8") from e
        except OSError as e:
            raise ConfigParseError(f"{target}: {e}") from e

        doc = parse_document(text, source=str(target))
        validate_document(doc, check_references=self.strict)
        logger.debug("Loaded %s: %d contexts", target, len(doc.contexts))
        return doc

    @staticmethod
    def validate(doc: KubeConfigDocument) -> None:
        validate_document(doc)

    def save(self, doc: KubeConfigDocument, path: str | os.PathLike | None = None) -> None:
        target = Path(path).expanduser() if path else self.path
        validate_document(doc)
        try:
            content = dump_document(doc)
        except YAMLError as e:
            raise ConfigWriteError(f"Unable to serialise kubeconfig: {e}") from e

        # Write through symlinks so a linked kubeconfig keeps its link.
        target = target.resolve()
        if self.backup_path is None and target.exists():
            self.backup_path = self._backup(target)
        self._atomic_write(target, content)
        logger.info("Saved %s", target)

    # -- internals ----------------------------------------------------------

    def _backup(self, target: Path) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup = target.with_name(f"{target.name}{BACKUP_SUFFIX}-{stamp}")
        counter = 1
        while backup.exists():
            backup = target.with_name(f"{target.name}{BACKUP_SUFFIX}-{stamp}-{counter}")
            counter += 1
        try:
            shutil.copy2(target, backup)
        except OSError as e:
            raise ConfigWriteError(f"Backup of {target} failed: {e}") from e
        logger.info("Backed up %s to %s", target, backup)
        return backup

    def _atomic_write(self, target: Path, content: str) -> None:
        directory = target.parent
        try:
            mode = stat.S_IMODE(target.stat().st_mode)
        except FileNotFoundError:
            mode = _DEFAULT_MODE
        except OSError as e:
            raise ConfigWriteError(f"Cannot stat {target}: {e}") from e

        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{target.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, target)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise ConfigWriteError(f"Atomic write of {target} failed: {e}") from e
        self._fsync_dir(directory)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)
