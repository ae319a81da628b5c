"""Shared output formatting helpers."""

from __future__ import annotations

from typing import Any, Iterable

from mcp.types import TextContent

from ktx.index import IndexEntry
from ktx.prober import HealthRecord, HealthStatus
from ktx.session import Level, Message, SessionSnapshot


# ---------------------------------------------------------------------------
# Shared error helper
# ---------------------------------------------------------------------------

class ToolError(list):
    """Sentinel list subclass returned by tool handlers to indicate an error.

    Wraps a ``list[TextContent]`` so existing handler return-type contracts
    are preserved while ``server.py`` can detect errors via ``isinstance()``.
    """


def _err(msg: str) -> list[TextContent]:
    """Return an error response that ``server.py`` will mark with ``isError=True``."""
    return ToolError([TextContent(type="text", text=f"Error: {msg}")])


def _text(body: str) -> list[TextContent]:
    return [TextContent(type="text", text=body)]


def section(title: str, body: str) -> str:
    """Format a titled section."""
    bar = "─" * len(title)
    return f"{title}\n{bar}\n{body}"


def bullet_list(items: Iterable[str]) -> str:
    return "\n".join(f"  • {item}" for item in items)


def kv_table(pairs: list[tuple[str, Any]], indent: int = 0) -> str:
    if not pairs:
        return ""
    max_key = max(len(str(k)) for k, _ in pairs)
    pad = " " * indent
    lines = [f"{pad}{str(k).ljust(max_key)}  {v}" for k, v in pairs]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Domain renderers
# ---------------------------------------------------------------------------

def status_icon(status: HealthStatus | str) -> str:
    return {
        "reachable": "🟢",
        "unreachable": "🔴",
        "auth_failed": "🟡",
    }.get(HealthStatus(status).value, "⚪")


def message_icon(level: Level) -> str:
    return {Level.ERROR: "✗", Level.SUCCESS: "✓"}.get(level, "ℹ")


def format_message(message: Message | None) -> str:
    if message is None:
        return ""
    return f"{message_icon(message.level)} {message.text}"


def health_line(record: HealthRecord) -> str:
    parts = [f"{status_icon(record.status)} {record.context}: {record.status.value}"]
    if record.server_version:
        parts.append(f"({record.server_version})")
    if record.last_error:
        parts.append(f"- {record.last_error}")
    if record.consecutive_failures > 1:
        parts.append(f"[{record.consecutive_failures} passes]")
    return " ".join(parts)


def entries_table(entries: Iterable[IndexEntry]) -> str:
    """Fixed-width table of index entries, current context marked with ``*``."""
    rows = [
        (
            "*" if e.is_current else " ",
            e.context_name,
            e.cluster_endpoint or "-",
            e.user_auth_kind,
            e.namespace or "-",
            f"{status_icon(e.status)} {e.status.value}",
        )
        for e in entries
    ]
    if not rows:
        return "No contexts."
    headers = (" ", "CONTEXT", "ENDPOINT", "AUTH", "NAMESPACE", "HEALTH")
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip()]
    for row in rows:
        lines.append("  ".join(v.ljust(w) for v, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def entry_details(entry: IndexEntry) -> str:
    health = entry.health
    pairs = [
        ("Context", entry.context_name + (" (current)" if entry.is_current else "")),
        ("Cluster", entry.cluster_name),
        ("Endpoint", entry.cluster_endpoint or "-"),
        ("User", entry.user_name),
        ("Auth", entry.user_auth_kind),
        ("Namespace", entry.namespace or "-"),
        ("Health", f"{status_icon(health.status)} {health.status.value}"),
    ]
    if health.last_checked:
        pairs.append(("Last checked", health.last_checked.strftime("%Y-%m-%dT%H:%M:%SZ")))
    if health.server_version:
        pairs.append(("Server version", health.server_version))
    if health.last_error:
        pairs.append(("Last error", health.last_error))
    return section(entry.context_name, kv_table(pairs))


def snapshot_summary(snap: SessionSnapshot) -> str:
    pairs = [
        ("State", snap.state.value),
        ("Generation", snap.generation),
        ("Current context", snap.current_context or "(none)"),
        ("Contexts shown", len(snap.entries)),
    ]
    if snap.query:
        pairs.append(("Filter", snap.query))
    parts = [kv_table(pairs)]
    if snap.pending_deletion:
        parts.append(section("Pending deletion", bullet_list(snap.pending_deletion)))
    if snap.pending_import:
        parts.append(section(
            "Pending import",
            bullet_list(f"{c.base_name}  ({c.endpoint})" for c in snap.pending_import),
        ))
    if snap.message:
        parts.append(format_message(snap.message))
    return "\n\n".join(parts)
