"""
Reachability tools.

Tools:
  ktx_probe   probe contexts concurrently (GET <server>/api) and record health
  ktx_sweep   stage contexts that were unreachable in the last completed pass
"""

from __future__ import annotations

from collections import Counter

from mcp.types import TextContent, Tool, ToolAnnotations

from ktx.formatters import _err, _text, bullet_list, health_line, section
from ktx.prober import HealthStatus
from ktx.runtime import EXPECTED_ERRORS, get_session


HEALTH_TOOLS: list[Tool] = [
    Tool(
        name="ktx_probe",
        description=(
            "Probe contexts for reachability and credential validity. Each probe resolves "
            "the context's cluster and user, obtains credentials (running exec plugins such "
            "as gke-gcloud-auth-plugin or aws eks get-token) and calls the API server. "
            "Results: reachable, unreachable, auth_failed, unknown. Omit `names` to probe all."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "names": {"type": "array", "items": {"type": "string"}},
                "timeout": {
                    "type": "number",
                    "exclusiveMinimum": 0,
                    "description": "Per-probe timeout in seconds (default KTX_PROBE_TIMEOUT).",
                },
            },
        },
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=True),
    ),
]

HEALTH_WRITE_TOOLS: list[Tool] = [
    Tool(
        name="ktx_sweep",
        description=(
            "Stage stale contexts for deletion from the last completed probe pass. Only "
            "`unreachable` contexts are stale; auth failures are listed but only staged with "
            "include_auth_failed=true. Confirm with ktx_confirm."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "threshold": {
                    "type": "integer",
                    "minimum": 1,
                    "default": 1,
                    "description": "Consecutive unreachable passes required.",
                },
                "include_auth_failed": {"type": "boolean", "default": False},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=False),
    ),
]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_probe(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        records = await session.probe(args.get("names"), timeout=args.get("timeout"))
    except EXPECTED_ERRORS as e:
        return _err(str(e))

    counts = Counter(r.status for r in records.values())
    summary = ", ".join(f"{counts[s]} {s.value}" for s in HealthStatus if counts[s]) or "nothing probed"
    lines = [health_line(records[name]) for name in sorted(records)]
    body = section(f"Probe results ({summary})", "\n".join(lines) or "No results.")
    if counts[HealthStatus.UNREACHABLE]:
        body += "\n\nUse ktx_sweep to stage unreachable contexts for removal."
    return _text(body)


async def handle_sweep(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        plan = session.sweep(
            int(args.get("threshold", 1)),
            include_auth_failed=bool(args.get("include_auth_failed", False)),
        )
    except EXPECTED_ERRORS as e:
        return _err(str(e))

    parts = [section("Stale (unreachable)", bullet_list(plan.stale) or "  none")]
    if plan.auth_failed:
        parts.append(section("Authentication failed (not stale)", bullet_list(plan.auth_failed)))
    if session.pending_deletion:
        parts.append(
            section("Pending deletion", bullet_list(session.pending_deletion))
            + "\n\nCall ktx_confirm to delete, or ktx_cancel to keep them."
        )
    return _text("\n\n".join(parts))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

HEALTH_HANDLERS = {
    "ktx_probe": handle_probe,
}

HEALTH_WRITE_HANDLERS = {
    "ktx_sweep": handle_sweep,
}
