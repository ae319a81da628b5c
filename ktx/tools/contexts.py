"""
Context browsing and editing tools.

Tools:
  ktx_list_contexts      list / fuzzy-search contexts with last known health
  ktx_session_state      current session state, pending changes, last message
  ktx_switch_context     set current-context (persists)
  ktx_rename_context     rename a context (persists)
  ktx_delete_contexts    stage contexts for deletion (needs ktx_confirm)
  ktx_confirm            apply the staged deletion or import
  ktx_cancel             abort a probe/discovery or discard staged changes
  ktx_refresh            re-read the kubeconfig from disk
"""

from __future__ import annotations

from mcp.types import TextContent, Tool, ToolAnnotations

from ktx.formatters import (
    _err,
    _text,
    bullet_list,
    entries_table,
    format_message,
    section,
    snapshot_summary,
)
from ktx.merger import MergeResult
from ktx.runtime import EXPECTED_ERRORS, get_session
from ktx.session import State


CONTEXT_TOOLS: list[Tool] = [
    Tool(
        name="ktx_list_contexts",
        description=(
            "List kubeconfig contexts with endpoint, auth kind, namespace and last known "
            "health. Pass `query` to fuzzy-search context names and cluster endpoints "
            "(substring matches rank above subsequence matches)."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Case-insensitive fuzzy filter. Empty clears the filter."},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False),
    ),
    Tool(
        name="ktx_session_state",
        description="Show the session state, current context, pending deletion/import and the latest message.",
        inputSchema={"type": "object", "properties": {}},
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False),
    ),
    Tool(
        name="ktx_refresh",
        description="Re-read the kubeconfig file from disk to pick up edits made by other tools.",
        inputSchema={"type": "object", "properties": {}},
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=False),
    ),
    Tool(
        name="ktx_cancel",
        description=(
            "Abort a running probe or discovery, or discard a staged deletion/import. "
            "Never writes the kubeconfig."
        ),
        inputSchema={"type": "object", "properties": {}},
        annotations=ToolAnnotations(readOnlyHint=True, idempotentHint=True, openWorldHint=False),
    ),
]

CONTEXT_WRITE_TOOLS: list[Tool] = [
    Tool(
        name="ktx_switch_context",
        description="Set the kubeconfig current-context. The file is saved atomically (backup taken on the first write).",
        inputSchema={
            "type": "object",
            "required": ["name"],
            "properties": {"name": {"type": "string", "description": "Context to make current."}},
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=True, openWorldHint=False),
    ),
    Tool(
        name="ktx_rename_context",
        description="Rename a context. current-context follows the rename.",
        inputSchema={
            "type": "object",
            "required": ["old_name", "new_name"],
            "properties": {
                "old_name": {"type": "string"},
                "new_name": {"type": "string"},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=False),
    ),
    Tool(
        name="ktx_delete_contexts",
        description=(
            "Stage contexts for deletion. Nothing is written until ktx_confirm is called; "
            "ktx_cancel discards the selection."
        ),
        inputSchema={
            "type": "object",
            "required": ["names"],
            "properties": {
                "names": {"type": "array", "items": {"type": "string"}, "minItems": 1},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=False),
    ),
    Tool(
        name="ktx_confirm",
        description=(
            "Apply the staged deletion or import and save the kubeconfig. `selection` narrows "
            "it: context names for deletions, proposed names (e.g. gke-proj1-analytics) for imports."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "selection": {"type": "array", "items": {"type": "string"}},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True, openWorldHint=False),
    ),
]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_list_contexts(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        query = args.get("query")
        if query is not None and session.state in (State.BROWSING, State.SEARCHING):
            entries = session.search(query)
        else:
            entries = session.index.search(query or "")
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    title = f"Contexts matching '{query}'" if query else "Contexts"
    return _text(section(f"{title} ({len(entries)})", entries_table(entries)))


async def handle_session_state(args: dict) -> list[TextContent]:
    try:
        snap = get_session().snapshot()
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    return _text(snapshot_summary(snap))


async def handle_refresh(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        count = session.refresh()
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    return _text(f"Reloaded {session.store.path}: {count} context(s).")


async def handle_switch_context(args: dict) -> list[TextContent]:
    try:
        name = get_session().switch(args["name"])
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    return _text(f"Switched to context \"{name}\".")


async def handle_rename_context(args: dict) -> list[TextContent]:
    old, new = args["old_name"], args["new_name"]
    try:
        get_session().rename(old, new)
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    return _text(f"Renamed context \"{old}\" to \"{new}\".")


async def handle_delete_contexts(args: dict) -> list[TextContent]:
    try:
        staged = get_session().request_delete(args["names"])
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    return _text(
        section("Pending deletion", bullet_list(staged))
        + "\n\nCall ktx_confirm to delete these contexts, or ktx_cancel to keep them."
    )


async def handle_confirm(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        result = session.confirm(args.get("selection"))
    except EXPECTED_ERRORS as e:
        return _err(str(e))

    if isinstance(result, MergeResult):
        lines = [f"{o.context}  (added)" for o in result.added]
        lines += [f"{o.context}  (already present)" for o in result.reused]
        body = section("Imported", bullet_list(lines))
    else:
        body = section("Deleted", bullet_list(result["contexts"]))
        pruned = result["clusters"] + result["users"]
        if pruned:
            body += "\n\n" + section("Pruned orphans", bullet_list(pruned))
    backup = session.store.backup_path
    if backup:
        body += f"\n\nBackup of the original file: {backup}"
    return _text(body)


async def handle_cancel(args: dict) -> list[TextContent]:
    try:
        session = get_session()
        running = session.state in (State.PROBING, State.DISCOVERING)
        session.cancel()
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    if running:
        return _text("Cancellation requested; results received so far are kept.")
    return _text(format_message(session.message))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

CONTEXT_HANDLERS = {
    "ktx_list_contexts": handle_list_contexts,
    "ktx_session_state": handle_session_state,
    "ktx_refresh": handle_refresh,
    "ktx_cancel": handle_cancel,
}

CONTEXT_WRITE_HANDLERS = {
    "ktx_switch_context": handle_switch_context,
    "ktx_rename_context": handle_rename_context,
    "ktx_delete_contexts": handle_delete_contexts,
    "ktx_confirm": handle_confirm,
}
