"""
Cloud discovery and import tools.

Tools:
  ktx_list_accounts        GCP projects / AWS profiles / Azure subscriptions visible to the CLIs
  ktx_discover             list GKE / EKS / AKS clusters and stage new ones for import
  ktx_import_kubeconfig    merge another kubeconfig file into this one
"""

from __future__ import annotations

from mcp.types import TextContent, Tool, ToolAnnotations

from ktx.discovery.base import AccountContext, Provider
from ktx.formatters import _err, _text, bullet_list, format_message, section
from ktx.runtime import EXPECTED_ERRORS, get_session
from ktx.session import Level, State

_PROVIDERS = [p.value for p in Provider]


DISCOVERY_TOOLS: list[Tool] = [
    Tool(
        name="ktx_list_accounts",
        description="List the accounts a provider CLI can see: GCP projects, AWS profiles or Azure subscriptions.",
        inputSchema={
            "type": "object",
            "required": ["provider"],
            "properties": {"provider": {"type": "string", "enum": _PROVIDERS}},
        },
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=True),
    ),
    Tool(
        name="ktx_discover",
        description=(
            "Discover managed clusters with the operator's own gcloud / aws / az CLIs "
            "(read-only calls) and stage the ones missing from the kubeconfig for import. "
            "Omit `provider` to scan every signed-in provider. Confirm with ktx_confirm."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "provider": {"type": "string", "enum": _PROVIDERS},
                "account": {
                    "type": "string",
                    "description": "GCP project id, AWS profile or Azure subscription id. Omit to scan all.",
                },
                "region": {"type": "string", "description": "Restrict to one region / location."},
            },
        },
        annotations=ToolAnnotations(readOnlyHint=True, openWorldHint=True),
    ),
]

DISCOVERY_WRITE_TOOLS: list[Tool] = [
    Tool(
        name="ktx_import_kubeconfig",
        description=(
            "Merge every context of another kubeconfig file into this one. Equivalent "
            "entries are reused; name collisions get a -2, -3, ... suffix."
        ),
        inputSchema={
            "type": "object",
            "required": ["path"],
            "properties": {"path": {"type": "string", "description": "Path of the kubeconfig to import."}},
        },
        annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=True, openWorldHint=False),
    ),
]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_list_accounts(args: dict) -> list[TextContent]:
    try:
        provider = Provider.parse(args["provider"])
        discoverer = get_session().discoverers.get(provider)
        if discoverer is None:
            return _err(f"No discoverer configured for {provider.value}")
        accounts = await discoverer.list_accounts()
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    if not accounts:
        return _text(f"No {provider.value} accounts found.")
    return _text(section(f"{provider.value} accounts ({len(accounts)})", bullet_list(a.label for a in accounts)))


async def handle_discover(args: dict) -> list[TextContent]:
    providers = [args["provider"]] if args.get("provider") else None
    account_context = AccountContext(account=args.get("account"), region=args.get("region"))
    try:
        session = get_session()
        before = len(session.messages)
        found = await session.discover(providers, account_context)
    except EXPECTED_ERRORS as e:
        return _err(str(e))

    errors = [m for m in session.messages[before:] if m.level is Level.ERROR]
    parts = []
    if found:
        parts.append(section(
            f"New clusters ({len(found)})",
            bullet_list(f"{c.base_name}  {c.endpoint}  [{c.account} / {c.region}]" for c in found),
        ))
        parts.append("Call ktx_confirm (optionally with `selection`) to import, or ktx_cancel.")
    else:
        parts.append(format_message(session.message))
    if errors:
        parts.append(section("Provider errors", bullet_list(m.text for m in errors)))
    if not found and errors and session.state is not State.CONFIRMING_IMPORT:
        return _err("\n\n".join(parts))
    return _text("\n\n".join(parts))


async def handle_import_kubeconfig(args: dict) -> list[TextContent]:
    try:
        result = get_session().import_kubeconfig(args["path"])
    except EXPECTED_ERRORS as e:
        return _err(str(e))
    lines = [f"{o.context}  (added)" for o in result.added]
    lines += [f"{o.context}  (already present)" for o in result.reused]
    lines += [f"{name}  (skipped: unresolved cluster or user)" for name in result.skipped]
    return _text(section(f"Import from {args['path']}", bullet_list(lines) or "  nothing to import"))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

DISCOVERY_HANDLERS = {
    "ktx_list_accounts": handle_list_accounts,
    "ktx_discover": handle_discover,
}

DISCOVERY_WRITE_HANDLERS = {
    "ktx_import_kubeconfig": handle_import_kubeconfig,
}
