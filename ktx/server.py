"""
ktx: kubeconfig context manager over MCP stdio.

Exposes the context-management session as tools across three categories:
  • Contexts   list / search, switch, rename, stage deletion, confirm, refresh
  • Health     concurrent reachability probes and stale-context sweeps
  • Discovery  GKE / EKS / AKS cluster discovery and kubeconfig import

Environment variables: see ``ktx.settings`` (KTX_KUBECONFIG, KTX_READ_ONLY, ...).

Run with:
    python -m ktx.server
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from datetime import datetime, timezone

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Resource,
    ResourceTemplate,
    TextContent,
    Tool,
)

from ktx.formatters import ToolError
from ktx.kubeconfig import KubeconfigError
from ktx.prompts import ALL_PROMPTS, get_prompt
from ktx.resources import RESOURCE_TEMPLATES, STATIC_RESOURCES, read_resource
from ktx.runtime import get_session, get_settings
from ktx.settings import configure_logging
from ktx.tools.contexts import CONTEXT_HANDLERS, CONTEXT_TOOLS, CONTEXT_WRITE_HANDLERS, CONTEXT_WRITE_TOOLS
from ktx.tools.discovery import DISCOVERY_HANDLERS, DISCOVERY_TOOLS, DISCOVERY_WRITE_HANDLERS, DISCOVERY_WRITE_TOOLS
from ktx.tools.health import HEALTH_HANDLERS, HEALTH_TOOLS, HEALTH_WRITE_HANDLERS, HEALTH_WRITE_TOOLS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

server = Server("ktx")

READ_TOOLS = CONTEXT_TOOLS + HEALTH_TOOLS + DISCOVERY_TOOLS
WRITE_TOOLS_LIST = CONTEXT_WRITE_TOOLS + HEALTH_WRITE_TOOLS + DISCOVERY_WRITE_TOOLS
READ_HANDLERS: dict = {**CONTEXT_HANDLERS, **HEALTH_HANDLERS, **DISCOVERY_HANDLERS}
WRITE_HANDLERS: dict = {**CONTEXT_WRITE_HANDLERS, **HEALTH_WRITE_HANDLERS, **DISCOVERY_WRITE_HANDLERS}

WRITE_TOOLS = set(WRITE_HANDLERS)


def registered_tools(read_only: bool) -> tuple[list[Tool], dict]:
    if read_only:
        return list(READ_TOOLS), dict(READ_HANDLERS)
    return READ_TOOLS + WRITE_TOOLS_LIST, {**READ_HANDLERS, **WRITE_HANDLERS}


def _audit(name: str, args: dict) -> None:
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    print(f"[AUDIT] {ts} {name} {args}", file=sys.stderr)


@server.list_tools()
async def list_tools() -> list[Tool]:
    tools, _ = registered_tools(get_settings().read_only)
    return tools


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> CallToolResult:
    args = arguments or {}

    _, handlers = registered_tools(get_settings().read_only)
    handler = handlers.get(name)
    if handler is None:
        return CallToolResult(
            content=[TextContent(type="text", text=f"Unknown tool: {name}")],
            isError=True,
        )

    if name in WRITE_TOOLS:
        _audit(name, args)

    try:
        content = await handler(args)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Tool %s failed", name)
        return CallToolResult(
            content=[TextContent(type="text", text=f"Unexpected error: {exc}")],
            isError=True,
        )
    return CallToolResult(content=list(content), isError=isinstance(content, ToolError))


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@server.list_resources()
async def list_resources() -> list[Resource]:
    return STATIC_RESOURCES


@server.list_resource_templates()
async def list_resource_templates() -> list[ResourceTemplate]:
    return RESOURCE_TEMPLATES


@server.read_resource()
async def handle_read_resource(uri) -> str:
    return await read_resource(uri)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@server.list_prompts()
async def list_prompts() -> list:
    return ALL_PROMPTS


@server.get_prompt()
async def handle_get_prompt(
    name: str, arguments: dict[str, str] | None
) -> GetPromptResult:
    return get_prompt(name, arguments)


# ---------------------------------------------------------------------------
# Startup preflight
# ---------------------------------------------------------------------------

PROVIDER_CLIS = {
    "gcloud": "GKE discovery",
    "gke-gcloud-auth-plugin": "GKE credentials",
    "aws": "EKS discovery and credentials",
    "az": "AKS discovery",
    "kubelogin": "AKS (AAD) credentials",
}


def _preflight() -> None:
    """Load the kubeconfig once and report which provider CLIs are available."""
    settings = get_settings()
    try:
        session = get_session()
    except KubeconfigError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Kubeconfig: {settings.kubeconfig} ({len(session.index)} contexts)", file=sys.stderr)

    for program, purpose in PROVIDER_CLIS.items():
        if not shutil.which(program):
            print(f"WARNING: {program} not found on PATH; {purpose} unavailable.", file=sys.stderr)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    tools, _ = registered_tools(settings.read_only)
    mode = "read-only" if settings.read_only else "full"
    print(
        f"ktx MCP server starting: {len(tools)} tools registered ({mode} mode)",
        file=sys.stderr,
    )
    _preflight()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
