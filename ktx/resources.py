"""
MCP Resources: the session's view of the kubeconfig as browsable resources.

Static resources:
  ktx://contexts          table of every context with last known health
  ktx://session           session state, pending changes, latest message

Resource templates (parameterized):
  ktx://contexts/{name}   details for one context
"""

from __future__ import annotations

import re
from urllib.parse import unquote

from mcp.types import Resource, ResourceTemplate

from ktx.formatters import entries_table, entry_details, snapshot_summary
from ktx.runtime import EXPECTED_ERRORS, get_session


STATIC_RESOURCES: list[Resource] = [
    Resource(
        uri="ktx://contexts",
        name="Kubeconfig Contexts",
        description="Every kubeconfig context with endpoint, auth kind, namespace and last known health.",
        mimeType="text/plain",
    ),
    Resource(
        uri="ktx://session",
        name="Session State",
        description="Session state, current context, staged deletion/import and the latest message.",
        mimeType="text/plain",
    ),
]

RESOURCE_TEMPLATES: list[ResourceTemplate] = [
    ResourceTemplate(
        uriTemplate="ktx://contexts/{name}",
        name="Context details",
        description="Cluster, user, namespace and health details for one context.",
        mimeType="text/plain",
    ),
]

_CONTEXT_PATTERN = re.compile(r"^ktx://contexts/(?P<name>.+)$")


async def read_resource(uri: str) -> str:
    """Read a resource by URI and return its content as text."""
    uri_str = str(uri)

    if uri_str == "ktx://contexts":
        return _guarded(lambda s: entries_table(s.index.entries))
    if uri_str == "ktx://session":
        return _guarded(lambda s: snapshot_summary(s.snapshot()))

    match = _CONTEXT_PATTERN.match(uri_str)
    if match:
        name = unquote(match.group("name"))
        return _guarded(lambda s: _read_context(s, name))

    raise ValueError(f"Unknown resource URI: {uri_str}")


def _guarded(render) -> str:
    try:
        return render(get_session())
    except EXPECTED_ERRORS as e:
        return f"Error reading kubeconfig: {e}"


def _read_context(session, name: str) -> str:
    entry = session.index.get(name)
    if entry is None:
        return f"Context '{name}' not found."
    return entry_details(entry)
