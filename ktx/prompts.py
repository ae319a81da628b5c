"""
MCP prompt templates for kubeconfig housekeeping workflows.

Each prompt walks the model through one workflow using the exact tool names
this server exposes.
"""

from __future__ import annotations

from mcp.types import (
    GetPromptResult,
    Prompt,
    PromptArgument,
    PromptMessage,
    TextContent,
)

# ---------------------------------------------------------------------------
# Prompt definitions
# ---------------------------------------------------------------------------

ALL_PROMPTS: list[Prompt] = [
    Prompt(
        name="prune-stale-contexts",
        description="Probe every context, review the unreachable ones and remove the stale entries after confirmation.",
        arguments=[
            PromptArgument(name="query", description="Optional filter to limit which contexts are probed", required=False),
        ],
    ),
    Prompt(
        name="import-cloud-clusters",
        description="Discover GKE / EKS / AKS clusters that are missing from the kubeconfig and import the chosen ones.",
        arguments=[
            PromptArgument(name="provider", description="gke, eks or aks. Omit to scan every signed-in provider.", required=False),
            PromptArgument(name="account", description="Project, profile or subscription to limit discovery to", required=False),
        ],
    ),
]

# ---------------------------------------------------------------------------
# Prompt message builders
# ---------------------------------------------------------------------------

_PROMPT_BUILDERS: dict[str, callable] = {}


def _builder(name: str):
    """Decorator to register a prompt message builder."""
    def decorator(func):
        _PROMPT_BUILDERS[name] = func
        return func
    return decorator


def _user(text: str) -> PromptMessage:
    return PromptMessage(role="user", content=TextContent(type="text", text=text))


@_builder("prune-stale-contexts")
def _prune_stale_contexts(args: dict[str, str]) -> GetPromptResult:
    query = args.get("query")
    scope = f'contexts matching "{query}"' if query else "every context"
    list_arg = f' with query="{query}"' if query else ""
    return GetPromptResult(
        description=f"Prune stale kubeconfig entries ({scope})",
        messages=[
            _user(f"""\
Clean up stale kubeconfig contexts, covering {scope}:

1. **List**: Use ktx_list_contexts{list_arg} and note how many contexts there are and which one is current.

2. **Probe**: Use ktx_probe with the names from step 1 (or no names to probe everything). Each context ends up reachable, unreachable, auth_failed or unknown.

3. **Review**: Only `unreachable` contexts are stale. `auth_failed` usually means expired credentials (re-login to the cloud CLI) and must NOT be removed unless the user explicitly asks. `unknown` means the local TLS material is broken.

4. **Stage**: Use ktx_sweep. It stages the unreachable contexts for deletion from the pass you just ran.

5. **Confirm with the user**: Show the staged list. Never delete the current context without calling it out. Then call ktx_confirm (optionally with `selection` to keep some) or ktx_cancel.

Finish with a short report: removed contexts, contexts with auth problems and how to fix them, and the backup file path if one was reported."""),
        ],
    )


@_builder("import-cloud-clusters")
def _import_cloud_clusters(args: dict[str, str]) -> GetPromptResult:
    provider = args.get("provider")
    account = args.get("account")
    discover_args = ", ".join(
        part for part in (
            f'provider="{provider}"' if provider else "",
            f'account="{account}"' if account else "",
        ) if part
    )
    target = provider or "every signed-in provider"
    return GetPromptResult(
        description=f"Import managed clusters from {target}",
        messages=[
            _user(f"""\
Import managed Kubernetes clusters from {target} into the kubeconfig:

1. **Accounts**: {"Use ktx_list_accounts with provider=" + repr(provider) + " to show what will be scanned." if provider else "Skip this step unless the user wants to pick an account; ktx_list_accounts shows them per provider."}

2. **Discover**: Use ktx_discover{" with " + discover_args if discover_args else ""}. Only clusters missing from the kubeconfig are staged. Provider errors (for example an expired gcloud or az login) are listed separately and do not stop other providers.

3. **Choose**: Present the staged clusters with their proposed context names (e.g. gke-<project>-<cluster>). Ask which ones to import.

4. **Import**: Call ktx_confirm with `selection` set to the chosen names, or ktx_cancel.

5. **Verify**: Use ktx_probe on the imported contexts and report which are reachable. auth_failed right after import usually means the credential plugin (gke-gcloud-auth-plugin, aws, kubelogin) is missing or not signed in."""),
        ],
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_prompt(name: str, args: dict[str, str] | None) -> GetPromptResult:
    """Look up a prompt by name and return the rendered GetPromptResult."""
    builder = _PROMPT_BUILDERS.get(name)
    if builder is None:
        raise ValueError(f"Unknown prompt: {name}")
    return builder(args or {})
