"""
Google Kubernetes Engine discovery through the ``gcloud`` CLI.

  gcloud info                          signed-in account check
  gcloud projects list                 ACTIVE projects, minus ``sys-`` ones
  gcloud container clusters list       endpoint + CA per cluster

Credentials use the ``gke-gcloud-auth-plugin`` exec plugin, the same stanza
``gcloud container clusters get-credentials`` writes.
"""

from __future__ import annotations

from ktx.discovery.base import Account, AccountContext, CloudDiscoverer, DiscoveredCluster, Provider
from ktx.kubeconfig import ExecAuth, User

AUTH_PLUGIN = "gke-gcloud-auth-plugin"
INSTALL_HINT = (
    "Install gke-gcloud-auth-plugin for use with kubectl by following "
    "https://cloud.google.com/kubernetes-engine/docs/how-to/cluster-access-for-kubectl#install_plugin"
)


class GKEDiscoverer(CloudDiscoverer):
    provider = Provider.GKE
    program = "gcloud"

    async def is_configured(self) -> bool:
        info = await self._probe_cli(["--format", "json", "info"])
        if not isinstance(info, dict):
            return False
        return bool((info.get("config") or {}).get("account"))

    async def list_accounts(self) -> list[Account]:
        projects = await self._call(["--format", "json", "projects", "list"])
        accounts = []
        for project in projects or []:
            project_id = project.get("projectId", "")
            if not project_id or project_id.startswith("sys-"):
                continue
            if project.get("lifecycleState", "ACTIVE") != "ACTIVE":
                continue
            accounts.append(Account(id=project_id, label=f"{project.get('name') or project_id} ({project_id})"))
        return sorted(accounts, key=lambda a: a.id)

    async def list_clusters(self, account_context: AccountContext | None = None) -> list[DiscoveredCluster]:
        account_context = account_context or AccountContext()
        if account_context.account:
            projects = [account_context.account]
        else:
            projects = [a.id for a in await self.list_accounts()]

        async def fetch(project: str) -> list[DiscoveredCluster]:
            items = await self._call(
                ["--format", "json", "container", "clusters", "list", "--project", project]
            )
            clusters = []
            for item in items or []:
                location = item.get("location") or item.get("zone") or ""
                if account_context.region and not location.startswith(account_context.region):
                    continue
                endpoint = item.get("endpoint")
                if not endpoint:
                    continue
                clusters.append(DiscoveredCluster(
                    provider=self.provider,
                    account=project,
                    region=location,
                    name=item["name"],
                    endpoint=endpoint if endpoint.startswith("https://") else f"https://{endpoint}",
                    ca_data=(item.get("masterAuth") or {}).get("clusterCaCertificate"),
                    auth={"plugin": AUTH_PLUGIN},
                    scope=(project,),
                ))
            return clusters

        return await self._across(projects, fetch)

    def build_auth(self, cluster: DiscoveredCluster, name: str) -> User:
        return User(
            name=name,
            auth=ExecAuth(
                command=cluster.auth.get("plugin", AUTH_PLUGIN),
                install_hint=INSTALL_HINT,
                provide_cluster_info=True,
            ),
        )
