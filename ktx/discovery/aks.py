"""
Azure Kubernetes Service discovery through the ``az`` CLI.

Accounts are subscriptions. ``az aks list`` has no CA bundle, so each cluster's
kubeconfig is fetched with ``az aks get-credentials --file -`` (printed to
stdout, nothing is written locally) and its cluster/user stanzas are reused.
AAD-enabled clusters fall back to a ``kubelogin`` exec plugin.
"""

from __future__ import annotations

import asyncio
import logging

from ktx.discovery.base import (
    Account,
    AccountContext,
    AuthError,
    CloudDiscoverer,
    DiscoveredCluster,
    DiscoveryError,
    Provider,
)
from ktx.kubeconfig import ExecAuth, KubeconfigError, NoAuth, User
from ktx.store import parse_document

logger = logging.getLogger(__name__)

# Well-known application id of the AKS AAD server.
AKS_AAD_SERVER_ID = "6dae42f8-4368-4678-94ff-3960e28e3630"


def kubelogin_auth() -> ExecAuth:
    return ExecAuth(
        command="kubelogin",
        args=("get-token", "--login", "azurecli", "--server-id", AKS_AAD_SERVER_ID),
        install_hint="kubelogin is not installed. See https://azure.github.io/kubelogin/",
    )


class AKSDiscoverer(CloudDiscoverer):
    provider = Provider.AKS
    program = "az"

    async def is_configured(self) -> bool:
        account = await self._probe_cli(["account", "show", "--output", "json"])
        if not isinstance(account, dict):
            return False
        return bool((account.get("user") or {}).get("name"))

    async def list_accounts(self) -> list[Account]:
        subscriptions = await self._call(["account", "list", "--output", "json"])
        accounts = [
            Account(id=s["id"], label=f"{s.get('name') or s['id']} ({s['id']})")
            for s in subscriptions or []
            if s.get("id") and s.get("state", "Enabled") == "Enabled"
        ]
        return sorted(accounts, key=lambda a: a.id)

    async def list_clusters(self, account_context: AccountContext | None = None) -> list[DiscoveredCluster]:
        account_context = account_context or AccountContext()
        if account_context.account:
            subscriptions = [account_context.account]
        else:
            subscriptions = [a.id for a in await self.list_accounts()]

        async def fetch(subscription: str) -> list[DiscoveredCluster]:
            items = await self._call(["aks", "list", "--subscription", subscription, "--output", "json"])
            wanted = [
                item for item in items or []
                if not account_context.region or item.get("location") == account_context.region
            ]
            found = await asyncio.gather(*(self._credentials(subscription, item) for item in wanted))
            return [c for c in found if c is not None]

        return await self._across(subscriptions, fetch)

    async def _credentials(self, subscription: str, item: dict) -> DiscoveredCluster | None:
        name = item["name"]
        group = item.get("resourceGroup", "")
        try:
            text = await self._call([
                "aks", "get-credentials",
                "--resource-group", group,
                "--name", name,
                "--subscription", subscription,
                "--file", "-",
            ], parse_json=False)
            doc = parse_document(text, source=f"az aks get-credentials {name}")
        except AuthError:
            raise
        except (DiscoveryError, KubeconfigError) as e:
            logger.warning("Skipping AKS cluster %s/%s: %s", group, name, e)
            return None

        cluster = doc.clusters[0] if doc.clusters else None
        user = doc.users[0] if doc.users else None
        fqdn = item.get("fqdn") or item.get("privateFqdn") or ""
        endpoint = cluster.server if cluster and cluster.server else f"https://{fqdn}:443"
        method = user.auth if user and not isinstance(user.auth, NoAuth) else kubelogin_auth()
        return DiscoveredCluster(
            provider=self.provider,
            account=subscription,
            region=item.get("location", ""),
            name=name,
            endpoint=endpoint,
            ca_data=cluster.certificate_authority_data if cluster else None,
            auth={"method": method},
            scope=(group,),
        )

    def build_auth(self, cluster: DiscoveredCluster, name: str) -> User:
        return User(name=name, auth=cluster.auth.get("method") or kubelogin_auth())
