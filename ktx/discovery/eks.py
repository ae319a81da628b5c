"""
Amazon EKS discovery through the ``aws`` CLI.

Accounts are AWS CLI profiles. Without an explicit region every region the
profile can see (``ec2 describe-regions``) is scanned.
"""

from __future__ import annotations

import asyncio

from ktx.discovery.base import Account, AccountContext, CloudDiscoverer, DiscoveredCluster, Provider
from ktx.kubeconfig import ExecAuth, User


def _profiles(output: str | None) -> list[str]:
    return sorted({line.strip() for line in (output or "").splitlines() if line.strip()})


class EKSDiscoverer(CloudDiscoverer):
    provider = Provider.EKS
    program = "aws"

    async def is_configured(self) -> bool:
        return bool(_profiles(await self._probe_cli(["configure", "list-profiles"], parse_json=False)))

    async def list_accounts(self) -> list[Account]:
        output = await self._call(["configure", "list-profiles"], parse_json=False)
        return [Account(id=p, label=p) for p in _profiles(output)]

    async def list_regions(self, profile: str) -> list[str]:
        data = await self._call(["--profile", profile, "--output", "json", "ec2", "describe-regions"])
        return sorted(r["RegionName"] for r in (data or {}).get("Regions", []) if r.get("RegionName"))

    async def list_clusters(self, account_context: AccountContext | None = None) -> list[DiscoveredCluster]:
        account_context = account_context or AccountContext()
        if account_context.account:
            profiles = [account_context.account]
        else:
            profiles = [a.id for a in await self.list_accounts()]

        async def fetch_region(profile: str, region: str) -> list[DiscoveredCluster]:
            data = await self._call([
                "--profile", profile, "--output", "json",
                "eks", "list-clusters", "--region", region,
            ])
            names = sorted((data or {}).get("clusters", []))
            return list(await asyncio.gather(*(self._describe(profile, region, n) for n in names)))

        async def fetch_profile(profile: str) -> list[DiscoveredCluster]:
            regions = [account_context.region] if account_context.region else await self.list_regions(profile)
            return await self._across(regions, lambda region: fetch_region(profile, region))

        return await self._across(profiles, fetch_profile)

    async def _describe(self, profile: str, region: str, name: str) -> DiscoveredCluster:
        data = await self._call([
            "--profile", profile, "--output", "json",
            "eks", "describe-cluster", "--region", region, "--name", name,
        ])
        body = (data or {}).get("cluster") or {}
        return DiscoveredCluster(
            provider=self.provider,
            account=profile,
            region=region,
            name=name,
            endpoint=body.get("endpoint", ""),
            ca_data=(body.get("certificateAuthority") or {}).get("data"),
            auth={"profile": profile, "region": region, "cluster": name},
            scope=(profile, region),
        )

    def build_auth(self, cluster: DiscoveredCluster, name: str) -> User:
        region = cluster.auth.get("region", cluster.region)
        profile = cluster.auth.get("profile", cluster.account)
        return User(
            name=name,
            auth=ExecAuth(
                command="aws",
                args=(
                    "--region", region,
                    "eks", "get-token",
                    "--cluster-name", cluster.auth.get("cluster", cluster.name),
                    "--output", "json",
                ),
                env=(("AWS_PROFILE", profile),),
            ),
        )
