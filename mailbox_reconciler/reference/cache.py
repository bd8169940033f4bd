"""
Reference Data Cache — bulk-loads license, SKU and group-membership lookup
tables once per run so that per-mailbox evaluation never goes back to the
directory.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

import httpx

from ..engine.differ import derive_resource_identity
from ..graph.client import GraphAPIError, GraphClient

logger = logging.getLogger("mailbox_reconciler.reference")

GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class FetchError(Exception):
    """Raised when reference data cannot be loaded. Fatal for the run."""
    pass


@dataclass(frozen=True)
class PermissionGroup:
    """A naming-convention group and the shared mailbox it governs."""
    name: str
    group_id: str
    resource_identity: str
    members: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ReferenceData:
    """Read-only lookup tables shared by every worker in a run."""
    sku_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    licenses: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))
    exempt: frozenset[str] = frozenset()
    permission_groups: Mapping[str, PermissionGroup] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def licenses_for(self, identifier: str) -> frozenset[str]:
        return self.licenses.get(identifier.lower(), frozenset())

    def is_exempt(self, identifier: str) -> bool:
        return identifier.lower() in self.exempt

    def group_for(self, resource_identity: str) -> Optional[PermissionGroup]:
        return self.permission_groups.get(resource_identity.lower())


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


class ReferenceDataLoader:
    """
    Loads ReferenceData through an explicit GraphClient.
    Every failure is re-raised as FetchError; the run cannot continue without it.
    """

    def __init__(self, graph: GraphClient):
        self.graph = graph

    async def load_compliance(self, exempt_group: str) -> ReferenceData:
        """SKU names, per-user licenses and the exemption group's members."""
        started = time.monotonic()
        try:
            sku_names = await self._load_sku_names()
            licenses = await self._load_licenses(sku_names)
            group = await self._resolve_group(exempt_group)
            exempt = await self._load_members(group["id"])
        except (GraphAPIError, httpx.HTTPError) as e:
            raise FetchError(f"Reference data load failed: {e}") from e

        logger.info(
            f"Reference data loaded in {time.monotonic() - started:.1f}s — "
            f"{len(sku_names)} SKUs, {len(licenses)} licensed principals, "
            f"{len(exempt)} exempt"
        )
        return ReferenceData(
            sku_names=MappingProxyType(sku_names),
            licenses=MappingProxyType(licenses),
            exempt=exempt,
        )

    async def load_permissions(self, group_prefix: str) -> ReferenceData:
        """Every permission group matching the prefix, with its members."""
        if not group_prefix:
            raise FetchError("A group prefix is required for permission reconciliation.")
        started = time.monotonic()
        try:
            groups = await self.graph.get_all_pages(
                "groups",
                params={
                    "$filter": f"startswith(displayName,'{_odata_quote(group_prefix)}')",
                    "$select": "id,displayName,mail",
                },
            )
            candidates = []
            for g in groups:
                name = g.get("displayName") or ""
                if not g.get("id"):
                    logger.warning(f"Skipping group without id: {name!r}")
                    continue
                identity = derive_resource_identity(name, group_prefix)
                if identity is None:
                    logger.warning(
                        f"Group '{name}' does not follow the '{group_prefix}' convention — skipped"
                    )
                    continue
                candidates.append((g["id"], name, identity))

            member_sets = await asyncio.gather(
                *(self._load_members(group_id) for group_id, _, _ in candidates)
            )
        except (GraphAPIError, httpx.HTTPError) as e:
            raise FetchError(f"Permission group load failed: {e}") from e

        by_resource: dict[str, PermissionGroup] = {}
        for (group_id, name, identity), members in zip(candidates, member_sets):
            key = identity.lower()
            existing = by_resource.get(key)
            if existing:
                logger.warning(
                    f"Groups '{existing.name}' and '{name}' both map to '{identity}' — "
                    f"desired membership is their union"
                )
                members = existing.members | members
                name = existing.name
                group_id = existing.group_id
            by_resource[key] = PermissionGroup(
                name=name,
                group_id=group_id,
                resource_identity=identity,
                members=members,
            )

        logger.info(
            f"Permission groups loaded in {time.monotonic() - started:.1f}s — "
            f"{len(by_resource)} shared resources"
        )
        return ReferenceData(permission_groups=MappingProxyType(by_resource))

    async def _load_sku_names(self) -> dict[str, str]:
        skus = await self.graph.get_all_pages("subscribedSkus")
        return {
            s["skuId"].lower(): (s.get("skuPartNumber") or s["skuId"]).upper()
            for s in skus
            if s.get("skuId")
        }

    async def _load_licenses(self, sku_names: dict[str, str]) -> dict[str, frozenset[str]]:
        licenses: dict[str, frozenset[str]] = {}
        unknown = 0
        async for user in self.graph.get_all_pages_stream(
            "users",
            params={"$select": "userPrincipalName,assignedLicenses"},
        ):
            upn = (user.get("userPrincipalName") or "").lower()
            assigned = user.get("assignedLicenses") or []
            if not upn or not assigned:
                continue
            names = set()
            for lic in assigned:
                sku_id = (lic.get("skuId") or "").lower()
                if not sku_id:
                    continue
                if sku_id not in sku_names:
                    unknown += 1
                names.add(sku_names.get(sku_id, sku_id.upper()))
            licenses[upn] = frozenset(names)

        if unknown:
            logger.debug(f"{unknown} license assignments reference unsubscribed SKUs")
        return licenses

    async def _resolve_group(self, identifier: str) -> dict:
        if GUID_PATTERN.match(identifier):
            return await self.graph.get(f"groups/{identifier}", params={"$select": "id,displayName"})

        quoted = _odata_quote(identifier)
        matches = await self.graph.get_all_pages(
            "groups",
            params={
                "$filter": f"displayName eq '{quoted}' or mail eq '{quoted}'",
                "$select": "id,displayName",
            },
        )
        if not matches:
            raise FetchError(f"Exemption group '{identifier}' was not found.")
        if len(matches) > 1:
            raise FetchError(
                f"Exemption group '{identifier}' is ambiguous ({len(matches)} matches)."
            )
        return matches[0]

    async def _load_members(self, group_id: str) -> frozenset[str]:
        members = await self.graph.get_all_pages(
            f"groups/{group_id}/transitiveMembers/microsoft.graph.user",
            params={"$select": "userPrincipalName"},
        )
        return frozenset(
            m["userPrincipalName"].lower() for m in members if m.get("userPrincipalName")
        )
