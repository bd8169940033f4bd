"""
Shared fixtures: in-memory stand-ins for the Graph directory and the Exchange
admin endpoint, with just enough behaviour for reconciliation runs.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mailbox_reconciler.exchange.client import ExchangeCommandError  # noqa: E402

SKU_E3 = "6fd2c87f-b296-42f0-b197-1e91e994b900"
SKU_P1 = "4b9405b0-7788-4568-add1-99614e613b69"
SKU_ARCHIVE = "ee02fd1b-340e-4a4b-b355-4a514e4c8943"
SKU_P2 = "19ec0d23-8335-4cbd-94ac-6050e30712fa"
SKU_KIOSK = "80b2d799-d2ba-4d2a-8842-fb0d0f3a4b82"

SUBSCRIBED_SKUS = [
    {"skuId": SKU_E3, "skuPartNumber": "ENTERPRISEPACK"},
    {"skuId": SKU_P1, "skuPartNumber": "EXCHANGESTANDARD"},
    {"skuId": SKU_ARCHIVE, "skuPartNumber": "EXCHANGEARCHIVE_ADDON"},
    {"skuId": SKU_P2, "skuPartNumber": "EXCHANGEENTERPRISE"},
    {"skuId": SKU_KIOSK, "skuPartNumber": "EXCHANGEDESKLESS"},
]

EXEMPT_GROUP_ID = "11111111-2222-3333-4444-555555555555"
NO_ARCHIVE = "00000000-0000-0000-0000-000000000000"


class FakeGraph:
    """
    Routes endpoint -> list of items (or a callable taking params).
    Unknown endpoints behave as empty collections.
    """

    def __init__(self, routes: Optional[dict] = None):
        self.routes = routes or {}
        self.requests: list[tuple[str, Optional[dict]]] = []

    def _resolve(self, endpoint: str, params: Optional[dict]):
        self.requests.append((endpoint, params))
        route = self.routes.get(endpoint, [])
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(params or {})
        return route

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        return self._resolve(endpoint, params)

    async def get_all_pages(self, endpoint: str, params: Optional[dict] = None) -> list:
        return list(self._resolve(endpoint, params))

    async def get_all_pages_stream(self, endpoint: str, params: Optional[dict] = None):
        for item in self._resolve(endpoint, params):
            yield item


def mailbox(
    upn: str,
    recipient_type: str = "UserMailbox",
    policy: str = "",
    archive: str = NO_ARCHIVE,
    alias: str = "",
) -> dict:
    return {
        "UserPrincipalName": upn,
        "Alias": alias or upn.split("@")[0],
        "RecipientTypeDetails": recipient_type,
        "RetentionPolicy": policy,
        "ArchiveGuid": archive,
        "ArchiveDatabase": "",
    }


def grant(user: str, inherited: bool = False, deny: bool = False, rights=("FullAccess",)) -> dict:
    return {"User": user, "AccessRights": list(rights), "IsInherited": inherited, "Deny": deny}


class FakeExchange:
    """
    Keeps mailbox and permission state in memory and applies writes to it,
    so a second run observes the first run's changes.

    ``failures`` maps (cmdlet, identity) to either an exception (raised on
    every call) or a list of exceptions consumed one per call.
    ``enumeration_failure`` is (n, exception): Get-Mailbox raises it after
    yielding n records.
    """

    def __init__(
        self,
        mailboxes: Optional[list[dict]] = None,
        permissions: Optional[dict[str, list[dict]]] = None,
        failures: Optional[dict] = None,
        on_invoke: Optional[Callable[[str, dict], None]] = None,
        enumeration_failure: Optional[tuple[int, Exception]] = None,
    ):
        self.mailboxes = {m["UserPrincipalName"].lower(): dict(m) for m in (mailboxes or [])}
        self.permissions = {k.lower(): list(v) for k, v in (permissions or {}).items()}
        self.failures = failures or {}
        self.on_invoke = on_invoke
        self.enumeration_failure = enumeration_failure
        self.calls: list[tuple[str, dict]] = []

    @property
    def writes(self) -> list[tuple[str, dict]]:
        return [c for c in self.calls if not c[0].startswith("Get-")]

    def writes_for(self, cmdlet: str) -> list[dict]:
        return [p for c, p in self.writes if c == cmdlet]

    def _maybe_fail(self, cmdlet: str, identity: str):
        plan = self.failures.get((cmdlet, identity.lower()))
        if plan is None:
            return
        if isinstance(plan, list):
            if plan:
                raise plan.pop(0)
            return
        raise plan

    async def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list[dict]:
        parameters = parameters or {}
        self.calls.append((cmdlet, parameters))
        if self.on_invoke:
            self.on_invoke(cmdlet, parameters)
        identity = str(parameters.get("Identity", ""))
        self._maybe_fail(cmdlet, identity)

        key = identity.lower()
        if cmdlet == "Set-Mailbox":
            self.mailboxes[key]["RetentionPolicy"] = parameters["RetentionPolicy"]
        elif cmdlet == "Enable-Mailbox":
            self.mailboxes[key]["ArchiveGuid"] = "9a1b2c3d-0000-4000-8000-00000000abcd"
        elif cmdlet == "Add-MailboxPermission":
            self.permissions.setdefault(key, []).append(grant(parameters["User"]))
        elif cmdlet == "Remove-MailboxPermission":
            user = parameters["User"].lower()
            self.permissions[key] = [
                e for e in self.permissions.get(key, []) if e["User"].lower() != user
            ]
        return []

    async def invoke_stream(self, cmdlet: str, parameters: Optional[dict] = None):
        parameters = parameters or {}
        self.calls.append((cmdlet, parameters))
        if cmdlet == "Get-Mailbox":
            wanted = set(parameters.get("RecipientTypeDetails") or [])
            yielded = 0
            for record in list(self.mailboxes.values()):
                if self.enumeration_failure and yielded == self.enumeration_failure[0]:
                    raise self.enumeration_failure[1]
                if not wanted or record.get("RecipientTypeDetails") in wanted:
                    yielded += 1
                    yield dict(record)
        elif cmdlet == "Get-MailboxPermission":
            identity = str(parameters.get("Identity", ""))
            self._maybe_fail(cmdlet, identity)
            for entry in self.permissions.get(identity.lower(), []):
                yield dict(entry)


def compliance_graph(
    licenses: dict[str, list[str]],
    exempt_members: list[str],
    exempt_group: str = "Archive-Exempt",
) -> FakeGraph:
    """Directory with subscribed SKUs, per-user licenses and one exemption group."""
    users = [
        {"userPrincipalName": upn, "assignedLicenses": [{"skuId": s} for s in skus]}
        for upn, skus in licenses.items()
    ]

    def groups(params):
        flt = params.get("$filter", "")
        if f"'{exempt_group}'" in flt:
            return [{"id": EXEMPT_GROUP_ID, "displayName": exempt_group}]
        return []

    return FakeGraph({
        "subscribedSkus": SUBSCRIBED_SKUS,
        "users": users,
        "groups": groups,
        f"groups/{EXEMPT_GROUP_ID}/transitiveMembers/microsoft.graph.user": [
            {"userPrincipalName": m} for m in exempt_members
        ],
    })


def permission_graph(groups: dict[str, list[str]]) -> FakeGraph:
    """Directory with permission groups keyed by display name."""
    routes: dict = {
        "groups": [
            {"id": f"g-{i}", "displayName": name} for i, name in enumerate(groups)
        ],
    }
    for i, members in enumerate(groups.values()):
        routes[f"groups/g-{i}/transitiveMembers/microsoft.graph.user"] = [
            {"userPrincipalName": m} for m in members
        ]
    return FakeGraph(routes)


def transient_error(cmdlet: str = "Set-Mailbox") -> ExchangeCommandError:
    return ExchangeCommandError(
        cmdlet, 500, "The server side error has occurred because of which the operation could not be completed."
    )


def permanent_error(cmdlet: str = "Set-Mailbox") -> ExchangeCommandError:
    return ExchangeCommandError(cmdlet, 400, "The operation couldn't be performed because object couldn't be found.")


@pytest.fixture
def fake_exchange_factory():
    return FakeExchange
