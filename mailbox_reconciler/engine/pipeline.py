"""
Per-target pipelines. Each processor turns one TargetObject into exactly one
RunOutcome: evaluate or diff against reference data, then apply the needed
mutations in a fixed order.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import LicenseRules
from ..exchange.client import ExchangeClient, ExchangeCommandError
from ..reference.cache import ReferenceData
from .differ import diff
from .evaluator import evaluate
from .executor import Mutation, MutationExecutor
from .models import (
    ActionRecord,
    ActionStatus,
    ErrorKind,
    MutationKind,
    RunOutcome,
    SubAction,
    TargetObject,
    Verdict,
)

logger = logging.getLogger("mailbox_reconciler.pipeline")

SYSTEM_PRINCIPAL_PREFIXES = ("nt authority\\", "s-1-5-")


class ComplianceProcessor:
    """Retention policy assignment followed by archive enablement."""

    mode = "compliance"

    def __init__(
        self,
        reference: ReferenceData,
        executor: MutationExecutor,
        policy_name: str,
        rules: Optional[LicenseRules] = None,
        archive_requires_policy: bool = True,
    ):
        self.reference = reference
        self.executor = executor
        self.policy_name = policy_name
        self.rules = rules or LicenseRules()
        self.archive_requires_policy = archive_requires_policy

    async def process(self, target: TargetObject) -> RunOutcome:
        outcome = RunOutcome.for_target(target)
        verdict = evaluate(target, self.reference, self.policy_name, self.rules)

        if verdict.status == Verdict.INELIGIBLE:
            outcome.ineligible_reason = verdict.reason
            logger.debug(f"{target.identifier}: ineligible ({verdict.reason})")
            return outcome

        policy_ok = True
        if verdict.policy == SubAction.APPLY:
            result = await self.executor.apply(
                Mutation(MutationKind.ASSIGN_POLICY, target.identifier, self.policy_name)
            )
            outcome.add(result.to_action())
            policy_ok = result.success
        else:
            outcome.add(ActionRecord(
                MutationKind.ASSIGN_POLICY,
                ActionStatus.ALREADY_SATISFIED,
                detail=target.retention_policy,
            ))

        if verdict.archive == SubAction.EXEMPT:
            logger.debug(f"{target.identifier}: archive skipped (exempt)")
            outcome.add(ActionRecord(MutationKind.ENABLE_ARCHIVE, ActionStatus.SKIPPED_EXEMPT))
        elif verdict.archive == SubAction.ALREADY_SATISFIED:
            outcome.add(ActionRecord(
                MutationKind.ENABLE_ARCHIVE,
                ActionStatus.ALREADY_SATISFIED,
                detail=target.archive_indicator,
            ))
        elif not policy_ok and self.archive_requires_policy:
            outcome.add(ActionRecord(
                MutationKind.ENABLE_ARCHIVE,
                ActionStatus.SKIPPED_DEPENDENCY,
                detail="retention policy assignment failed",
            ))
        else:
            result = await self.executor.apply(
                Mutation(MutationKind.ENABLE_ARCHIVE, target.identifier)
            )
            outcome.add(result.to_action())

        return outcome


def is_explicit_grant(entry: dict) -> bool:
    """True for a non-inherited, non-deny FullAccess grant to a real principal."""
    user = str(entry.get("User") or "").strip()
    if not user or user.lower().startswith(SYSTEM_PRINCIPAL_PREFIXES):
        return False
    if entry.get("IsInherited") or entry.get("Deny"):
        return False
    rights = entry.get("AccessRights") or []
    if isinstance(rights, str):
        rights = [r.strip() for r in rights.split(",")]
    return any(r.lower() == "fullaccess" for r in rights)


class PermissionProcessor:
    """Makes FullAccess grants on a shared mailbox equal its group's members."""

    mode = "permissions"

    def __init__(
        self,
        reference: ReferenceData,
        exchange: ExchangeClient,
        executor: MutationExecutor,
    ):
        self.reference = reference
        self.exchange = exchange
        self.executor = executor

    async def read_actual(self, identity: str) -> dict[str, str]:
        """Explicit FullAccess holders, lower-cased key to the form Exchange reports."""
        actual: dict[str, str] = {}
        async for entry in self.exchange.invoke_stream(
            "Get-MailboxPermission", {"Identity": identity}
        ):
            if is_explicit_grant(entry):
                user = str(entry["User"]).strip()
                actual[user.lower()] = user
        return actual

    async def process(self, target: TargetObject) -> RunOutcome:
        outcome = RunOutcome.for_target(target)
        group = self.reference.group_for(target.alias or target.identifier)
        if group is None:
            outcome.ineligible_reason = "no permission group"
            return outcome

        try:
            actual = await self.read_actual(target.identifier)
        except (ExchangeCommandError, httpx.TransportError) as e:
            message = str(e) or type(e).__name__
            kind = (
                ErrorKind.TRANSIENT_EXHAUSTED
                if self.executor.classifier.is_transient(e)
                else ErrorKind.PERMANENT
            )
            logger.error(f"Could not read permissions on {target.identifier}: {message}")
            return RunOutcome.failure(
                target.identifier, kind, message, classification=target.classification
            )

        changes = diff(group.members, actual.keys())
        if changes.in_sync:
            logger.debug(f"{target.identifier}: in sync with {group.name}")
            return outcome

        logger.info(
            f"{target.identifier}: +{len(changes.to_add)} / -{len(changes.to_remove)} "
            f"from {group.name}"
        )
        for principal in sorted(changes.to_add):
            result = await self.executor.apply(
                Mutation(MutationKind.GRANT_PERMISSION, target.identifier, principal)
            )
            outcome.add(result.to_action())
        for principal in sorted(changes.to_remove):
            result = await self.executor.apply(
                Mutation(MutationKind.REVOKE_PERMISSION, target.identifier, actual[principal])
            )
            outcome.add(result.to_action())

        return outcome
