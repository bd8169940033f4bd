"""
Eligibility Evaluator — pure decision function for compliance mode.

Maps a mailbox's current state plus the bulk-loaded reference data to a
verdict for each sub-action (retention policy, archive). Makes no calls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, AbstractSet, Optional

from ..config import LicenseRules
from .models import Classification, EligibilityVerdict, SubAction, TargetObject, Verdict

if TYPE_CHECKING:
    from ..reference.cache import ReferenceData

REASON_NO_VALID_LICENSE = "no valid license"
REASON_SHARED_PLAN = "shared mailbox license lacks archiving"


def license_ineligibility(
    target: TargetObject,
    licenses: AbstractSet[str],
    rules: LicenseRules,
) -> str:
    """Return the reason a target is ineligible, or an empty string."""
    held = {sku.upper() for sku in licenses}

    if target.classification == Classification.INDIVIDUAL:
        if held & rules.accepted_skus:
            return ""
        return REASON_NO_VALID_LICENSE

    # Shared resources: unlicensed is fine, a license must cover archiving
    if not held:
        return ""
    if rules.full_plan_sku in held:
        return ""
    if rules.base_plan_sku in held and rules.archive_addon_sku in held:
        return ""
    if held & rules.accepted_skus:
        return ""
    return REASON_SHARED_PLAN


def evaluate(
    target: TargetObject,
    reference: "ReferenceData",
    policy_name: str,
    rules: Optional[LicenseRules] = None,
    exempt: Optional[AbstractSet[str]] = None,
) -> EligibilityVerdict:
    """
    Decide what, if anything, must change on ``target``.

    Exemption only affects the archive sub-action. Each sub-action is
    already-satisfied independently of the other.
    """
    rules = rules or LicenseRules()
    exempt_set = reference.exempt if exempt is None else exempt

    reason = license_ineligibility(target, reference.licenses_for(target.identifier), rules)
    if reason:
        return EligibilityVerdict.ineligible(reason)

    if target.retention_policy.strip().lower() == policy_name.strip().lower():
        policy = SubAction.ALREADY_SATISFIED
    else:
        policy = SubAction.APPLY

    if target.key in exempt_set:
        archive = SubAction.EXEMPT
    elif target.archive_indicator:
        archive = SubAction.ALREADY_SATISFIED
    else:
        archive = SubAction.APPLY

    status = Verdict.ELIGIBLE if SubAction.APPLY in (policy, archive) else Verdict.ALREADY_SATISFIED
    return EligibilityVerdict(status=status, policy=policy, archive=archive)
