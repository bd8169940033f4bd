"""
Reconciliation data models — targets, verdicts, per-target outcomes and the
run-level summary.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..config import INDIVIDUAL_RECIPIENT_TYPES, SHARED_RECIPIENT_TYPES

ZERO_GUID = "00000000-0000-0000-0000-000000000000"


class MalformedRecord(ValueError):
    """Raised when a source record lacks a required field."""
    def __init__(self, field_name: str, record: Any):
        self.field_name = field_name
        self.record = record
        super().__init__(f"Record is missing required field '{field_name}': {str(record)[:200]}")


class Classification(str, Enum):
    INDIVIDUAL = "individual"
    SHARED = "shared"


class Verdict(str, Enum):
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    ALREADY_SATISFIED = "already_satisfied"


class SubAction(str, Enum):
    APPLY = "apply"
    ALREADY_SATISFIED = "already_satisfied"
    EXEMPT = "exempt"
    NOT_APPLICABLE = "not_applicable"


class MutationKind(str, Enum):
    ASSIGN_POLICY = "assign_policy"
    ENABLE_ARCHIVE = "enable_archive"
    GRANT_PERMISSION = "grant_permission"
    REVOKE_PERMISSION = "revoke_permission"


class ActionStatus(str, Enum):
    APPLIED = "applied"
    SIMULATED = "simulated"
    ALREADY_SATISFIED = "already_satisfied"
    SKIPPED_EXEMPT = "skipped_exempt"
    SKIPPED_DEPENDENCY = "skipped_dependency"
    FAILED_PERMANENT = "failed_permanent"
    FAILED_TRANSIENT = "failed_transient"


class ErrorKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT_EXHAUSTED = "transient_exhausted"
    UNEXPECTED = "unexpected"
    MALFORMED = "malformed"


class OutcomeStatus(str, Enum):
    INELIGIBLE = "ineligible"
    FAILED_PERMANENT = "failed_permanent"
    FAILED_TRANSIENT = "failed_transient"
    SUCCEEDED = "succeeded"
    ALREADY_SATISFIED = "already_satisfied"


# Labels for the per-target "action taken" column
ACTION_LABELS = {
    (MutationKind.ASSIGN_POLICY, ActionStatus.APPLIED): "assigned",
    (MutationKind.ASSIGN_POLICY, ActionStatus.SIMULATED): "assigned (simulated)",
    (MutationKind.ASSIGN_POLICY, ActionStatus.ALREADY_SATISFIED): "already-set",
    (MutationKind.ENABLE_ARCHIVE, ActionStatus.APPLIED): "enabled",
    (MutationKind.ENABLE_ARCHIVE, ActionStatus.SIMULATED): "enabled (simulated)",
    (MutationKind.ENABLE_ARCHIVE, ActionStatus.ALREADY_SATISFIED): "already-enabled",
    (MutationKind.ENABLE_ARCHIVE, ActionStatus.SKIPPED_EXEMPT): "archive-exempt",
    (MutationKind.GRANT_PERMISSION, ActionStatus.APPLIED): "added",
    (MutationKind.GRANT_PERMISSION, ActionStatus.SIMULATED): "added (simulated)",
    (MutationKind.REVOKE_PERMISSION, ActionStatus.APPLIED): "removed",
    (MutationKind.REVOKE_PERMISSION, ActionStatus.SIMULATED): "removed (simulated)",
}


def classify_recipient(recipient_type: str) -> Optional[Classification]:
    """Map an Exchange RecipientTypeDetails value to a classification."""
    if recipient_type in INDIVIDUAL_RECIPIENT_TYPES:
        return Classification.INDIVIDUAL
    if recipient_type in SHARED_RECIPIENT_TYPES:
        return Classification.SHARED
    return None


@dataclass(frozen=True)
class TargetObject:
    """A mailbox, or a shared-mailbox/group pair, reconciled in one run."""
    identifier: str
    classification: Classification
    recipient_type: str = ""
    retention_policy: str = ""
    archive_indicator: str = ""
    alias: str = ""
    group_name: str = ""     # Permission mode: the group granting access

    @property
    def key(self) -> str:
        return self.identifier.lower()

    @classmethod
    def from_mailbox(cls, record: dict) -> "TargetObject":
        """Build a target from a Get-Mailbox record, failing fast on gaps."""
        if not isinstance(record, dict):
            raise MalformedRecord("UserPrincipalName", record)
        identifier = (record.get("UserPrincipalName") or "").strip()
        if not identifier:
            raise MalformedRecord("UserPrincipalName", record)

        recipient_type = record.get("RecipientTypeDetails") or ""
        classification = classify_recipient(recipient_type)
        if classification is None:
            raise MalformedRecord("RecipientTypeDetails", record)

        return cls(
            identifier=identifier,
            classification=classification,
            recipient_type=recipient_type,
            retention_policy=record.get("RetentionPolicy") or "",
            archive_indicator=_archive_indicator(record),
            alias=record.get("Alias") or "",
        )


def _archive_indicator(record: dict) -> str:
    """Non-empty when the mailbox already has an online archive."""
    database = record.get("ArchiveDatabase") or ""
    if database:
        return str(database)
    guid = str(record.get("ArchiveGuid") or "")
    if guid and guid != ZERO_GUID:
        return guid
    return ""


@dataclass(frozen=True)
class EligibilityVerdict:
    """Evaluator decision for one target."""
    status: Verdict
    reason: str = ""
    policy: SubAction = SubAction.NOT_APPLICABLE
    archive: SubAction = SubAction.NOT_APPLICABLE

    @classmethod
    def ineligible(cls, reason: str) -> "EligibilityVerdict":
        return cls(status=Verdict.INELIGIBLE, reason=reason)

    @property
    def needs_mutation(self) -> bool:
        return SubAction.APPLY in (self.policy, self.archive)


@dataclass
class ActionRecord:
    """One sub-action attempted (or deliberately not attempted) for a target."""
    kind: MutationKind
    status: ActionStatus
    detail: str = ""
    attempts: int = 0
    error: str = ""

    @property
    def label(self) -> str:
        return ACTION_LABELS.get((self.kind, self.status), f"{self.kind.value}:{self.status.value}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "detail": self.detail,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class RunOutcome:
    """Per-target result record. Exactly one per target per run."""
    identifier: str
    classification: Optional[Classification] = None
    actions: list[ActionRecord] = field(default_factory=list)
    ineligible_reason: str = ""
    error_kind: Optional[ErrorKind] = None
    error: str = ""

    @classmethod
    def for_target(cls, target: TargetObject) -> "RunOutcome":
        return cls(identifier=target.identifier, classification=target.classification)

    @classmethod
    def failure(
        cls,
        identifier: str,
        kind: ErrorKind,
        error: str,
        classification: Optional[Classification] = None,
    ) -> "RunOutcome":
        return cls(identifier=identifier, classification=classification, error_kind=kind, error=error)

    def add(self, action: ActionRecord) -> ActionRecord:
        self.actions.append(action)
        if action.status == ActionStatus.FAILED_PERMANENT:
            self._escalate(ErrorKind.PERMANENT, action.error)
        elif action.status == ActionStatus.FAILED_TRANSIENT:
            self._escalate(ErrorKind.TRANSIENT_EXHAUSTED, action.error)
        return action

    def _escalate(self, kind: ErrorKind, error: str):
        # A permanent failure outranks an exhausted transient one
        if self.error_kind in (None, ErrorKind.TRANSIENT_EXHAUSTED):
            self.error_kind = kind
            self.error = error

    @property
    def status(self) -> OutcomeStatus:
        if self.error_kind in (ErrorKind.PERMANENT, ErrorKind.UNEXPECTED, ErrorKind.MALFORMED):
            return OutcomeStatus.FAILED_PERMANENT
        if self.error_kind == ErrorKind.TRANSIENT_EXHAUSTED:
            return OutcomeStatus.FAILED_TRANSIENT
        if self.ineligible_reason:
            return OutcomeStatus.INELIGIBLE
        if any(a.status in (ActionStatus.APPLIED, ActionStatus.SIMULATED) for a in self.actions):
            return OutcomeStatus.SUCCEEDED
        return OutcomeStatus.ALREADY_SATISFIED

    @property
    def action(self) -> str:
        """Short description of what was done, e.g. ``assigned, enabled``."""
        if self.ineligible_reason:
            return "none"
        labels = [a.label for a in self.actions]
        return ", ".join(labels) if labels else "none"

    @property
    def exempt(self) -> bool:
        return any(a.status == ActionStatus.SKIPPED_EXEMPT for a in self.actions)

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "classification": self.classification.value if self.classification else "",
            "status": self.status.value,
            "action": self.action,
            "ineligible_reason": self.ineligible_reason,
            "error_kind": self.error_kind.value if self.error_kind else "",
            "error": self.error,
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass
class RunSummary:
    """
    Run-level counters. Created at run start, mutated only by the scheduler,
    emitted once at run end.
    """
    mode: str = ""
    dry_run: bool = True
    processed: int = 0
    skipped_exempt: int = 0
    skipped_ineligible: int = 0
    succeeded: int = 0
    already_satisfied: int = 0
    failed_permanent: int = 0
    failed_transient: int = 0
    action_counts: Counter = field(default_factory=Counter)
    outcomes: list[RunOutcome] = field(default_factory=list)
    enumeration_error: str = ""     # Set when target enumeration stopped early
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: str = ""

    def record(self, outcome: RunOutcome):
        """Fold one outcome into the counters."""
        self.processed += 1
        self.outcomes.append(outcome)

        status = outcome.status
        if status == OutcomeStatus.INELIGIBLE:
            self.skipped_ineligible += 1
        elif status == OutcomeStatus.FAILED_PERMANENT:
            self.failed_permanent += 1
        elif status == OutcomeStatus.FAILED_TRANSIENT:
            self.failed_transient += 1
        elif status == OutcomeStatus.SUCCEEDED:
            self.succeeded += 1
        else:
            self.already_satisfied += 1

        if outcome.exempt:
            self.skipped_exempt += 1
        for action in outcome.actions:
            self.action_counts[(action.kind, action.status)] += 1

    def merge(self, outcomes: list[RunOutcome]):
        for outcome in outcomes:
            self.record(outcome)

    def action_count(self, kind: MutationKind, status: ActionStatus) -> int:
        return self.action_counts.get((kind, status), 0)

    def complete(self):
        self.completed_at = datetime.now(timezone.utc).isoformat()

    @property
    def enumeration_failed(self) -> bool:
        return bool(self.enumeration_error)

    @property
    def exit_code(self) -> int:
        """Non-zero only when an error needs manual attention."""
        return 1 if self.failed_permanent or self.enumeration_failed else 0

    def counters(self) -> dict:
        return {
            "processed": self.processed,
            "skipped_exempt": self.skipped_exempt,
            "skipped_ineligible": self.skipped_ineligible,
            "succeeded": self.succeeded,
            "already_satisfied": self.already_satisfied,
            "failed_permanent": self.failed_permanent,
            "failed_transient": self.failed_transient,
        }

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "counters": self.counters(),
            "enumeration_failed": self.enumeration_failed,
            "enumeration_error": self.enumeration_error,
            "actions": {
                f"{kind.value}:{status.value}": count
                for (kind, status), count in sorted(
                    self.action_counts.items(), key=lambda kv: (kv[0][0].value, kv[0][1].value)
                )
            },
            "exit_code": self.exit_code,
        }
