"""Reconciliation engine — evaluation, diffing, mutation and scheduling."""

from .models import (
    ActionRecord,
    ActionStatus,
    Classification,
    EligibilityVerdict,
    ErrorKind,
    MalformedRecord,
    MutationKind,
    OutcomeStatus,
    RunOutcome,
    RunSummary,
    SubAction,
    TargetObject,
    Verdict,
)
from .differ import PermissionDiff, derive_resource_identity, diff
from .evaluator import evaluate
from .executor import Mutation, MutationExecutor, MutationResult, TransientErrorClassifier
from .scheduler import BatchScheduler

__all__ = [
    "ActionRecord",
    "ActionStatus",
    "BatchScheduler",
    "Classification",
    "EligibilityVerdict",
    "ErrorKind",
    "MalformedRecord",
    "Mutation",
    "MutationExecutor",
    "MutationKind",
    "MutationResult",
    "OutcomeStatus",
    "PermissionDiff",
    "RunOutcome",
    "RunSummary",
    "SubAction",
    "TargetObject",
    "TransientErrorClassifier",
    "Verdict",
    "derive_resource_identity",
    "diff",
    "evaluate",
]
