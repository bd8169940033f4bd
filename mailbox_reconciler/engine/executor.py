"""
Mutation Executor — applies one idempotent change to Exchange Online with a
bounded retry policy for transient failures.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from ..config import MAX_MUTATION_ATTEMPTS, RETRY_BACKOFF_SECONDS, TRANSIENT_ERROR_PATTERNS
from ..exchange.client import ExchangeClient, ExchangeCommandError
from .models import ActionRecord, ActionStatus, ErrorKind, MutationKind

logger = logging.getLogger("mailbox_reconciler.executor")


@dataclass(frozen=True)
class Mutation:
    """A single state change against one mailbox."""
    kind: MutationKind
    identity: str
    value: str = ""     # Policy name, or the principal for permission changes

    def command(self) -> tuple[str, dict]:
        """Exchange cmdlet and parameters that perform this change."""
        if self.kind == MutationKind.ASSIGN_POLICY:
            return "Set-Mailbox", {"Identity": self.identity, "RetentionPolicy": self.value}
        if self.kind == MutationKind.ENABLE_ARCHIVE:
            return "Enable-Mailbox", {"Identity": self.identity, "Archive": True}
        if self.kind == MutationKind.GRANT_PERMISSION:
            return "Add-MailboxPermission", {
                "Identity": self.identity,
                "User": self.value,
                "AccessRights": ["FullAccess"],
                "InheritanceType": "All",
                "AutoMapping": False,
            }
        if self.kind == MutationKind.REVOKE_PERMISSION:
            return "Remove-MailboxPermission", {
                "Identity": self.identity,
                "User": self.value,
                "AccessRights": ["FullAccess"],
                "InheritanceType": "All",
                "Confirm": False,
            }
        raise ValueError(f"Unknown mutation kind: {self.kind}")

    def describe(self) -> str:
        if self.kind == MutationKind.ASSIGN_POLICY:
            return f"assign retention policy '{self.value}' to {self.identity}"
        if self.kind == MutationKind.ENABLE_ARCHIVE:
            return f"enable archive on {self.identity}"
        if self.kind == MutationKind.GRANT_PERMISSION:
            return f"grant FullAccess on {self.identity} to {self.value}"
        return f"revoke FullAccess on {self.identity} from {self.value}"


@dataclass
class MutationResult:
    mutation: Mutation
    success: bool
    simulated: bool = False
    attempts: int = 0
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    def to_action(self) -> ActionRecord:
        if self.success:
            status = ActionStatus.SIMULATED if self.simulated else ActionStatus.APPLIED
        elif self.error_kind == ErrorKind.TRANSIENT_EXHAUSTED:
            status = ActionStatus.FAILED_TRANSIENT
        else:
            status = ActionStatus.FAILED_PERMANENT
        return ActionRecord(
            kind=self.mutation.kind,
            status=status,
            detail=self.mutation.value,
            attempts=self.attempts,
            error=self.message,
        )


class TransientErrorClassifier:
    """Matches error messages against the configured transient signatures."""

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        source = TRANSIENT_ERROR_PATTERNS if patterns is None else patterns
        self.patterns = [re.compile(p, re.IGNORECASE) for p in source]

    def is_transient(self, error: BaseException | str) -> bool:
        # Network-level failures never reached the service
        if isinstance(error, httpx.TransportError):
            return True
        message = str(error)
        return any(p.search(message) for p in self.patterns)


class MutationExecutor:
    """
    Applies mutations with retry-on-transient-error.

    In dry-run mode (the default) no write is sent; the would-be change is
    logged and reported as a simulated success.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        dry_run: bool = True,
        max_attempts: int = MAX_MUTATION_ATTEMPTS,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        classifier: Optional[TransientErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.dry_run = dry_run
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.classifier = classifier or TransientErrorClassifier()
        self._sleep = sleep

    async def apply(self, mutation: Mutation) -> MutationResult:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would {mutation.describe()}")
            return MutationResult(mutation, success=True, simulated=True)

        cmdlet, parameters = mutation.command()
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.exchange.invoke(cmdlet, parameters)
                logger.info(f"Applied: {mutation.describe()}")
                return MutationResult(mutation, success=True, attempts=attempt)
            except (ExchangeCommandError, httpx.TransportError) as e:
                message = str(e) or type(e).__name__
                if not self.classifier.is_transient(e):
                    logger.error(f"Failed to {mutation.describe()}: {message}")
                    return MutationResult(
                        mutation,
                        success=False,
                        attempts=attempt,
                        error_kind=ErrorKind.PERMANENT,
                        message=message,
                    )
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Giving up on {mutation.describe()} after {attempt} attempts: {message}"
                    )
                    return MutationResult(
                        mutation,
                        success=False,
                        attempts=attempt,
                        error_kind=ErrorKind.TRANSIENT_EXHAUSTED,
                        message=message,
                    )
                logger.warning(
                    f"Transient error on {mutation.describe()} "
                    f"(attempt {attempt}/{self.max_attempts}), retrying in "
                    f"{self.backoff_seconds:.0f}s: {message}"
                )
                await self._sleep(self.backoff_seconds)
