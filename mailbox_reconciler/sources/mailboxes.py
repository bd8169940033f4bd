"""
Enumeration sources — stream Exchange mailboxes into TargetObjects.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

import httpx

from ..config import INDIVIDUAL_RECIPIENT_TYPES, SHARED_RECIPIENT_TYPES
from ..engine.models import (
    Classification,
    ErrorKind,
    MalformedRecord,
    RunOutcome,
    TargetObject,
)
from ..exchange.client import ExchangeClient, ExchangeCommandError
from ..reference.cache import ReferenceData

logger = logging.getLogger("mailbox_reconciler.sources")


class MailboxSource:
    """
    Streams mailboxes of the given recipient types.

    Records that cannot become a TargetObject are kept in ``rejected`` as
    malformed failures so they still appear in the run summary.

    A read failure ends the stream early and is kept in ``error``; targets
    already yielded may have been mutated, so the caller decides whether the
    run is fatal (nothing enumerated) or partial.
    """

    def __init__(self, exchange: ExchangeClient, recipient_types=None):
        self.exchange = exchange
        self.recipient_types = sorted(
            recipient_types or (INDIVIDUAL_RECIPIENT_TYPES | SHARED_RECIPIENT_TYPES)
        )
        self.rejected: list[RunOutcome] = []
        self.enumerated = 0
        self.error = ""

    async def targets(self) -> AsyncGenerator[TargetObject, None]:
        try:
            async for record in self.exchange.invoke_stream(
                "Get-Mailbox",
                {
                    "ResultSize": "Unlimited",
                    "RecipientTypeDetails": self.recipient_types,
                },
            ):
                self.enumerated += 1
                try:
                    target = TargetObject.from_mailbox(record)
                except MalformedRecord as e:
                    self._reject(record, e)
                    continue
                yield target
        except (ExchangeCommandError, httpx.HTTPError) as e:
            self.error = f"Mailbox enumeration failed after {self.enumerated} records: {e}"
            logger.error(self.error)

    def _reject(self, record, error: MalformedRecord):
        identifier = "<unknown>"
        if isinstance(record, dict):
            identifier = record.get("Identity") or record.get("Alias") or identifier
        logger.error(f"Malformed mailbox record ({identifier}): {error}")
        self.rejected.append(RunOutcome.failure(identifier, ErrorKind.MALFORMED, str(error)))


class PermissionTargetSource(MailboxSource):
    """
    Pairs each permission group with the shared mailbox whose alias equals the
    identity derived from the group name. Groups left without a mailbox are
    reported as ineligible.
    """

    def __init__(self, exchange: ExchangeClient, reference: ReferenceData):
        super().__init__(exchange, recipient_types=["SharedMailbox"])
        self.reference = reference

    async def targets(self) -> AsyncGenerator[TargetObject, None]:
        matched: set[str] = set()
        async for mailbox in super().targets():
            group = self.reference.group_for(mailbox.alias) if mailbox.alias else None
            if group is None:
                continue
            matched.add(group.resource_identity.lower())
            yield TargetObject(
                identifier=mailbox.identifier,
                classification=Classification.SHARED,
                recipient_type=mailbox.recipient_type,
                alias=mailbox.alias,
                group_name=group.name,
            )

        if self.error:
            # Unseen mailboxes may still match the remaining groups
            return
        for key, group in self.reference.permission_groups.items():
            if key in matched:
                continue
            logger.warning(
                f"Group '{group.name}' has no shared mailbox with alias "
                f"'{group.resource_identity}'"
            )
            self.rejected.append(RunOutcome(
                identifier=group.resource_identity,
                classification=Classification.SHARED,
                ineligible_reason="no matching shared mailbox",
            ))
