"""
Desired-vs-actual differ for permission reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class PermissionDiff:
    to_add: frozenset[str]
    to_remove: frozenset[str]

    @property
    def in_sync(self) -> bool:
        return not self.to_add and not self.to_remove


def diff(desired: Iterable[str], actual: Iterable[str]) -> PermissionDiff:
    """
    Compare desired and actual principal sets.

    Identifiers are compared case-insensitively; callers map the lower-cased
    results back to display forms if needed.
    """
    desired_set = {d.lower() for d in desired}
    actual_set = {a.lower() for a in actual}
    return PermissionDiff(
        to_add=frozenset(desired_set - actual_set),
        to_remove=frozenset(actual_set - desired_set),
    )


def derive_resource_identity(group_name: str, prefix: str) -> Optional[str]:
    """
    Derive the shared-mailbox alias governed by a permission group.

    ``MBX-FullAccess-Sales@contoso.com`` with prefix ``MBX-FullAccess-``
    yields ``Sales``. The prefix match is case-insensitive; the domain suffix
    is everything from the last ``@``. Returns None when the name does not
    carry the prefix or nothing remains after stripping.
    """
    name = group_name.strip()
    if not prefix or not name.lower().startswith(prefix.lower()):
        return None
    remainder = name[len(prefix):]
    if "@" in remainder:
        remainder = remainder.rpartition("@")[0]
    remainder = remainder.strip()
    return remainder or None
