"""
Dry-Run Guardian — Enforces simulate mode at the transport layer.
Validates every outbound Graph request and Exchange cmdlet, blocks writes
while a dry run is active, and logs safety events.
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone

logger = logging.getLogger("mailbox_reconciler.safety")

# ─── Graph is consumed read-only ─────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}

# ─── Exchange cmdlet classification ─────────────────────────────────────────

READ_CMDLET_PATTERN = re.compile(r"^(Get|Test)-", re.IGNORECASE)

WRITE_CMDLET_PATTERNS = [
    re.compile(r"^Set-", re.IGNORECASE),
    re.compile(r"^Enable-", re.IGNORECASE),
    re.compile(r"^Disable-", re.IGNORECASE),
    re.compile(r"^Add-", re.IGNORECASE),
    re.compile(r"^Remove-", re.IGNORECASE),
    re.compile(r"^New-", re.IGNORECASE),
    re.compile(r"^Start-", re.IGNORECASE),
]


class SafetyViolation(Exception):
    """Raised when a state-changing call is attempted that is not allowed."""
    pass


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class DryRunGuardian:
    """
    Validates every outbound call before it reaches the tenant.

    Graph requests must always be read-only. Exchange write cmdlets are
    allowed only when the guardian was created with ``dry_run=False``.
    """

    def __init__(self, dry_run: bool = True):
        self.dry_run = dry_run
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.writes_allowed: int = 0
        self.started_at: str = _utcnow()

    def validate_request(self, method: str, url: str) -> bool:
        """Validate a directory (Graph) request. Only reads are permitted."""
        self.checks_performed += 1
        method_upper = method.upper()
        if method_upper in READ_METHODS:
            return True
        self._record_violation(method_upper, url, "Directory source is read-only")
        raise SafetyViolation(
            f"SAFETY VIOLATION: Write method blocked on directory source: {method_upper} {url}"
        )

    def validate_command(self, cmdlet: str) -> bool:
        """
        Validate an Exchange cmdlet.
        Returns True if allowed, raises SafetyViolation if not.
        """
        self.checks_performed += 1

        if READ_CMDLET_PATTERN.match(cmdlet):
            return True

        is_write = any(p.match(cmdlet) for p in WRITE_CMDLET_PATTERNS)
        if not is_write:
            self._record_violation("INVOKE", cmdlet, "Unclassified cmdlet blocked")
            raise SafetyViolation(f"SAFETY VIOLATION: Unclassified cmdlet blocked: {cmdlet}")

        if self.dry_run:
            self._record_violation("INVOKE", cmdlet, "Write cmdlet blocked in dry-run")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write cmdlet blocked while dry-run is active: {cmdlet}"
            )

        self.writes_allowed += 1
        return True

    def _record_violation(self, method: str, target: str, reason: str):
        """Record a safety violation for audit."""
        self.violations.append({
            "timestamp": _utcnow(),
            "method": method,
            "target": target,
            "reason": reason,
        })
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {target}")

    def get_audit_record(self) -> dict:
        """Return the full safety audit record."""
        return {
            "guardian": {
                "mode": "DRY-RUN" if self.dry_run else "APPLY",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "writes_allowed": self.writes_allowed,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }

    def print_banner(self):
        """Print the run-mode banner."""
        if self.dry_run:
            lines = [
                "  DRY-RUN — NO CHANGES WILL BE MADE",
                "  * Reference data and mailbox state are read normally",
                "  * Every mutation is logged as [DRY-RUN] instead of being sent",
                "  * Re-run with --no-dry-run to apply",
            ]
        else:
            lines = [
                "  APPLY MODE — MAILBOXES WILL BE MODIFIED",
                "  * Retention policies, archives and permissions are written",
            ]
        try:
            print("═" * 75)
            for line in lines:
                print(line)
            print("═" * 75)
        except UnicodeEncodeError:
            sys.stdout.write("=" * 75 + "\n" + "\n".join(lines) + "\n" + "=" * 75 + "\n")
