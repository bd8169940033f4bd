"""Tests for the dry-run guardian."""

import pytest

from mailbox_reconciler.safety.guardian import DryRunGuardian, SafetyViolation


def test_reads_always_allowed():
    guardian = DryRunGuardian()
    assert guardian.validate_command("Get-Mailbox")
    assert guardian.validate_command("get-mailboxpermission")
    assert guardian.validate_request("GET", "https://graph.microsoft.com/v1.0/users")
    assert guardian.violations == []


@pytest.mark.parametrize("cmdlet", [
    "Set-Mailbox", "Enable-Mailbox", "Add-MailboxPermission", "Remove-MailboxPermission",
])
def test_writes_blocked_in_dry_run(cmdlet):
    guardian = DryRunGuardian(dry_run=True)
    with pytest.raises(SafetyViolation):
        guardian.validate_command(cmdlet)
    assert guardian.get_audit_record()["guardian"]["status"] == "VIOLATIONS_DETECTED"


def test_writes_allowed_when_applying():
    guardian = DryRunGuardian(dry_run=False)
    assert guardian.validate_command("Set-Mailbox")
    record = guardian.get_audit_record()["guardian"]
    assert record["mode"] == "APPLY"
    assert record["writes_allowed"] == 1
    assert record["status"] == "CLEAN"


def test_unclassified_cmdlet_blocked_even_when_applying():
    with pytest.raises(SafetyViolation):
        DryRunGuardian(dry_run=False).validate_command("Invoke-Something")


def test_directory_writes_always_blocked():
    with pytest.raises(SafetyViolation):
        DryRunGuardian(dry_run=False).validate_request("PATCH", "https://graph.microsoft.com/v1.0/users/x")
