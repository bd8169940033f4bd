from .mailboxes import MailboxSource, PermissionTargetSource

__all__ = ["MailboxSource", "PermissionTargetSource"]
