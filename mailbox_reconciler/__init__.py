"""
Mailbox Reconciler
==================
Bulk compliance and permission reconciliation for Exchange Online.

  * compliance  — assign a retention policy and enable the online archive
                  on every eligible mailbox
  * permissions — make FullAccess grants on shared mailboxes match the
                  members of their naming-convention groups

Runs are DRY-RUN by default. Nothing is written until --no-dry-run is given.
"""

__version__ = "1.0.0"
__author__ = "Mailbox Reconciler"
