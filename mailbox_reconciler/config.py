"""
Configuration module for the Mailbox Reconciler.
Defines all tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (interactive) authentication configuration."""
    tenant_id: str
    client_id: str

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    organization: str = ""     # Primary tenant domain, e.g. contoso.onmicrosoft.com
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None

    @property
    def tenant_id(self) -> str:
        if self.mode == "delegated" and self.delegated:
            return self.delegated.tenant_id
        if self.certificate:
            return self.certificate.tenant_id
        return ""


# ─── Endpoints & Scopes ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

EXCHANGE_BASE_URL = "https://outlook.office365.com/adminapi/beta"
EXCHANGE_SCOPES = ["https://outlook.office365.com/.default"]

# Read requests to Graph
MAX_CONCURRENT_REQUESTS = 4
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 120.0
BACKOFF_MULTIPLIER = 2.0

# Pagination
DEFAULT_PAGE_SIZE = 999
MAX_PAGES_PER_ENDPOINT = 10000


# ─── Reconciliation Settings ────────────────────────────────────────────────

DEFAULT_EXEMPT_GROUP = "Archive-Exempt"
DEFAULT_GROUP_PREFIX = "MBX-FullAccess-"
DEFAULT_POLICY_NAME = "Default MRM Policy"

DEFAULT_CONCURRENCY = 1
DEFAULT_PARALLEL_THROTTLE = 10
BATCH_SIZE = 100
PROGRESS_INTERVAL = 500

# Mutation retry policy
MAX_MUTATION_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 2.0

# Matched case-insensitively against the Exchange error message
TRANSIENT_ERROR_PATTERNS = [
    r"server side error",
    r"try again after some time",
    r"throttl",
    r"temporarily unavailable",
    r"HTTP (429|500|502|503|504)\b",
]

# SKU part numbers accepted as a mailbox entitlement
ACCEPTED_SKUS = frozenset({
    "ENTERPRISEPACK",          # Office 365 E3
    "ENTERPRISEPREMIUM",       # Office 365 E5
    "SPE_E3",                  # Microsoft 365 E3
    "SPE_E5",                  # Microsoft 365 E5
    "EXCHANGEENTERPRISE",      # Exchange Online (Plan 2)
    "EXCHANGEARCHIVE",         # Exchange Online Archiving for Exchange Server
})

# Shared mailbox plan rules
FULL_PLAN_SKU = "EXCHANGEENTERPRISE"
BASE_PLAN_SKU = "EXCHANGESTANDARD"
ARCHIVE_ADDON_SKU = "EXCHANGEARCHIVE_ADDON"

INDIVIDUAL_RECIPIENT_TYPES = frozenset({"UserMailbox"})
SHARED_RECIPIENT_TYPES = frozenset({"SharedMailbox", "RoomMailbox", "EquipmentMailbox"})


@dataclass
class LicenseRules:
    """SKU tables consulted by the eligibility evaluator."""
    accepted_skus: frozenset[str] = ACCEPTED_SKUS
    full_plan_sku: str = FULL_PLAN_SKU
    base_plan_sku: str = BASE_PLAN_SKU
    archive_addon_sku: str = ARCHIVE_ADDON_SKU

    def __post_init__(self):
        self.accepted_skus = frozenset(s.upper() for s in self.accepted_skus)
        self.full_plan_sku = self.full_plan_sku.upper()
        self.base_plan_sku = self.base_plan_sku.upper()
        self.archive_addon_sku = self.archive_addon_sku.upper()


@dataclass
class ReconcileConfig:
    """Controls for the reconciliation run."""
    policy_name: str = DEFAULT_POLICY_NAME
    exempt_group: str = DEFAULT_EXEMPT_GROUP
    group_prefix: str = DEFAULT_GROUP_PREFIX
    dry_run: bool = True
    concurrency: int = DEFAULT_CONCURRENCY
    batch_size: int = BATCH_SIZE
    progress_interval: int = PROGRESS_INTERVAL
    max_attempts: int = MAX_MUTATION_ATTEMPTS
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    archive_requires_policy: bool = True   # Skip archive when policy assignment failed
    transient_patterns: list[str] = field(
        default_factory=lambda: list(TRANSIENT_ERROR_PATTERNS)
    )
    license_rules: LicenseRules = field(default_factory=LicenseRules)


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=lambda: ["json", "csv", "markdown"])

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "mailbox_reconcile_output")

    @property
    def run_dir(self) -> Path:
        return Path(self.base_dir)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class EngineConfig:
    """Top-level configuration for the entire engine."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            config.auth.organization = auth_data.get("organization", "")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                    thumbprint=c.get("thumbprint", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        if "reconcile" in data:
            for k, v in data["reconcile"].items():
                if k == "license_rules":
                    config.reconcile.license_rules = LicenseRules(
                        accepted_skus=frozenset(v.get("accepted_skus", ACCEPTED_SKUS)),
                        full_plan_sku=v.get("full_plan_sku", FULL_PLAN_SKU),
                        base_plan_sku=v.get("base_plan_sku", BASE_PLAN_SKU),
                        archive_addon_sku=v.get("archive_addon_sku", ARCHIVE_ADDON_SKU),
                    )
                elif hasattr(config.reconcile, k):
                    setattr(config.reconcile, k, v)
        if "output" in data:
            for k, v in data["output"].items():
                if hasattr(config.output, k):
                    setattr(config.output, k, v)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required API Permissions ───────────────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Microsoft Graph (read-only reference data)
    "Organization.Read.All": "Read subscribed SKUs for license-id to name resolution",
    "User.Read.All": "Read assigned licenses for every principal",
    "GroupMember.Read.All": "Read exemption and permission group membership",

    # Exchange Online
    "Exchange.ManageAsApp": "Invoke Exchange cmdlets (Get-/Set-Mailbox, mailbox permissions)",
}
