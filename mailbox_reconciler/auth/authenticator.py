"""
Authentication module — certificate-based app-only or delegated device-code auth.
Uses MSAL to obtain one token for Microsoft Graph and one for Exchange Online.
"""

from __future__ import annotations

import asyncio
import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
import msal

from ..config import AuthConfig, EXCHANGE_SCOPES, GRAPH_SCOPES, REQUIRED_PERMISSIONS

logger = logging.getLogger("mailbox_reconciler.auth")


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def load_pfx_credential(cert_path: str, password: str) -> dict:
    """
    Read a base64-encoded PFX and return the MSAL client credential
    (thumbprint + PEM private key).
    """
    try:
        with open(cert_path, "r", encoding="utf-8") as f:
            cert_bytes = base64.b64decode(f.read().strip())
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password.encode("utf-8") if password else None
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_path}")
    except (ValueError, TypeError) as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError(f"Certificate bundle {cert_path} has no key or certificate.")

    thumbprint = certificate.fingerprint(SHA1()).hex()
    logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")
    return {
        "thumbprint": thumbprint,
        "private_key": private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8"),
    }


class Authenticator:
    """
    Handles MSAL-based authentication.
    Supports:
      - Certificate-based app-only authentication (required for unattended runs)
      - Delegated interactive authentication (device code flow)
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._app: Optional[msal.ClientApplication] = None
        self._account: Optional[dict] = None

    async def acquire_tokens(self) -> tuple[str, str]:
        """
        Return (graph_token, exchange_token).

        MSAL and the password prompt block, so both run on a worker thread.
        """
        graph_token = await asyncio.to_thread(self.acquire_token, GRAPH_SCOPES)
        exchange_token = await asyncio.to_thread(self.acquire_token, EXCHANGE_SCOPES)
        return graph_token, exchange_token

    def acquire_token(self, scopes: list[str]) -> str:
        if self.config.mode == "certificate":
            return self._acquire_certificate_token(scopes)
        elif self.config.mode == "delegated":
            return self._acquire_delegated_token(scopes)
        raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

    def _acquire_certificate_token(self, scopes: list[str]) -> str:
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        if self._app is None:
            logger.info("Authenticating with certificate-based app credentials...")
            password = (
                cert_config.certificate_password
                or os.environ.get("M365_CERT_PASSWORD", "")
                or getpass.getpass("Enter the certificate password: ")
            )
            self._app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=f"https://login.microsoftonline.com/{cert_config.tenant_id}",
                client_credential=load_pfx_credential(cert_config.certificate_path, password),
            )

        result = self._app.acquire_token_for_client(scopes=scopes)
        return self._extract(result, scopes)

    def _acquire_delegated_token(self, scopes: list[str]) -> str:
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=deleg_config.client_id,
                authority=f"https://login.microsoftonline.com/{deleg_config.tenant_id}",
            )

        # Second resource reuses the signed-in account
        if self._account is not None:
            result = self._app.acquire_token_silent(scopes, account=self._account)
            if result:
                return self._extract(result, scopes)

        logger.info("Initiating device code authentication flow...")
        flow = self._app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = self._app.acquire_token_by_device_flow(flow)
        accounts = self._app.get_accounts()
        if accounts:
            self._account = accounts[0]
        return self._extract(result, scopes)

    @staticmethod
    def _extract(result: Optional[dict], scopes: list[str]) -> str:
        if result and "access_token" in result:
            logger.info(f"Token acquired for {scopes[0]}")
            return result["access_token"]
        result = result or {}
        error = result.get("error_description", result.get("error", "Unknown"))
        raise AuthenticationError(f"Token acquisition failed for {scopes[0]}: {error}")

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required API permissions."""
        return REQUIRED_PERMISSIONS
