"""
Async Exchange Online admin client.

Invokes Exchange cmdlets through the admin REST ``InvokeCommand`` endpoint
used by the ExchangeOnlineManagement module. Reads are paged with
@odata.nextLink and backed off on throttling; writes are single calls and
are never retried here, the mutation executor owns their retry policy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    BACKOFF_MULTIPLIER,
    EXCHANGE_BASE_URL,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    MAX_PAGES_PER_ENDPOINT,
    MAX_RETRIES,
)
from ..graph.client import retry_after_seconds
from ..safety.guardian import READ_CMDLET_PATTERN, DryRunGuardian

logger = logging.getLogger("mailbox_reconciler.exchange")

# Routing hint required by the admin endpoint for app-only calls
ANCHOR_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"

THROTTLE_STATUS = (429, 503, 504)


class ExchangeCommandError(Exception):
    """Raised when an Exchange cmdlet returns an error."""
    def __init__(self, cmdlet: str, status_code: int, message: str):
        self.cmdlet = cmdlet
        self.status_code = status_code
        self.message = message
        super().__init__(f"{cmdlet} failed (HTTP {status_code}): {message}")


class ExchangeClient:
    """
    Exchange Online admin API client.

    One ``ExchangeClient`` is the explicit session for a run: the enumeration
    sources and the mutation executor all receive it, nothing is ambient.
    """

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        organization: str,
        guardian: DryRunGuardian,
        max_connections: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ):
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.organization = organization
        self.guardian = guardian
        self._max_connections = max(1, max_connections)
        self._transport = transport
        self._initial_backoff = initial_backoff
        self._command_count = 0
        self._write_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(300.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=self._max_connections * 2,
                max_keepalive_connections=self._max_connections,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-AnchorMailbox": f"UPN:{ANCHOR_MAILBOX}@{self.organization}",
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()

    @property
    def command_url(self) -> str:
        return f"{EXCHANGE_BASE_URL}/{self.tenant_id}/InvokeCommand"

    async def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list[dict]:
        """Invoke a cmdlet and return the first page of results."""
        self.guardian.validate_command(cmdlet)
        data = await self._post(self.command_url, cmdlet, parameters or {})
        if not cmdlet.lower().startswith("get-"):
            self._write_count += 1
        return data.get("value", [])

    async def invoke_stream(
        self,
        cmdlet: str,
        parameters: Optional[dict] = None,
    ) -> AsyncGenerator[dict, None]:
        """Stream every result of a read cmdlet, following @odata.nextLink."""
        self.guardian.validate_command(cmdlet)
        url: Optional[str] = self.command_url
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            data = await self._post(url, cmdlet, parameters or {})
            for item in data.get("value", []):
                yield item
            url = data.get("@odata.nextLink")
            pages += 1

        if pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(f"Pagination safety cap reached for {cmdlet}")

    async def _post(self, url: str, cmdlet: str, parameters: dict) -> dict:
        if not self._client:
            raise RuntimeError("ExchangeClient not initialized. Use 'async with' context.")

        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters}}
        is_read = bool(READ_CMDLET_PATTERN.match(cmdlet))
        backoff = self._initial_backoff
        logger.debug(f"InvokeCommand {cmdlet} {parameters}")

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._client.post(url, json=body)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if not is_read or attempt == MAX_RETRIES:
                    raise
                logger.warning(
                    f"{type(e).__name__} on {cmdlet}, attempt {attempt + 1}/{MAX_RETRIES}"
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue
            self._command_count += 1

            if 200 <= response.status_code < 300:
                if not response.content or not response.content.strip():
                    return {"value": []}
                return response.json()

            # Writes surface immediately so the executor can classify them
            if is_read and response.status_code in THROTTLE_STATUS and attempt < MAX_RETRIES:
                self._throttle_count += 1
                wait_time = max(retry_after_seconds(response, backoff), backoff)
                logger.warning(
                    f"Throttled ({response.status_code}) on {cmdlet}. "
                    f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                )
                await asyncio.sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            raise ExchangeCommandError(cmdlet, response.status_code, _error_message(response))

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_commands": self._command_count,
            "write_commands": self._write_count,
            "throttle_events": self._throttle_count,
        }


def _error_message(response: httpx.Response) -> str:
    """Extract the most specific message from an admin API error body."""
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        return response.text[:500]
    if not isinstance(body, dict):
        return response.text[:500]

    error = body.get("error", {})
    if not isinstance(error, dict):
        return str(error)
    details = error.get("details") or []
    for detail in details:
        if isinstance(detail, dict) and detail.get("message"):
            return f"{error.get('message', '')} {detail['message']}".strip()
    return error.get("message", response.text[:500])

