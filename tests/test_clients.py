"""Transport-level tests for the Graph and Exchange clients using httpx.MockTransport."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from mailbox_reconciler.config import MAX_RETRIES
from mailbox_reconciler.exchange.client import ExchangeClient, ExchangeCommandError
from mailbox_reconciler.graph.client import GraphAPIError, GraphClient, retry_after_seconds
from mailbox_reconciler.safety.guardian import DryRunGuardian, SafetyViolation

TENANT = "contoso.onmicrosoft.com"


def exchange_client(handler, dry_run=True):
    return ExchangeClient(
        "token", TENANT, TENANT, DryRunGuardian(dry_run=dry_run),
        transport=httpx.MockTransport(handler), initial_backoff=0,
    )


class TestExchangeClient:
    def test_stream_follows_next_link(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            if "page=2" in str(request.url):
                return httpx.Response(200, json={"value": [{"UserPrincipalName": "b@x"}]})
            return httpx.Response(200, json={
                "value": [{"UserPrincipalName": "a@x"}],
                "@odata.nextLink": f"https://outlook.office365.com/adminapi/beta/{TENANT}/InvokeCommand?page=2",
            })

        async def run():
            async with exchange_client(handler) as client:
                return [r async for r in client.invoke_stream("Get-Mailbox", {"ResultSize": "Unlimited"})]

        records = asyncio.run(run())

        assert [r["UserPrincipalName"] for r in records] == ["a@x", "b@x"]
        assert bodies[0] == {
            "CmdletInput": {"CmdletName": "Get-Mailbox", "Parameters": {"ResultSize": "Unlimited"}}
        }

    def test_error_body_becomes_command_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": {
                "code": "BadRequest",
                "message": "Error executing cmdlet",
                "details": [{"message": "Couldn't find object \"ghost@x\"."}],
            }})

        async def run():
            async with exchange_client(handler, dry_run=False) as client:
                await client.invoke("Set-Mailbox", {"Identity": "ghost@x", "RetentionPolicy": "Default"})

        with pytest.raises(ExchangeCommandError) as exc:
            asyncio.run(run())
        assert exc.value.status_code == 400
        assert "Couldn't find object" in str(exc.value)

    def test_dry_run_write_never_leaves_the_process(self):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"value": []})

        async def run():
            async with exchange_client(handler, dry_run=True) as client:
                await client.invoke("Enable-Mailbox", {"Identity": "a@x", "Archive": True})

        with pytest.raises(SafetyViolation):
            asyncio.run(run())
        assert sent == []

    def test_write_counted_when_applying(self):
        def handler(request):
            return httpx.Response(200, content=b"")

        async def run():
            async with exchange_client(handler, dry_run=False) as client:
                result = await client.invoke("Set-Mailbox", {"Identity": "a@x", "RetentionPolicy": "P"})
                return result, client.get_stats()

        result, stats = asyncio.run(run())
        assert result == []
        assert stats == {"total_commands": 1, "write_commands": 1, "throttle_events": 0}

    def test_throttled_read_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"value": [{"UserPrincipalName": "a@x"}]})

        async def run():
            async with exchange_client(handler) as client:
                records = [r async for r in client.invoke_stream("Get-Mailbox")]
                return records, client.get_stats()

        records, stats = asyncio.run(run())

        assert [r["UserPrincipalName"] for r in records] == ["a@x"]
        assert len(calls) == 2
        assert stats["throttle_events"] == 1

    def test_read_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="Service Unavailable")

        async def run():
            async with exchange_client(handler) as client:
                return [r async for r in client.invoke_stream("Get-MailboxPermission", {"Identity": "s@x"})]

        with pytest.raises(ExchangeCommandError) as exc:
            asyncio.run(run())
        assert exc.value.status_code == 503
        assert len(calls) == MAX_RETRIES + 1

    def test_throttled_write_is_left_to_the_executor(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "0"})

        async def run():
            async with exchange_client(handler, dry_run=False) as client:
                await client.invoke("Add-MailboxPermission", {"Identity": "s@x", "User": "a@x"})

        with pytest.raises(ExchangeCommandError) as exc:
            asyncio.run(run())
        assert exc.value.status_code == 429
        assert len(calls) == 1


class TestGraphClient:
    def test_pagination_and_page_size(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            if request.url.params.get("$skiptoken"):
                return httpx.Response(200, json={"value": [{"id": "2"}]})
            return httpx.Response(200, json={
                "value": [{"id": "1"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=abc",
            })

        async def run():
            async with GraphClient("token", DryRunGuardian(), transport=httpx.MockTransport(handler)) as graph:
                return await graph.get_all_pages("users", params={"$select": "id"})

        items = asyncio.run(run())

        assert [i["id"] for i in items] == ["1", "2"]
        assert seen[0].params["$top"] == "999"
        assert len(seen) == 2

    def test_throttle_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"value": [{"id": "1"}]})

        async def run():
            async with GraphClient(
                "token", DryRunGuardian(), transport=httpx.MockTransport(handler), initial_backoff=0
            ) as graph:
                return await graph.get_all_pages("subscribedSkus")

        assert len(asyncio.run(run())) == 1
        assert len(calls) == 2

    def test_not_found_raises(self):
        def handler(request):
            return httpx.Response(404, json={"error": {"message": "Resource not found"}})

        async def run():
            async with GraphClient("token", DryRunGuardian(), transport=httpx.MockTransport(handler)) as graph:
                await graph.get("groups/missing")

        with pytest.raises(GraphAPIError) as exc:
            asyncio.run(run())
        assert exc.value.status_code == 404

    def test_http_date_retry_after_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
            return httpx.Response(200, json={"value": [{"id": "1"}]})

        async def run():
            async with GraphClient(
                "token", DryRunGuardian(), transport=httpx.MockTransport(handler), initial_backoff=0
            ) as graph:
                return await graph.get_all_pages("subscribedSkus")

        assert len(asyncio.run(run())) == 1
        assert len(calls) == 2


class TestRetryAfter:
    def test_delta_seconds(self):
        assert retry_after_seconds(httpx.Response(429, headers={"Retry-After": "7"}), 1.0) == 7.0

    def test_past_http_date_waits_nothing(self):
        response = httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
        assert retry_after_seconds(response, 1.0) == 0.0

    def test_future_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=120)
        response = httpx.Response(429, headers={"Retry-After": format_datetime(when, usegmt=True)})
        assert 100 < retry_after_seconds(response, 1.0) <= 120

    @pytest.mark.parametrize("value", ["", "soon", "-"])
    def test_missing_or_garbage_falls_back(self, value):
        assert retry_after_seconds(httpx.Response(429, headers={"Retry-After": value}), 4.0) == 4.0
