"""Tests for the reference data loader."""

import asyncio

import pytest

from mailbox_reconciler.graph.client import GraphAPIError
from mailbox_reconciler.reference.cache import FetchError, ReferenceDataLoader

from conftest import (
    EXEMPT_GROUP_ID,
    SKU_E3,
    SKU_KIOSK,
    FakeGraph,
    compliance_graph,
    permission_graph,
)


class TestComplianceLoad:
    def test_licenses_and_exempt_set_are_normalized(self):
        graph = compliance_graph(
            {"Alice@Contoso.com": [SKU_E3], "kiosk@contoso.com": [SKU_KIOSK.upper()], "nolicense@contoso.com": []},
            exempt_members=["Bob@Contoso.com"],
        )
        ref = asyncio.run(ReferenceDataLoader(graph).load_compliance("Archive-Exempt"))

        assert ref.licenses_for("alice@contoso.com") == {"ENTERPRISEPACK"}
        assert ref.licenses_for("KIOSK@contoso.com") == {"EXCHANGEDESKLESS"}
        assert ref.licenses_for("nolicense@contoso.com") == frozenset()
        assert ref.is_exempt("bob@contoso.com")
        assert ref.sku_names[SKU_E3] == "ENTERPRISEPACK"

    def test_unknown_sku_kept_by_id(self):
        graph = compliance_graph({"a@contoso.com": ["deadbeef-0000-0000-0000-000000000000"]}, [])
        ref = asyncio.run(ReferenceDataLoader(graph).load_compliance("Archive-Exempt"))
        assert ref.licenses_for("a@contoso.com") == {"DEADBEEF-0000-0000-0000-000000000000"}

    def test_reference_data_is_read_only(self):
        ref = asyncio.run(ReferenceDataLoader(compliance_graph({}, [])).load_compliance("Archive-Exempt"))
        with pytest.raises(TypeError):
            ref.licenses["x"] = frozenset()

    def test_group_by_object_id(self):
        graph = compliance_graph({}, ["a@contoso.com"])
        graph.routes[f"groups/{EXEMPT_GROUP_ID}"] = {"id": EXEMPT_GROUP_ID, "displayName": "Archive-Exempt"}
        ref = asyncio.run(ReferenceDataLoader(graph).load_compliance(EXEMPT_GROUP_ID))
        assert ref.exempt == {"a@contoso.com"}

    def test_missing_exempt_group_is_fatal(self):
        graph = compliance_graph({}, [])
        with pytest.raises(FetchError, match="not found"):
            asyncio.run(ReferenceDataLoader(graph).load_compliance("No-Such-Group"))

    def test_ambiguous_exempt_group_is_fatal(self):
        graph = compliance_graph({}, [])
        graph.routes["groups"] = [{"id": "1"}, {"id": "2"}]
        with pytest.raises(FetchError, match="ambiguous"):
            asyncio.run(ReferenceDataLoader(graph).load_compliance("Archive-Exempt"))

    def test_directory_error_is_fatal(self):
        graph = FakeGraph({"subscribedSkus": GraphAPIError(403, "Insufficient privileges", "subscribedSkus")})
        with pytest.raises(FetchError, match="Insufficient privileges"):
            asyncio.run(ReferenceDataLoader(graph).load_compliance("Archive-Exempt"))

    def test_quotes_in_group_name_are_escaped(self):
        graph = compliance_graph({}, [], exempt_group="O''Brien")
        asyncio.run(ReferenceDataLoader(graph).load_compliance("O'Brien"))
        filters = [p["$filter"] for e, p in graph.requests if e == "groups"]
        assert filters == ["displayName eq 'O''Brien' or mail eq 'O''Brien'"]


class TestPermissionLoad:
    def test_groups_keyed_by_derived_identity(self):
        graph = permission_graph({
            "MBX-FullAccess-Sales": ["Alice@contoso.com"],
            "MBX-FullAccess-Finance@contoso.com": [],
            "Unrelated": ["x@contoso.com"],
        })
        ref = asyncio.run(ReferenceDataLoader(graph).load_permissions("MBX-FullAccess-"))

        assert set(ref.permission_groups) == {"sales", "finance"}
        assert ref.group_for("SALES").members == {"alice@contoso.com"}
        assert ref.group_for("Finance").members == frozenset()

    def test_groups_for_same_mailbox_are_merged(self):
        graph = permission_graph({
            "MBX-FullAccess-Sales": ["a@contoso.com"],
            "mbx-fullaccess-sales@contoso.com": ["b@contoso.com"],
        })
        ref = asyncio.run(ReferenceDataLoader(graph).load_permissions("MBX-FullAccess-"))

        assert len(ref.permission_groups) == 1
        group = ref.group_for("sales")
        assert group.name == "MBX-FullAccess-Sales"
        assert group.members == {"a@contoso.com", "b@contoso.com"}

    def test_empty_prefix_is_rejected(self):
        with pytest.raises(FetchError):
            asyncio.run(ReferenceDataLoader(FakeGraph()).load_permissions(""))
