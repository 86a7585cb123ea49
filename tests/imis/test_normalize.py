# tests/imis/test_normalize.py
"""Tests for folding both API generations into canonical shapes."""

import pytest

from imigrate.contracts import BINARY_BLOB_TYPE, ApiVersion, SchemaMismatchError
from imigrate.imis.normalize import (
    build_entity_body,
    display_name_from_path,
    normalize_entity_definition,
    normalize_entity_page,
    normalize_query_definition,
    normalize_query_page,
    unwrap_value,
)
from tests.fixtures.imis import (
    entity_definition_payload,
    property_definition,
    query_definition_payload,
    v1_query_page,
    v2_query_page,
)


class TestUnwrapValue:
    def test_typed_envelope(self) -> None:
        assert unwrap_value({"$type": "System.Int32", "$value": 42}) == 42

    def test_nested_envelopes(self) -> None:
        assert unwrap_value({"$type": "System.Object", "$value": {"$type": "System.String", "$value": "x"}}) == "x"

    def test_binary_blob_passes_through(self) -> None:
        blob = {"$type": BINARY_BLOB_TYPE, "$value": "AAEC"}
        assert unwrap_value(blob) is blob

    @pytest.mark.parametrize("value", [None, "plain", 3.5, True, [1, 2], {"Name": "no envelope"}])
    def test_plain_values_unchanged(self, value: object) -> None:
        assert unwrap_value(value) == value


class TestQueryPage:
    def test_v1_rows_flattened_and_unwrapped(self) -> None:
        payload = v1_query_page([{"ID": 7, "Name": "Ada"}], total=9)

        page = normalize_query_page(ApiVersion.V1, payload, "GET /api/iqa")

        assert page.rows == [{"ID": 7, "Name": "Ada"}]
        assert page.total_count == 9
        assert page.has_next

    def test_v2_rows_drop_metadata_keys(self) -> None:
        payload = v2_query_page([{"ID": 7, "Amount": {"$type": "System.Decimal", "$value": 1.5}}])

        page = normalize_query_page(ApiVersion.V2, payload, "GET /api/iqa")

        assert page.rows == [{"ID": 7, "Amount": 1.5}]
        assert not page.has_next

    def test_both_generations_agree(self) -> None:
        rows = [{"ID": 1, "Email": "a@example.org"}, {"ID": 2, "Email": None}]

        v1 = normalize_query_page(ApiVersion.V1, v1_query_page(rows), "GET /api/iqa")
        v2 = normalize_query_page(ApiVersion.V2, v2_query_page(rows), "GET /api/iqa")

        assert v1.rows == v2.rows == rows

    def test_v1_binary_column_kept_as_envelope(self) -> None:
        blob = {"$type": BINARY_BLOB_TYPE, "$value": "iVBORw0KGgo="}
        payload = v1_query_page([{"Photo": blob}])

        page = normalize_query_page(ApiVersion.V1, payload, "GET /api/iqa")

        assert page.rows == [{"Photo": blob}]

    def test_v2_non_object_row_rejected(self) -> None:
        payload = v2_query_page([])
        payload["Items"]["$values"] = ["not a row"]

        with pytest.raises(SchemaMismatchError, match="row is str"):
            normalize_query_page(ApiVersion.V2, payload, "GET /api/iqa")

    def test_v1_row_without_properties_rejected(self) -> None:
        payload = v1_query_page([])
        payload["Items"]["$values"] = [{"EntityTypeName": "CsContact"}]

        with pytest.raises(SchemaMismatchError) as exc_info:
            normalize_query_page(ApiVersion.V1, payload, "GET /api/iqa")

        assert "Properties" in exc_info.value.diagnostic

    def test_missing_total_count_rejected(self) -> None:
        payload = v2_query_page([{"ID": 1}])
        del payload["TotalCount"]

        with pytest.raises(SchemaMismatchError, match="TotalCount"):
            normalize_query_page(ApiVersion.V2, payload, "GET /api/iqa")


class TestEntityPage:
    def test_entity_rows(self) -> None:
        page = normalize_entity_page(v1_query_page([{"PartyId": 3, "FullName": "Ada"}]), "GET /api/Party")

        assert page.rows == [{"PartyId": 3, "FullName": "Ada"}]


class TestDefinitions:
    def test_entity_definition(self) -> None:
        payload = entity_definition_payload(
            "CsContact",
            [
                property_definition("ContactId", "Integer", identity=True),
                property_definition("Email", required=True),
                property_definition("Shape", "Geography"),
            ],
        )

        definition = normalize_entity_definition(payload, "GET /api/BoEntityDefinition/CsContact")

        assert definition.entity_type == "CsContact"
        assert definition.identity_field_names == ["ContactId"]
        assert definition.property_names == {"ContactId", "Email", "Shape"}
        unknown = definition.properties[2]
        assert unknown.property_type is None

    def test_nested_property_type(self) -> None:
        prop = property_definition("Notes")
        del prop["PropertyTypeName"]
        prop["PropertyType"] = {"PropertyTypeName": "String", "MaxLength": 400}

        definition = normalize_entity_definition(entity_definition_payload("CsContact", [prop]), "GET x")

        assert definition.properties[0].max_length == 400
        assert definition.properties[0].property_type == "String"

    def test_query_definition_uses_document_name(self) -> None:
        payload = query_definition_payload("$/Migration/AllContacts", ["ID"], document_name="All contacts (migration)")

        query = normalize_query_definition(payload, "POST x")

        assert query is not None
        assert query.name == "All contacts (migration)"

    def test_query_definition_name_synthesized_from_path(self) -> None:
        query = normalize_query_definition(query_definition_payload("$/Migration/AllContacts", ["ID", "Email"]), "POST x")

        assert query is not None
        assert query.name == "AllContacts"
        assert query.properties == ["ID", "Email"]

    def test_query_definition_failure_reported(self) -> None:
        with pytest.raises(SchemaMismatchError, match="Access denied"):
            normalize_query_definition({"IsSuccessStatusCode": False, "Message": "Access denied"}, "POST x")

    @pytest.mark.parametrize(
        ("path", "expected"),
        [("$/Contacts/Active Members", "Active Members"), ("$/Contacts/Active/", "Active"), ("Single", "Single")],
    )
    def test_display_name_from_path(self, path: str, expected: str) -> None:
        assert display_name_from_path(path) == expected


class TestEntityBody:
    def test_generic_entity_data(self) -> None:
        body = build_entity_body("CsContact", {"Email": "a@example.org"})

        assert body["EntityTypeName"] == "CsContact"
        assert body["PrimaryParentEntityTypeName"] == "Standalone"
        assert [(p["Name"], p["Value"]) for p in body["Properties"]["$values"]] == [("Email", "a@example.org")]
