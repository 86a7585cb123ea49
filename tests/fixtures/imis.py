# tests/fixtures/imis.py
"""Builders for iMIS wire payloads, in both API generations."""

from typing import Any

from imigrate.imis.normalize import GENERIC_ENTITY_DATA_TYPE, GENERIC_PROPERTY_DATA_TYPE

PAGED_RESULT_TYPE = "Asi.Soa.Core.DataContracts.PagedResult, Asi.Contracts"


def token_payload(token: str = "tok-1", expires_in: int = 3600) -> dict[str, Any]:
    return {"access_token": token, "token_type": "bearer", "expires_in": expires_in}


def _paged(items: list[Any], *, offset: int, limit: int, total: int) -> dict[str, Any]:
    next_offset = offset + len(items)
    return {
        "$type": PAGED_RESULT_TYPE,
        "Items": {"$type": "System.Collections.Generic.List`1", "$values": items},
        "Offset": offset,
        "Limit": limit,
        "Count": len(items),
        "TotalCount": total,
        "HasNext": next_offset < total,
        "NextOffset": next_offset if next_offset < total else 0,
    }


def entity_row(values: dict[str, Any], entity_type: str = "CsContact") -> dict[str, Any]:
    """GenericEntityData with every value wrapped the way the 2017 API does."""
    properties = []
    for name, value in values.items():
        wrapped = {"$type": "System.Int32", "$value": value} if isinstance(value, int) and not isinstance(value, bool) else value
        properties.append({"$type": GENERIC_PROPERTY_DATA_TYPE, "Name": name, "Value": wrapped})
    return {
        "$type": GENERIC_ENTITY_DATA_TYPE,
        "EntityTypeName": entity_type,
        "Properties": {"$type": "Asi.Soa.Core.DataContracts.GenericPropertyDataCollection, Asi.Contracts", "$values": properties},
    }


def v1_query_page(rows: list[dict[str, Any]], *, offset: int = 0, limit: int = 500, total: int | None = None) -> dict[str, Any]:
    return _paged([entity_row(row) for row in rows], offset=offset, limit=limit, total=len(rows) if total is None else total)


def v2_query_page(rows: list[dict[str, Any]], *, offset: int = 0, limit: int = 500, total: int | None = None) -> dict[str, Any]:
    items = [{"$type": "System.Dynamic.ExpandoObject, System.Core", **row} for row in rows]
    return _paged(items, offset=offset, limit=limit, total=len(rows) if total is None else total)


def entity_page(rows: list[dict[str, Any]], *, offset: int = 0, limit: int = 500, total: int | None = None) -> dict[str, Any]:
    return v1_query_page(rows, offset=offset, limit=limit, total=total)


def property_definition(name: str, type_name: str = "String", *, identity: bool = False, required: bool = False) -> dict[str, Any]:
    return {
        "$type": "Asi.Soa.Core.DataContracts.PropertyDefinitionData, Asi.Contracts",
        "Name": name,
        "PropertyTypeName": type_name,
        "IsIdentity": identity,
        "Required": required,
    }


def entity_definition_payload(entity_type: str, properties: list[dict[str, Any]], description: str | None = None) -> dict[str, Any]:
    return {
        "$type": "Asi.Soa.Core.DataContracts.BOEntityDefinitionData, Asi.Contracts",
        "EntityTypeName": entity_type,
        "Description": description,
        "Properties": {"$type": "Asi.Soa.Core.DataContracts.PropertyDefinitionDataCollection, Asi.Contracts", "$values": properties},
    }


def insert_response(*identity: str, entity_type: str = "CsContact") -> dict[str, Any]:
    return {
        "$type": GENERIC_ENTITY_DATA_TYPE,
        "EntityTypeName": entity_type,
        "Identity": {
            "$type": "Asi.Soa.Core.DataContracts.IdentityData, Asi.Contracts",
            "EntityTypeName": entity_type,
            "IdentityElements": {"$type": "System.Collections.ObjectModel.Collection`1", "$values": list(identity)},
        },
    }


def query_definition_payload(path: str, columns: list[str], document_name: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "$type": "Asi.Soa.Core.DataContracts.QueryDefinitionData, Asi.Contracts",
        "Path": path,
        "Properties": {"$values": [{"Alias": column, "PropertyName": column} for column in columns]},
    }
    if document_name is not None:
        result["Document"] = {"Name": document_name}
    return {"$type": "Asi.Soa.Core.DataContracts.ServiceResponse, Asi.Contracts", "Result": result, "IsSuccessStatusCode": True}
