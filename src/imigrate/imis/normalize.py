# src/imigrate/imis/normalize.py
"""Response normalization across the two iMIS API generations.

Wire envelopes are validated with pydantic models and then folded into the
canonical shapes in ``imigrate.contracts.imis``. A payload that fails
validation raises SchemaMismatchError naming the endpoint, so a shape
change on the server is reported where it happens instead of as a
KeyError deep inside the orchestrator.

The two generations differ in:

- IQA rows: V2 returns flat ``{alias: value}`` objects; V1 returns
  GenericEntityData with ``Properties.$values`` of ``{Name, Value}``.
- Values: V1 wraps many values as ``{"$type": "System.Int32", "$value": 1}``.
- Query definitions: V1 omits ``Document``, so there is no display name.
"""

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from imigrate.contracts import (
    ApiVersion,
    DataSource,
    DestinationDefinition,
    DestinationProperty,
    Page,
    PropertyType,
    QueryDefinition,
    SchemaMismatchError,
    is_binary_blob,
)

M = TypeVar("M", bound=BaseModel)

GENERIC_ENTITY_DATA_TYPE = "Asi.Soa.Core.DataContracts.GenericEntityData, Asi.Contracts"
GENERIC_PROPERTY_DATA_TYPE = "Asi.Soa.Core.DataContracts.GenericPropertyData, Asi.Contracts"
GENERIC_PROPERTY_COLLECTION_TYPE = "Asi.Soa.Core.DataContracts.GenericPropertyDataCollection, Asi.Contracts"


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SoaCollection(_Envelope):
    """``{"$type": "...", "$values": [...]}``"""

    entries: list[Any] = Field(alias="$values")


class QueryResponse(_Envelope):
    """Paged response shared by IQA, business-object and definition listings."""

    items: SoaCollection = Field(alias="Items")
    offset: int = Field(alias="Offset")
    limit: int = Field(alias="Limit")
    count: int = Field(alias="Count")
    total_count: int = Field(alias="TotalCount")
    has_next: bool = Field(alias="HasNext")
    next_offset: int | None = Field(default=None, alias="NextOffset")


class GenericPropertyData(_Envelope):
    name: str = Field(alias="Name")
    # Absent on V1 when the column is empty; distinct from an explicit null
    value: Any = Field(default=None, alias="Value")


class GenericEntityRow(_Envelope):
    entity_type_name: str | None = Field(default=None, alias="EntityTypeName")
    properties: SoaCollection = Field(alias="Properties")


class IdentityData(_Envelope):
    identity_elements: SoaCollection | None = Field(default=None, alias="IdentityElements")


class InsertResponse(_Envelope):
    identity: IdentityData | None = Field(default=None, alias="Identity")


class TokenResponse(_Envelope):
    access_token: str = Field(min_length=1)
    token_type: str = "bearer"
    expires_in: int = Field(gt=0)


class PropertyTypeData(_Envelope):
    property_type_name: str | None = Field(default=None, alias="PropertyTypeName")
    max_length: int | None = Field(default=None, alias="MaxLength")


class PropertyDefinition(_Envelope):
    name: str = Field(alias="Name")
    property_type_name: str | None = Field(default=None, alias="PropertyTypeName")
    property_type: PropertyTypeData | None = Field(default=None, alias="PropertyType")
    max_length: int | None = Field(default=None, alias="MaxLength")
    is_identity: bool = Field(default=False, alias="IsIdentity")
    required: bool = Field(default=False, alias="Required")


class EntityDefinition(_Envelope):
    entity_type_name: str = Field(alias="EntityTypeName")
    description: str | None = Field(default=None, alias="Description")
    properties: SoaCollection | None = Field(default=None, alias="Properties")


class DocumentData(_Envelope):
    name: str | None = Field(default=None, alias="Name")


class QueryPropertyData(_Envelope):
    alias: str | None = Field(default=None, alias="Alias")
    property_name: str | None = Field(default=None, alias="PropertyName")
    name: str | None = Field(default=None, alias="Name")


class QueryDefinitionData(_Envelope):
    path: str = Field(alias="Path")
    document: DocumentData | None = Field(default=None, alias="Document")
    properties: SoaCollection | None = Field(default=None, alias="Properties")


class ExecuteResult(_Envelope):
    result: Any = Field(default=None, alias="Result")
    is_success_status_code: bool = Field(default=True, alias="IsSuccessStatusCode")
    message: str | None = Field(default=None, alias="Message")


def parse(model: type[M], payload: Any, endpoint: str) -> M:
    """Validate ``payload`` against ``model``, raising SchemaMismatchError on failure."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise SchemaMismatchError(endpoint, _describe(e)) from e


def _describe(error: ValidationError) -> str:
    parts = []
    for detail in error.errors()[:5]:
        location = ".".join(str(part) for part in detail["loc"]) or "<root>"
        parts.append(f"{location}: {detail['msg']}")
    return "; ".join(parts)


# =============================================================================
# Values and rows
# =============================================================================


def unwrap_value(value: Any) -> Any:
    """Strip ``{"$type", "$value"}`` envelopes, leaving binary blobs intact."""
    while isinstance(value, dict) and "$value" in value and not is_binary_blob(value):
        value = value["$value"]
    return value


def flatten_entity_row(row: GenericEntityRow) -> dict[str, Any]:
    """GenericEntityData → ``{Name: value}``."""
    flattened: dict[str, Any] = {}
    for entry in row.properties.entries:
        prop = GenericPropertyData.model_validate(entry)
        flattened[prop.name] = unwrap_value(prop.value)
    return flattened


def flatten_plain_row(row: dict[str, Any]) -> dict[str, Any]:
    """Flat IQA row: drop ``$``-prefixed metadata keys and unwrap values."""
    return {key: unwrap_value(value) for key, value in row.items() if not key.startswith("$")}


def _to_page(response: QueryResponse, rows: list[dict[str, Any]]) -> Page:
    return Page(
        rows=rows,
        offset=response.offset,
        limit=response.limit,
        total_count=response.total_count,
        has_next=response.has_next,
        next_offset=response.next_offset,
    )


def normalize_query_page(api_version: ApiVersion, payload: Any, endpoint: str) -> Page:
    """IQA results: entity rows on V1, flat rows on V2."""
    response = parse(QueryResponse, payload, endpoint)
    rows: list[dict[str, Any]] = []
    try:
        for item in response.items.entries:
            if api_version == ApiVersion.V1:
                rows.append(flatten_entity_row(GenericEntityRow.model_validate(item)))
            elif isinstance(item, dict):
                rows.append(flatten_plain_row(item))
            else:
                raise SchemaMismatchError(endpoint, f"row is {type(item).__name__}, expected object")
    except ValidationError as e:
        raise SchemaMismatchError(endpoint, _describe(e)) from e
    return _to_page(response, rows)


def normalize_entity_page(payload: Any, endpoint: str) -> Page:
    """Business-object feed: GenericEntityData rows on both generations."""
    response = parse(QueryResponse, payload, endpoint)
    try:
        rows = [flatten_entity_row(GenericEntityRow.model_validate(item)) for item in response.items.entries]
    except ValidationError as e:
        raise SchemaMismatchError(endpoint, _describe(e)) from e
    return _to_page(response, rows)


# =============================================================================
# Definitions
# =============================================================================


def _property_type(definition: PropertyDefinition) -> tuple[PropertyType | None, int | None]:
    type_name = definition.property_type_name
    max_length = definition.max_length
    if definition.property_type is not None:
        type_name = type_name or definition.property_type.property_type_name
        max_length = max_length if max_length is not None else definition.property_type.max_length
    try:
        return (PropertyType(type_name) if type_name else None), max_length
    except ValueError:
        # Types outside the known set are still valid insert targets
        return None, max_length


def normalize_entity_definition(payload: Any, endpoint: str) -> DestinationDefinition:
    definition = parse(EntityDefinition, payload, endpoint)
    properties: list[DestinationProperty] = []
    entries = definition.properties.entries if definition.properties is not None else []
    for entry in entries:
        prop = parse(PropertyDefinition, entry, endpoint)
        property_type, max_length = _property_type(prop)
        properties.append(
            DestinationProperty(
                name=prop.name,
                property_type=property_type,
                max_length=max_length,
                is_identity=prop.is_identity,
                required=prop.required,
            )
        )
    return DestinationDefinition(entity_type=definition.entity_type_name, properties=properties)


def normalize_data_sources(payload: Any, endpoint: str) -> list[DataSource]:
    response = parse(QueryResponse, payload, endpoint)
    sources = [parse(EntityDefinition, item, endpoint) for item in response.items.entries]
    return [DataSource(entity_type=s.entity_type_name, description=s.description) for s in sources]


def display_name_from_path(path: str) -> str:
    """``$/Contacts/Active Members`` → ``Active Members``."""
    return path.rstrip("/").rsplit("/", 1)[-1] or path


def normalize_query_definition(payload: Any, endpoint: str) -> QueryDefinition | None:
    """Returns None when the server found no query at the requested path."""
    result = parse(ExecuteResult, payload, endpoint)
    if not result.is_success_status_code:
        raise SchemaMismatchError(endpoint, result.message or "request reported failure")
    if result.result is None:
        return None
    data = parse(QueryDefinitionData, result.result, endpoint)
    name = data.document.name if data.document is not None and data.document.name else display_name_from_path(data.path)
    columns: list[str] = []
    for entry in data.properties.entries if data.properties is not None else []:
        prop = parse(QueryPropertyData, entry, endpoint)
        column = prop.alias or prop.property_name or prop.name
        if column:
            columns.append(column)
    return QueryDefinition(path=data.path, name=name, properties=columns)


def build_entity_body(entity_type: str, properties: dict[str, Any]) -> dict[str, Any]:
    """GenericEntityData request body for an insert."""
    return {
        "$type": GENERIC_ENTITY_DATA_TYPE,
        "EntityTypeName": entity_type,
        "PrimaryParentEntityTypeName": "Standalone",
        "Properties": {
            "$type": GENERIC_PROPERTY_COLLECTION_TYPE,
            "$values": [{"$type": GENERIC_PROPERTY_DATA_TYPE, "Name": name, "Value": value} for name, value in properties.items()],
        },
    }
