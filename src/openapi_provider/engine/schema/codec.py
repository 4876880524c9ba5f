"""
Translation between host-facing resource instances and the JSON bodies the
remote API speaks.

Desired state is validated against a pydantic model derived from the
ResourceSchema before it is encoded, so type errors surface before any HTTP
call is made. Encoding renames fields to their API names and drops what the
caller must not send; decoding renames back and drops what the schema does
not expose.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from ...errors import InvalidResourceData, InvalidResponseError
from ..models import PropertySchema, PropertyType, ResourceInstance, ResourceSchema

PRIMITIVE_ANNOTATIONS = {
    PropertyType.STRING: str,
    PropertyType.INTEGER: int,
    PropertyType.NUMBER: float,
    PropertyType.BOOLEAN: bool,
}

_EMPTY_VALUES = (None, [], {})


def _pascal(name: str) -> str:
    return "".join(part.capitalize() for part in name.split("_") if part) or "Resource"


def _annotation(prop: PropertySchema, model_name: str) -> Any:
    if prop.type == PropertyType.LIST:
        return List[_annotation(prop.items, f"{model_name}Item")]
    if prop.type == PropertyType.OBJECT:
        return _model_for(model_name, prop.properties)
    return PRIMITIVE_ANNOTATIONS[prop.type]


def _model_for(model_name: str, properties: Sequence[PropertySchema]) -> Type[BaseModel]:
    fields: Dict[str, Tuple[Any, Any]] = {}
    for index, prop in enumerate(properties):
        annotation = _annotation(prop, f"{model_name}{_pascal(prop.name)}")
        # Internal field names avoid clashing with BaseModel attributes.
        if prop.required:
            fields[f"field_{index}"] = (annotation, Field(..., alias=prop.name))
        else:
            fields[f"field_{index}"] = (Optional[annotation], Field(None, alias=prop.name))
    return create_model(
        model_name,
        __config__=ConfigDict(extra="forbid"),
        **fields,
    )


def build_model(schema: ResourceSchema) -> Type[BaseModel]:
    """The pydantic model describing valid desired state for one resource type."""
    return _cached_model(schema.model_dump_json())


@lru_cache(maxsize=256)
def _cached_model(schema_json: str) -> Type[BaseModel]:
    schema = ResourceSchema.model_validate_json(schema_json)
    return _model_for(_pascal(schema.resource), schema.properties)


def validate_instance(schema: ResourceSchema, instance: ResourceInstance) -> ResourceInstance:
    """
    Validates and coerces desired state. Only keys the caller supplied are
    returned.

    Raises:
        InvalidResourceData: unknown keys, missing required keys or wrong types.
    """
    if not isinstance(instance, dict):
        raise InvalidResourceData(f"{schema.resource} data must be a mapping, got {type(instance).__name__}")
    try:
        validated = build_model(schema).model_validate(instance)
    except ValidationError as e:
        raise InvalidResourceData(f"invalid data for {schema.resource}: {e}") from e
    return validated.model_dump(by_alias=True, exclude_unset=True)


# --- Encoding ---


def to_payload(
    schema: ResourceSchema, instance: ResourceInstance, for_update: bool = False
) -> Dict[str, Any]:
    """
    Builds the request body for POST (all settable properties) or PUT
    (settable and mutable properties).
    """
    values = validate_instance(schema, instance)
    return _encode_object(schema.properties, values, for_update=for_update)


def _encode_object(
    properties: Sequence[PropertySchema], values: Dict[str, Any], for_update: bool = False
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for prop in properties:
        value = values.get(prop.name)
        if value is None or prop.identifier or prop.is_read_only:
            continue
        if for_update and prop.immutable:
            continue
        payload[prop.api_name] = _encode_value(prop, value)
    return payload


def _encode_value(prop: PropertySchema, value: Any) -> Any:
    if prop.type == PropertyType.OBJECT and isinstance(value, dict):
        return _encode_object(prop.properties, value)
    if prop.type == PropertyType.LIST and prop.items.type == PropertyType.OBJECT:
        return [_encode_object(prop.items.properties, v) if isinstance(v, dict) else v for v in value]
    return value


# --- Decoding ---


def from_payload(schema: ResourceSchema, body: Any) -> ResourceInstance:
    """Maps a response body onto the schema; unknown fields are dropped."""
    if not isinstance(body, dict):
        raise InvalidResponseError(
            f"{schema.resource} response body must be a JSON object, got {type(body).__name__}"
        )
    return _decode_object(schema.properties, body)


def _decode_object(properties: Sequence[PropertySchema], body: Dict[str, Any]) -> Dict[str, Any]:
    instance: Dict[str, Any] = {}
    for prop in properties:
        if prop.api_name not in body:
            continue
        value = body[prop.api_name]
        instance[prop.name] = normalize_identifier(value) if prop.identifier else _decode_value(prop, value)
    return instance


def _decode_value(prop: PropertySchema, value: Any) -> Any:
    if prop.type == PropertyType.OBJECT and isinstance(value, dict):
        return _decode_object(prop.properties, value)
    if prop.type == PropertyType.LIST and isinstance(value, list) and prop.items.type == PropertyType.OBJECT:
        return [_decode_object(prop.items.properties, v) if isinstance(v, dict) else v for v in value]
    return value


def normalize_identifier(value: Any) -> Optional[str]:
    """Identifiers are strings; numeric ids lose any fractional part (1.0 -> "1")."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# --- Diffing ---


def diff(schema: ResourceSchema, desired: ResourceInstance, observed: ResourceInstance) -> List[str]:
    """
    Names of the caller-managed properties whose desired value differs from
    the observed one. Server-assigned properties never count; optional
    computed ones only count when the caller set them.
    """
    values = validate_instance(schema, desired)
    changed = []
    for prop in schema.properties:
        if prop.identifier or prop.is_read_only:
            continue
        wanted = values.get(prop.name)
        if wanted is None:
            if prop.optional:
                continue
            wanted = prop.default
        if not _equal(prop, wanted, observed.get(prop.name)):
            changed.append(prop.name)
    return changed


def _equal(prop: PropertySchema, wanted: Any, actual: Any) -> bool:
    if wanted in _EMPTY_VALUES and actual in _EMPTY_VALUES:
        return True
    if prop.type == PropertyType.OBJECT and isinstance(wanted, dict) and isinstance(actual, dict):
        return all(
            _equal(p, wanted.get(p.name), actual.get(p.name))
            for p in prop.properties
            if not p.is_read_only
        )
    if (
        prop.type == PropertyType.LIST
        and prop.items.type == PropertyType.OBJECT
        and isinstance(wanted, list)
        and isinstance(actual, list)
    ):
        return len(wanted) == len(actual) and all(
            _equal(prop.items, w, a)
            for w, a in zip(wanted, actual)
        )
    return wanted == actual
