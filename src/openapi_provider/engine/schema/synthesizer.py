import warnings
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import structlog

from ...errors import SchemaSynthesisError, SchemaSynthesisWarning, SpecParseError
from ...utils import safe_snake_case
from ..models import PropertySchema, PropertyType, ResourceDescriptor, ResourceSchema
from ..spec.loader import resolve_ref

logger = structlog.get_logger(__name__)

EXT_ID = "x-terraform-id"
EXT_IMMUTABLE = "x-terraform-immutable"
EXT_FORCE_NEW = "x-terraform-force-new"
EXT_SENSITIVE = "x-terraform-sensitive"
EXT_COMPUTED = "x-terraform-computed"
EXT_FIELD_NAME = "x-terraform-field-name"

PRIMITIVE_TYPES = {
    "string": PropertyType.STRING,
    "integer": PropertyType.INTEGER,
    "number": PropertyType.NUMBER,
    "boolean": PropertyType.BOOLEAN,
}


class UnsupportedConstruct(Exception):
    """Internal signal: the property cannot be exposed and is skipped."""

    pass


class SchemaSynthesizer:
    """
    Converts a resource's OpenAPI body schema into a ResourceSchema.

    Synthesis is deterministic and preserves declaration order. Constructs
    that cannot be represented are skipped with a SchemaSynthesisWarning;
    only a schema left without an identifier is fatal.
    """

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self.document = document or {}

    def synthesize(self, descriptor: ResourceDescriptor) -> ResourceSchema:
        return self.synthesize_schema(
            descriptor.name, descriptor.body_schema, schema_ref=descriptor.schema_ref
        )

    def synthesize_schema(
        self, resource: str, schema: Dict[str, Any], schema_ref: Optional[str] = None
    ) -> ResourceSchema:
        log = logger.bind(resource=resource)
        try:
            object_schema, seen = self._resolve(
                schema, frozenset({schema_ref}) if schema_ref else frozenset()
            )
        except UnsupportedConstruct as e:
            raise SchemaSynthesisError(f"resource '{resource}' body schema is unusable: {e}") from e

        properties = self._object_properties(object_schema, seen, resource, top_level=True)
        if not any(p.identifier for p in properties):
            raise SchemaSynthesisError(
                f"resource '{resource}' schema is missing a property that uniquely identifies the resource, "
                f"either a property named 'id' or a property with the extension '{EXT_ID}' set to true"
            )
        log.debug("schema_synthesizer.synthesized", property_count=len(properties))
        return ResourceSchema(resource=resource, properties=tuple(properties))

    # --- Objects ---

    def _object_properties(
        self,
        schema: Dict[str, Any],
        seen: FrozenSet[str],
        path: str,
        top_level: bool = False,
    ) -> List[PropertySchema]:
        raw_properties, required = self._merged_properties(schema, seen, path)
        identifier = self._identifier_name(raw_properties, path) if top_level else None
        properties: List[PropertySchema] = []
        names = set()
        for api_name, raw in raw_properties.items():
            prop_path = f"{path}.{api_name}"
            try:
                prop = self._property(
                    api_name,
                    raw,
                    seen,
                    prop_path,
                    required=api_name in required,
                    is_identifier=api_name == identifier,
                )
            except UnsupportedConstruct as e:
                self._warn(prop_path, str(e))
                continue
            if prop.name in names:
                self._warn(prop_path, f"field name '{prop.name}' is already used by another property")
                continue
            names.add(prop.name)
            properties.append(prop)
        return properties

    def _merged_properties(
        self, schema: Dict[str, Any], seen: FrozenSet[str], path: str
    ) -> Tuple[Dict[str, Any], set]:
        """Own properties plus those of every resolvable `allOf` member, in order."""
        merged: Dict[str, Any] = {}
        required = set(schema.get("required") or [])
        for member in schema.get("allOf") or []:
            try:
                member_schema, member_seen = self._resolve(member, seen)
            except UnsupportedConstruct as e:
                self._warn(f"{path}.allOf", str(e))
                continue
            member_properties, member_required = self._merged_properties(member_schema, member_seen, path)
            merged.update(member_properties)
            required |= member_required
        merged.update(schema.get("properties") or {})
        return merged, required

    def _identifier_name(self, properties: Dict[str, Any], path: str) -> Optional[str]:
        flagged = [n for n, p in properties.items() if isinstance(p, dict) and p.get(EXT_ID) is True]
        if len(flagged) > 1:
            self._warn(
                f"{path}.{flagged[1]}",
                f"more than one property flagged with '{EXT_ID}', using '{flagged[0]}'",
            )
        if flagged:
            return flagged[0]
        return "id" if "id" in properties else None

    # --- Properties ---

    def _property(
        self,
        api_name: str,
        raw: Any,
        seen: FrozenSet[str],
        path: str,
        required: bool = False,
        is_identifier: bool = False,
    ) -> PropertySchema:
        if not isinstance(raw, dict):
            raise UnsupportedConstruct("property definition is not an object")
        # Extensions may sit beside a $ref, so read flags before resolving.
        flags = dict(raw)
        schema, prop_seen = self._resolve(raw, seen)
        for key, value in schema.items():
            flags.setdefault(key, value)

        prop_type = self._property_type(schema)
        items = None
        properties: Tuple[PropertySchema, ...] = ()
        if prop_type == PropertyType.LIST:
            items = self._array_items(schema, prop_seen, path)
        elif prop_type == PropertyType.OBJECT:
            nested = self._object_properties(schema, prop_seen, path)
            if not nested:
                raise UnsupportedConstruct("object property has no supported properties")
            properties = tuple(nested)

        read_only = flags.get("readOnly") is True
        optional_computed = flags.get(EXT_COMPUTED) is True and not read_only
        return PropertySchema(
            name=self._field_name(api_name, flags),
            api_name=api_name,
            type=prop_type,
            required=required and not read_only and not is_identifier,
            computed=read_only or optional_computed or is_identifier,
            optional=optional_computed and not is_identifier,
            immutable=flags.get(EXT_IMMUTABLE) is True,
            force_new=flags.get(EXT_FORCE_NEW) is True,
            sensitive=flags.get(EXT_SENSITIVE) is True,
            identifier=is_identifier,
            default=flags.get("default"),
            description=flags.get("description"),
            items=items,
            properties=properties,
        )

    def _array_items(self, schema: Dict[str, Any], seen: FrozenSet[str], path: str) -> PropertySchema:
        if "items" not in schema:
            raise UnsupportedConstruct("array property is missing its 'items' definition")
        items_schema, items_seen = self._resolve(schema["items"], seen)
        items_type = self._property_type(items_schema)
        if items_type == PropertyType.LIST:
            raise UnsupportedConstruct("arrays of arrays are not supported")
        properties: Tuple[PropertySchema, ...] = ()
        if items_type == PropertyType.OBJECT:
            nested = self._object_properties(items_schema, items_seen, f"{path}[]")
            if not nested:
                raise UnsupportedConstruct("array items object has no supported properties")
            properties = tuple(nested)
        return PropertySchema(name="", api_name="", type=items_type, properties=properties)

    @staticmethod
    def _property_type(schema: Dict[str, Any]) -> PropertyType:
        for construct in ("oneOf", "anyOf", "not"):
            if construct in schema:
                raise UnsupportedConstruct(f"'{construct}' schemas are not supported")
        raw_type = schema.get("type")
        if isinstance(raw_type, list):
            non_null = [t for t in raw_type if t != "null"]
            if len(non_null) != 1:
                raise UnsupportedConstruct(f"union type {raw_type} is not supported")
            raw_type = non_null[0]
        if raw_type is None and (schema.get("properties") or schema.get("allOf")):
            raw_type = "object"
        if raw_type in PRIMITIVE_TYPES:
            return PRIMITIVE_TYPES[raw_type]
        if raw_type == "array":
            return PropertyType.LIST
        if raw_type == "object":
            if not schema.get("properties") and not schema.get("allOf"):
                raise UnsupportedConstruct("map-like objects without declared properties are not supported")
            return PropertyType.OBJECT
        raise UnsupportedConstruct(f"type '{raw_type}' is not supported")

    @staticmethod
    def _field_name(api_name: str, flags: Dict[str, Any]) -> str:
        override = flags.get(EXT_FIELD_NAME)
        if isinstance(override, str) and override:
            return override
        return safe_snake_case(api_name)

    # --- Refs ---

    def _resolve(self, schema: Any, seen: FrozenSet[str]) -> Tuple[Dict[str, Any], FrozenSet[str]]:
        """Follows `$ref`s, tracking the chain so cyclic definitions are detected."""
        while isinstance(schema, dict) and "$ref" in schema:
            ref = schema["$ref"]
            if ref in seen:
                raise UnsupportedConstruct(f"reference '{ref}' is cyclic")
            seen = seen | {ref}
            try:
                schema = resolve_ref(self.document, ref)
            except SpecParseError as e:
                raise UnsupportedConstruct(str(e)) from e
        if not isinstance(schema, dict):
            raise UnsupportedConstruct("schema definition is not an object")
        return schema, seen

    @staticmethod
    def _warn(path: str, reason: str):
        logger.warning("schema_synthesizer.property_skipped", property=path, reason=reason)
        warnings.warn(f"skipping '{path}': {reason}", SchemaSynthesisWarning, stacklevel=3)
