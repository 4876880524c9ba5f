from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit

from pydantic import BaseModel, ConfigDict, Field

# One managed object's desired or observed state, keyed by host-facing names.
ResourceInstance = Dict[str, Any]

ROOT_OPERATIONS = ("post", "get")
INSTANCE_OPERATIONS = ("get", "put", "delete")


class PropertyType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    OBJECT = "object"


class PropertySchema(BaseModel):
    """
    One field of a resource. Lists carry their element schema in `items`,
    objects carry their fields in `properties`.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    api_name: str
    type: PropertyType
    required: bool = False
    computed: bool = False
    optional: bool = False
    immutable: bool = False
    force_new: bool = False
    sensitive: bool = False
    identifier: bool = False
    default: Any = None
    description: Optional[str] = None
    items: Optional["PropertySchema"] = None
    properties: Tuple["PropertySchema", ...] = ()

    @property
    def is_read_only(self) -> bool:
        """Server-assigned and never sent by the caller."""
        return self.computed and not self.optional

    def get(self, name: str) -> Optional["PropertySchema"]:
        return next((p for p in self.properties if p.name == name), None)

    def describe(self) -> Dict[str, Any]:
        description: Dict[str, Any] = {
            "type": self.type.value,
            "required": self.required,
            "computed": self.computed,
            "optional": self.optional,
            "immutable": self.immutable,
            "force_new": self.force_new,
            "sensitive": self.sensitive,
        }
        if self.default is not None:
            description["default"] = self.default
        if self.description:
            description["description"] = self.description
        if self.items is not None:
            description["items"] = self.items.describe()
        if self.properties:
            description["properties"] = {p.name: p.describe() for p in self.properties}
        return description


class ResourceSchema(BaseModel):
    """Ordered, read-only set of properties shared by every instance of a resource type."""

    model_config = ConfigDict(frozen=True)

    resource: str
    properties: Tuple[PropertySchema, ...]

    def get(self, name: str) -> Optional[PropertySchema]:
        return next((p for p in self.properties if p.name == name), None)

    @property
    def identifier(self) -> PropertySchema:
        return next(p for p in self.properties if p.identifier)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.properties]

    def force_new_properties(self) -> List[str]:
        return [p.name for p in self.properties if p.force_new]

    def immutable_properties(self) -> List[str]:
        return [p.name for p in self.properties if p.immutable]

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """The schema description handed to the host runtime."""
        return {p.name: p.describe() for p in self.properties}


class ResourceDescriptor(BaseModel):
    """A CRUD-compliant resource discovered in the OpenAPI document."""

    model_config = ConfigDict(frozen=True)

    name: str
    root_path: str
    instance_path: str
    root_item: Dict[str, Any]
    instance_item: Dict[str, Any]
    body_schema: Dict[str, Any]
    schema_ref: Optional[str] = None
    host_override: Optional[str] = None
    region: Optional[str] = None

    def operation(self, method: str, instance: bool = False) -> Dict[str, Any]:
        item = self.instance_item if instance else self.root_item
        return item.get(method.lower()) or {}

    def operations(self) -> Dict[str, Dict[str, Any]]:
        """Every CRUD operation keyed as `<METHOD> <path>`."""
        ops = {}
        for method in ROOT_OPERATIONS:
            ops[f"{method.upper()} {self.root_path}"] = self.operation(method)
        for method in INSTANCE_OPERATIONS:
            ops[f"{method.upper()} {self.instance_path}"] = self.operation(method, instance=True)
        return ops


class SecurityDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    key_name: Optional[str] = None
    location: Optional[str] = None


class HeaderParameter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    header_name: str
    required: bool = False


class BackendConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: Optional[str] = None
    base_path: str = ""
    schemes: Tuple[str, ...] = ()
    server_url: Optional[str] = None

    def base_url(self, host_override: Optional[str] = None) -> str:
        """
        Builds the API base URL. v3 documents use their first server URL;
        v2 documents combine scheme, host and basePath, preferring https and
        defaulting to http.
        """
        if self.server_url and not host_override:
            parts = urlsplit(self.server_url)
            if not parts.scheme or not parts.netloc:
                raise ValueError(
                    f"the server URL '{self.server_url}' is relative and the document was not loaded from a URL"
                )
            return self.server_url.rstrip("/")
        host = host_override or self.host
        if not host:
            raise ValueError("the OpenAPI document does not declare a host or server URL")
        scheme = "https" if "https" in self.schemes else (self.schemes[0] if self.schemes else "http")
        base_path = self.base_path.strip("/")
        base_path = f"/{base_path}" if base_path else ""
        return f"{scheme}://{host.rstrip('/')}{base_path}"


class HTTPEndpointConfig(BaseModel):
    """Where and how to reach one resource type. Immutable per provider."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    root_path: str
    api_key: Optional[str] = None
    api_key_name: str = "Authorization"
    api_key_in: str = "header"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 30.0
    timeouts: Dict[str, float] = Field(default_factory=dict)
    verify: bool = True

    def resource_url(self) -> str:
        path = self.root_path if self.root_path.startswith("/") else f"/{self.root_path}"
        return f"{self.base_url.rstrip('/')}{path.rstrip('/')}"

    def instance_url(self, identifier: str) -> str:
        return f"{self.resource_url()}/{quote(str(identifier), safe='')}"

    def request_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        headers.update(self.headers)
        if self.api_key is not None and self.api_key_in == "header":
            headers[self.api_key_name] = self.api_key
        return headers

    def query_params(self) -> Dict[str, str]:
        if self.api_key is not None and self.api_key_in == "query":
            return {self.api_key_name: self.api_key}
        return {}

    def timeout_for(self, method: str) -> float:
        return self.timeouts.get(method.upper(), self.timeout)
