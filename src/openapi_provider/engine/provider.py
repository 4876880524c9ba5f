from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

import httpx
import structlog

from ..errors import ProviderConfigError, ProviderError, SpecParseError
from ..utils import parse_duration
from .client import HTTPResourceClient
from .config import ProviderConfigResolver, ProviderSettings
from .lifecycle import PlanAction, ResourceLifecycle
from .models import (
    BackendConfiguration,
    HTTPEndpointConfig,
    ResourceDescriptor,
    ResourceInstance,
    ResourceSchema,
    SecurityDefinition,
)
from .schema.synthesizer import SchemaSynthesizer
from .spec.analyser import SpecAnalyser

logger = structlog.get_logger(__name__)

EXT_RESOURCE_TIMEOUT = "x-terraform-resource-timeout"

__all__ = ["Provider", "ProviderFactory", "ProviderSettings", "ResourceDefinition"]


class ResourceDefinition:
    """
    One resource type as the host runtime sees it: a schema plus the
    create/read/update/delete callbacks bound to its endpoint.
    """

    def __init__(
        self,
        type_name: str,
        descriptor: ResourceDescriptor,
        schema: ResourceSchema,
        client: HTTPResourceClient,
    ):
        self.type_name = type_name
        self.descriptor = descriptor
        self.schema = schema
        self.client = client

    def describe(self) -> Dict[str, Any]:
        return {
            "type_name": self.type_name,
            "root_path": self.descriptor.root_path,
            "instance_path": self.descriptor.instance_path,
            "identifier": self.schema.identifier.name,
            "region": self.descriptor.region,
            "schema": self.schema.describe(),
        }

    def lifecycle(
        self, identifier: Optional[str] = None, observed: Optional[ResourceInstance] = None
    ) -> ResourceLifecycle:
        """A lifecycle for a new (no identifier) or already managed instance."""
        return ResourceLifecycle(self.schema, self.client, identifier=identifier, observed=observed)

    def create(self, desired: ResourceInstance) -> ResourceLifecycle:
        lifecycle = self.lifecycle()
        lifecycle.create(desired)
        return lifecycle

    def read(self, identifier: str) -> ResourceLifecycle:
        """Refreshes an instance; the returned lifecycle is absent if it is gone."""
        lifecycle = self.lifecycle(identifier)
        lifecycle.refresh()
        return lifecycle

    def import_(self, identifier: str) -> ResourceLifecycle:
        lifecycle = self.lifecycle()
        lifecycle.import_(identifier)
        return lifecycle

    def update(self, lifecycle: ResourceLifecycle, desired: ResourceInstance) -> ResourceInstance:
        return lifecycle.update(desired)

    def delete(self, lifecycle: ResourceLifecycle) -> None:
        lifecycle.delete()

    def plan(self, lifecycle: ResourceLifecycle, desired: ResourceInstance) -> PlanAction:
        return lifecycle.plan(desired)

    def list(self) -> List[ResourceInstance]:
        return self.client.list(self.schema)


class Provider:
    """
    A built provider: a read-only registry of `{provider}_{resource}` type
    names. Owns the shared HTTP client unless one was injected.
    """

    def __init__(
        self,
        name: str,
        resources: Dict[str, ResourceDefinition],
        http: httpx.Client,
        owns_http: bool = True,
    ):
        self.name = name
        self.resources: Mapping[str, ResourceDefinition] = MappingProxyType(dict(resources))
        self._http = http
        self._owns_http = owns_http

    def __iter__(self) -> Iterator[str]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self.resources

    def resource(self, type_name: str) -> ResourceDefinition:
        try:
            return self.resources[type_name]
        except KeyError:
            raise ProviderError(
                f"resource type '{type_name}' is not exposed by provider '{self.name}'; "
                f"available: {', '.join(self.resources) or 'none'}"
            ) from None

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """The provider schema handed to the host: type name -> resource schema."""
        return {name: definition.schema.describe() for name, definition in self.resources.items()}

    def close(self):
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "Provider":
        return self

    def __exit__(self, *exc_info):
        self.close()


class ProviderFactory:
    """
    Assembles a Provider from an OpenAPI document: discovery, schema
    synthesis and endpoint configuration, all at build time. Any document or
    configuration error aborts the build; no partial provider is returned.
    """

    def __init__(
        self,
        name: str,
        spec_source: str,
        settings: Optional[ProviderSettings] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.name = name
        self.spec_source = spec_source
        self.settings = settings or ProviderSettings()
        self.http_client = http_client

    @classmethod
    def from_config(
        cls,
        name: str,
        home: Optional[Path] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> "ProviderFactory":
        """Resolves the document location and settings from the plugin configuration."""
        source, settings = ProviderConfigResolver(home).resolve(name)
        return cls(name, source, settings=settings, http_client=http_client)

    def build(self) -> Provider:
        log = logger.bind(provider=self.name, source=self.spec_source)
        if not self.name:
            raise ProviderConfigError("provider name not specified")
        verify = not self.settings.insecure_skip_verify

        analyser = SpecAnalyser.from_source(
            self.spec_source, timeout=self.settings.timeout, verify=verify
        )
        synthesizer = SchemaSynthesizer(analyser.document)
        backend = analyser.backend_configuration()
        api_key_definition = analyser.api_key_definition()

        owns_http = self.http_client is None
        http = self.http_client or httpx.Client(verify=verify)
        try:
            resources: Dict[str, ResourceDefinition] = {}
            for descriptor in analyser.get_crud_resources():
                schema = synthesizer.synthesize(descriptor)
                endpoint = self._endpoint_config(analyser, descriptor, backend, api_key_definition)
                type_name = f"{self.name}_{descriptor.name}"
                resources[type_name] = ResourceDefinition(
                    type_name, descriptor, schema, HTTPResourceClient(endpoint, http)
                )
                log.debug("provider.resource_registered", type_name=type_name, base_url=endpoint.base_url)
        except Exception:
            if owns_http:
                http.close()
            raise

        log.info("provider.built", resource_count=len(resources))
        return Provider(self.name, resources, http, owns_http=owns_http)

    def _endpoint_config(
        self,
        analyser: SpecAnalyser,
        descriptor: ResourceDescriptor,
        backend: BackendConfiguration,
        api_key_definition: Optional[SecurityDefinition],
    ) -> HTTPEndpointConfig:
        endpoint: Dict[str, Any] = {
            "base_url": self._base_url(descriptor, backend),
            "root_path": descriptor.root_path,
            "api_key": self.settings.api_key,
            "headers": self._headers(analyser, descriptor),
            "timeout": self.settings.timeout,
            "timeouts": self._timeouts(descriptor),
            "verify": not self.settings.insecure_skip_verify,
        }
        if api_key_definition is not None:
            endpoint["api_key_name"] = api_key_definition.key_name
            endpoint["api_key_in"] = api_key_definition.location
        return HTTPEndpointConfig(**endpoint)

    def _base_url(self, descriptor: ResourceDescriptor, backend: BackendConfiguration) -> str:
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        try:
            return backend.base_url(descriptor.host_override)
        except ValueError as e:
            raise ProviderConfigError(
                f"cannot build the base URL for resource '{descriptor.name}': {e}; set 'base_url' in the provider settings"
            ) from e

    def _headers(self, analyser: SpecAnalyser, descriptor: ResourceDescriptor) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for parameter in analyser.header_parameters(descriptor):
            value = self.settings.headers.get(parameter.name)
            if value is None:
                value = self.settings.headers.get(parameter.header_name)
            if value is None:
                if parameter.required:
                    raise ProviderConfigError(
                        f"required header '{parameter.header_name}' of resource '{descriptor.name}' is not "
                        f"configured; set it under headers as '{parameter.name}'"
                    )
                continue
            headers[parameter.header_name] = value
        return headers

    @staticmethod
    def _timeouts(descriptor: ResourceDescriptor) -> Dict[str, float]:
        timeouts: Dict[str, float] = {}
        for key, operation in descriptor.operations().items():
            raw = operation.get(EXT_RESOURCE_TIMEOUT)
            if raw is None:
                continue
            method = key.split(" ", 1)[0]
            try:
                value = parse_duration(raw)
            except ValueError as e:
                raise SpecParseError(f"invalid '{EXT_RESOURCE_TIMEOUT}' on {key}: {e}") from e
            # Root and instance GET share one client method; keep the larger bound.
            timeouts[method] = max(value, timeouts.get(method, 0.0))
        return timeouts
