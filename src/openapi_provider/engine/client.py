from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..errors import (
    APIConnectionError,
    AuthenticationError,
    InvalidResponseError,
    RemoteAPIError,
    ResourceNotFound,
)
from .models import HTTPEndpointConfig, ResourceInstance, ResourceSchema
from .schema.codec import from_payload, to_payload

logger = structlog.get_logger(__name__)


class HTTPResourceClient:
    """
    Performs the CRUD HTTP calls for one resource type against its endpoint.

    Calls are synchronous with a bounded timeout and are never retried:
    transport failures surface immediately as APIConnectionError. A single
    `httpx.Client` may be shared by every resource of a provider.
    """

    def __init__(self, endpoint: HTTPEndpointConfig, http: Optional[httpx.Client] = None):
        self.endpoint = endpoint
        self.http = http or httpx.Client(verify=endpoint.verify)

    def create(self, schema: ResourceSchema, desired: ResourceInstance) -> ResourceInstance:
        """POSTs the settable properties and returns the observed state, id included."""
        payload = to_payload(schema, desired)
        body = self._request("POST", self.endpoint.resource_url(), schema, json=payload)
        observed = from_payload(schema, body)
        if observed.get(schema.identifier.name) is None:
            raise InvalidResponseError(
                f"object returned from api is missing mandatory property '{schema.identifier.api_name}'"
            )
        return observed

    def read(self, schema: ResourceSchema, identifier: str) -> ResourceInstance:
        """
        GETs one instance.

        Raises:
            ResourceNotFound: the instance no longer exists remotely.
        """
        url = self.endpoint.instance_url(identifier)
        body = self._request("GET", url, schema, identifier=identifier)
        return self._with_identifier(schema, from_payload(schema, body), identifier)

    def list(self, schema: ResourceSchema) -> List[ResourceInstance]:
        body = self._request("GET", self.endpoint.resource_url(), schema)
        if isinstance(body, dict):
            # Some APIs wrap collections, e.g. {"items": [...]}
            body = next((v for v in body.values() if isinstance(v, list)), None)
        if not isinstance(body, list):
            raise InvalidResponseError(f"{schema.resource} list response is not a JSON array")
        return [from_payload(schema, item) for item in body if isinstance(item, dict)]

    def update(
        self, schema: ResourceSchema, identifier: str, desired: ResourceInstance
    ) -> ResourceInstance:
        """
        PUTs the mutable settable properties. Callers must have checked for
        force-new changes beforehand; this method never replaces.
        """
        payload = to_payload(schema, desired, for_update=True)
        url = self.endpoint.instance_url(identifier)
        body = self._request("PUT", url, schema, json=payload, identifier=identifier)
        if body is None:
            return self.read(schema, identifier)
        return self._with_identifier(schema, from_payload(schema, body), identifier)

    def delete(self, schema: ResourceSchema, identifier: str) -> None:
        """DELETEs one instance. An already absent instance counts as deleted."""
        url = self.endpoint.instance_url(identifier)
        try:
            self._request("DELETE", url, schema, identifier=identifier)
        except ResourceNotFound:
            logger.info(
                "http_client.delete_already_absent",
                resource=schema.resource,
                identifier=identifier,
            )

    @staticmethod
    def _with_identifier(
        schema: ResourceSchema, observed: ResourceInstance, identifier: str
    ) -> ResourceInstance:
        observed.setdefault(schema.identifier.name, str(identifier))
        return observed

    def _request(
        self,
        method: str,
        url: str,
        schema: ResourceSchema,
        json: Optional[Dict[str, Any]] = None,
        identifier: Optional[str] = None,
    ) -> Any:
        log = logger.bind(resource=schema.resource, method=method, url=url)
        log.debug("http_client.request", payload_keys=sorted(json) if json else None)
        try:
            response = self.http.request(
                method,
                url,
                json=json,
                headers=self.endpoint.request_headers(),
                params=self.endpoint.query_params() or None,
                timeout=self.endpoint.timeout_for(method),
            )
        except httpx.TransportError as e:
            log.error("http_client.transport_error", error=str(e))
            raise APIConnectionError(f"{method} {url} failed: {e}") from e

        log.info("http_client.response", status_code=response.status_code)
        body = self._decode_body(response)
        if response.is_success:
            return body

        if response.status_code == 401:
            raise AuthenticationError(body, method=method, url=url)
        if response.status_code == 404 and identifier is not None:
            raise ResourceNotFound(schema.resource, identifier)
        log.error(
            "http_client.unexpected_status",
            status_code=response.status_code,
            response_text=response.text[:500],
        )
        raise RemoteAPIError(response.status_code, body, method=method, url=url)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content or not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as e:
            if response.is_success:
                raise InvalidResponseError(
                    f"{response.request.method} {response.request.url} returned a non-JSON body"
                ) from e
            return response.text

    def close(self):
        self.http.close()
