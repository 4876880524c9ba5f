"""
Exceptions raised while assembling the provider and while dispatching
operations against the remote API.
"""

from typing import Any, Optional


class ProviderError(Exception):
    """Base exception for all provider errors."""

    pass


# --- Assembly errors (fatal for the embedding layer) ---


class SpecRetrievalError(ProviderError):
    """The OpenAPI document could not be fetched from its source."""

    pass


class SpecParseError(ProviderError):
    """The OpenAPI document could not be decoded or is structurally unusable."""

    pass


class SchemaSynthesisError(ProviderError):
    """A resource schema could not be synthesized at all (e.g. no identifier)."""

    pass


class ProviderConfigError(ProviderError):
    """The plugin configuration or provider settings are invalid."""

    pass


class SchemaSynthesisWarning(UserWarning):
    """An unsupported schema construct was skipped during synthesis."""

    pass


# --- Per-call errors ---


class RemoteAPIError(ProviderError):
    """The remote API answered with a non-2xx status."""

    def __init__(
        self,
        status: int,
        body: Any = None,
        method: Optional[str] = None,
        url: Optional[str] = None,
    ):
        self.status = status
        self.body = body
        self.method = method
        self.url = url
        self.code = body.get("code") if isinstance(body, dict) else None
        self.message = body.get("message") if isinstance(body, dict) else None
        super().__init__(self._format())

    def _format(self) -> str:
        target = f"{self.method} {self.url} " if self.method and self.url else ""
        detail = self.message or (self.body if self.body not in (None, "") else None)
        if detail:
            return f"{target}failed with HTTP status {self.status}: {detail}"
        return f"{target}failed with HTTP status {self.status}"


class AuthenticationError(RemoteAPIError):
    """The remote API rejected the API key (HTTP 401)."""

    def __init__(self, body: Any = None, method: Optional[str] = None, url: Optional[str] = None):
        super().__init__(401, body, method=method, url=url)

    def _format(self) -> str:
        target = f"{self.method} {self.url} " if self.method and self.url else ""
        return f"{target}failed with HTTP status 401 - Unauthorized: API access is denied due to invalid credentials"


class APIConnectionError(ProviderError, ConnectionError):
    """A network-level failure (DNS, refused connection, timeout)."""

    pass


class InvalidResponseError(ProviderError):
    """The remote API answered successfully but the body is unusable."""

    pass


class InvalidResourceData(ProviderError, ValueError):
    """Desired state does not match the resource schema."""

    pass


# --- Signals ---


class ResourceNotFound(ProviderError):
    """The remote resource does not exist (HTTP 404 on the instance path)."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} '{identifier}' not found")


class ReplacementRequired(ProviderError):
    """An update touches force-new properties; the caller must delete then create."""

    def __init__(self, resource: str, properties: list):
        self.resource = resource
        self.properties = list(properties)
        super().__init__(
            f"{resource} cannot be updated in place, changed properties require replacement: "
            f"{', '.join(self.properties)}"
        )


# --- Lifecycle errors ---


class LifecycleError(ProviderError):
    """Base exception for lifecycle state machine violations."""

    pass


class InvalidStateTransition(LifecycleError):
    """An operation was invoked from a state that does not allow it."""

    def __init__(self, operation: str, state: Any):
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} a resource in state '{getattr(state, 'value', state)}'")


class ImmutablePropertyError(LifecycleError):
    """An update tried to change a property that is settable only at create time."""

    def __init__(self, resource: str, properties: list):
        self.resource = resource
        self.properties = list(properties)
        super().__init__(
            f"properties {', '.join(self.properties)} of {resource} are immutable and therefore can not be updated. "
            "Update operation was aborted; no updates were performed"
        )
