import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from openapi_provider.engine.config import ProviderSettings
from openapi_provider.engine.provider import Provider, ProviderFactory
from openapi_provider.engine.spec.analyser import SpecAnalyser

FIXTURES_DIR = Path(__file__).parent / "fixtures"
API_KEY = "apiKeyValue"


class CdnBackend:
    """
    An in-memory stand-in for the CDN demo service. Storage is injected so a
    test can seed objects or simulate out-of-band deletes, and every request
    is recorded for assertions.

    Collections live under /v1/<collection>; PUT merges the body into the
    stored object and DELETE answers 204.
    """

    def __init__(self, store: Optional[Dict[str, Dict[str, Any]]] = None, api_key: str = API_KEY):
        self.store: Dict[str, Dict[str, Any]] = store if store is not None else {}
        self.api_key = api_key
        self.requests: List[httpx.Request] = []

    def seed(self, collection: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        self.store.setdefault(collection, {})[obj["id"]] = dict(obj)
        return obj

    def methods(self) -> List[str]:
        return [r.method for r in self.requests]

    @staticmethod
    def _error(status: int, message: str) -> httpx.Response:
        return httpx.Response(status, json={"code": str(status), "message": message})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != self.api_key:
            return self._error(401, "unauthorized user")

        parts = request.url.path.strip("/").split("/")
        if len(parts) < 2 or parts[0] != "v1":
            return self._error(404, f"no route for {request.url.path}")
        items = self.store.setdefault(parts[1], {})

        if len(parts) == 2:
            if request.method == "POST":
                obj = json.loads(request.content)
                obj["id"] = str(uuid.uuid4())
                items[obj["id"]] = obj
                return httpx.Response(201, json=obj)
            if request.method == "GET":
                return httpx.Response(200, json=list(items.values()))
            return self._error(405, "method not allowed")

        identifier = parts[2]
        obj = items.get(identifier)
        if obj is None:
            return self._error(404, f"{parts[1]} id '{identifier}' not found")
        if request.method == "GET":
            return httpx.Response(200, json=obj)
        if request.method == "PUT":
            obj.update(json.loads(request.content))
            obj["id"] = identifier
            return httpx.Response(200, json=obj)
        if request.method == "DELETE":
            del items[identifier]
            return httpx.Response(204)
        return self._error(405, "method not allowed")


@pytest.fixture
def isolated_provider_home(tmp_path: Path, monkeypatch) -> Path:
    """
    Provides a pristine, isolated and empty provider home directory for each
    test function, with no swagger-url overrides leaking in from the shell.
    """
    home = tmp_path / ".openapi-provider"
    home.mkdir()
    monkeypatch.setenv("OPENAPI_PROVIDER_HOME", str(home))
    monkeypatch.delenv("OPENAPI_PROVIDER_CDN_SWAGGER_URL", raising=False)
    yield home


@pytest.fixture
def cdn_swagger_path() -> Path:
    return FIXTURES_DIR / "cdn_swagger.json"


@pytest.fixture
def cdn_swagger(cdn_swagger_path: Path) -> Dict[str, Any]:
    return json.loads(cdn_swagger_path.read_text())


@pytest.fixture
def cdn_analyser(cdn_swagger: Dict[str, Any]) -> SpecAnalyser:
    return SpecAnalyser(cdn_swagger, source="cdn_swagger.json")


@pytest.fixture
def cdn_backend() -> CdnBackend:
    return CdnBackend()


@pytest.fixture
def http_client(cdn_backend: CdnBackend) -> httpx.Client:
    client = httpx.Client(transport=httpx.MockTransport(cdn_backend))
    yield client
    client.close()


@pytest.fixture
def cdn_provider(cdn_swagger_path: Path, http_client: httpx.Client) -> Provider:
    """A provider named 'cdn' built from the fixture document against the in-memory backend."""
    factory = ProviderFactory(
        "cdn",
        str(cdn_swagger_path),
        settings=ProviderSettings(api_key=API_KEY, headers={"x_request_id": "req-123"}),
        http_client=http_client,
    )
    with factory.build() as provider:
        yield provider
