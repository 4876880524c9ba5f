import json
from typing import Any, Dict, Optional, Set

import httpx
import structlog
import yaml

from ...errors import SpecParseError, SpecRetrievalError
from ...utils import is_url, resolve_path

logger = structlog.get_logger(__name__)


def load_spec_document(
    source: str, timeout: float = 30.0, verify: bool = True
) -> Dict[str, Any]:
    """
    Retrieves and decodes an OpenAPI v2/v3 document from a URL or a local path.

    Raises:
        SpecRetrievalError: the source is empty, unreachable or missing.
        SpecParseError: the content is not a usable OpenAPI document.
    """
    if not source:
        raise SpecRetrievalError(
            "OpenAPI document location is empty, please provide the URL or path of the OpenAPI document"
        )
    log = logger.bind(source=source)
    raw = _fetch_remote(source, timeout, verify) if is_url(source) else _read_local(source)
    document = decode_document(raw, source)
    log.info(
        "spec_loader.document_loaded",
        version=document.get("swagger") or document.get("openapi"),
        path_count=len(document["paths"]),
    )
    return document


def _fetch_remote(url: str, timeout: float, verify: bool) -> str:
    log = logger.bind(source=url)
    try:
        response = httpx.get(url, timeout=timeout, verify=verify, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        log.error(
            "spec_loader.http_error",
            status_code=e.response.status_code,
            response_text=e.response.text[:500],
        )
        raise SpecRetrievalError(
            f"failed to retrieve the OpenAPI document from '{url}' - HTTP status {e.response.status_code}"
        ) from e
    except httpx.HTTPError as e:
        log.error("spec_loader.unreachable", error=str(e))
        raise SpecRetrievalError(
            f"failed to retrieve the OpenAPI document from '{url}' - error = {e}"
        ) from e
    return response.text


def _read_local(source: str) -> str:
    path = resolve_path(source)
    if not path.is_file():
        raise SpecRetrievalError(
            f"failed to retrieve the OpenAPI document from '{source}' - file not found at {path}"
        )
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise SpecParseError(
            f"OpenAPI document from '{source}' is not valid UTF-8 text - error = {e}"
        ) from e
    except OSError as e:
        raise SpecRetrievalError(
            f"failed to read the OpenAPI document from '{path}' - error = {e}"
        ) from e


def decode_document(raw: str, source: str = "<memory>") -> Dict[str, Any]:
    """Decodes JSON, falling back to YAML, and checks the top-level shape."""
    try:
        document = json.loads(raw)
    except ValueError:
        try:
            document = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise SpecParseError(
                f"OpenAPI document from '{source}' is neither valid JSON nor YAML - error = {e}"
            ) from e

    if not isinstance(document, dict):
        raise SpecParseError(f"OpenAPI document from '{source}' is not a JSON object")
    version = str(document.get("swagger") or document.get("openapi") or "")
    if not version.startswith(("2", "3")):
        raise SpecParseError(
            f"OpenAPI document from '{source}' is missing a supported 'swagger: 2.x' or 'openapi: 3.x' version marker"
        )
    if not isinstance(document.get("paths"), dict):
        raise SpecParseError(f"OpenAPI document from '{source}' is missing the 'paths' object")
    return document


def is_v3(document: Dict[str, Any]) -> bool:
    return str(document.get("openapi", "")).startswith("3")


def resolve_ref(document: Dict[str, Any], ref: str) -> Any:
    """
    Resolves a local JSON pointer such as `#/definitions/ContentDeliveryNetwork`.

    Raises:
        SpecParseError: the ref is external or points at nothing.
    """
    if not ref.startswith("#/"):
        raise SpecParseError(f"external reference '{ref}' is not supported")
    node: Any = document
    for raw_part in ref[2:].split("/"):
        part = raw_part.replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and part in node:
            node = node[part]
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            raise SpecParseError(f"reference '{ref}' could not be resolved")
    return node


def deref(
    document: Dict[str, Any], schema: Any, seen: Optional[Set[str]] = None
) -> Dict[str, Any]:
    """
    Follows a chain of top-level `$ref`s until a concrete schema is reached.
    Nested refs are left in place; callers resolve them lazily.
    """
    seen = set() if seen is None else seen
    while isinstance(schema, dict) and "$ref" in schema:
        ref = schema["$ref"]
        if ref in seen:
            raise SpecParseError(f"reference '{ref}' is cyclic")
        seen.add(ref)
        schema = resolve_ref(document, ref)
    if not isinstance(schema, dict):
        raise SpecParseError("schema definition is not an object")
    return schema
