import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import structlog
import yaml
from dotenv import dotenv_values
from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ProviderConfigError
from ..utils import PROVIDER_HOME, is_url, resolve_path

logger = structlog.get_logger(__name__)

CONFIG_FILE_NAME = "config.yaml"
SWAGGER_URL_ENV_FMT = "OPENAPI_PROVIDER_{name}_SWAGGER_URL"


class ProviderSettings(BaseModel):
    """Runtime settings of one provider instance, after secrets are rendered."""

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    # Keyed by host-facing header name (e.g. x_request_id) or raw header name.
    headers: Dict[str, str] = Field(default_factory=dict)
    base_url: Optional[str] = None
    timeout: float = 30.0
    insecure_skip_verify: bool = False


class ServiceConfig(BaseModel):
    """
    One entry under `services:` in the plugin configuration, e.g.

        cdn:
          swagger-url: https://cdn-api.com/swagger.json
          api_key: "{{ secrets.api_key }}"
          headers:
            x_request_id: "{{ env.REQUEST_ID }}"
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    swagger_url: str = Field(alias="swagger-url")
    insecure_skip_verify: bool = False
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    base_url: Optional[str] = None
    timeout: float = 30.0


class PluginConfig(BaseModel):
    version: str = "1"
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> str:
        if str(value) != "1":
            raise ValueError(
                "provider configuration version not matching current implementation, "
                "please use version '1' of provider configuration specification"
            )
        return "1"

    def get_service(self, name: str) -> ServiceConfig:
        if not name:
            raise ProviderConfigError("provider name not specified")
        service = self.services.get(name)
        if service is None:
            raise ProviderConfigError(f"'{name}' not found in provider's services configuration")
        return service


class ProviderConfigResolver:
    """
    Abstracts away where a provider's document location, settings and
    secrets come from: the plugin configuration file, per-service secret
    env files and environment variable overrides.
    """

    name_regex = re.compile(r"^[a-z0-9_]+$")

    def __init__(self, home_path: Optional[Path] = None):
        self.home = home_path or PROVIDER_HOME
        self.config_path = self.home / CONFIG_FILE_NAME
        self.secrets_dir = self.home / "secrets"
        self.jinja_env = Environment(autoescape=False, undefined=StrictUndefined)
        logger.debug("ProviderConfigResolver initialized.", home=str(self.home))

    def load_plugin_config(self) -> PluginConfig:
        if not self.config_path.is_file():
            logger.debug("config.file_missing", path=str(self.config_path))
            return PluginConfig()
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ProviderConfigError(f"'{self.config_path}' is not valid YAML: {e}") from e
        try:
            return PluginConfig.model_validate(raw)
        except ValidationError as e:
            raise ProviderConfigError(f"Invalid schema in '{self.config_path.name}': {e}") from e

    def resolve(self, provider_name: str) -> Tuple[str, ProviderSettings]:
        """
        Returns the OpenAPI document location and the rendered settings for a
        provider. The `OPENAPI_PROVIDER_<NAME>_SWAGGER_URL` variable wins over
        the configured `swagger-url`.
        """
        log = logger.bind(provider=provider_name)
        if not self.name_regex.match(provider_name or ""):
            raise ProviderConfigError(
                f"provider name '{provider_name}' must be lowercase letters, digits and underscores"
            )
        env_source = os.getenv(SWAGGER_URL_ENV_FMT.format(name=provider_name.upper()))
        plugin_config = self.load_plugin_config()

        if provider_name in plugin_config.services:
            service = plugin_config.get_service(provider_name)
        elif env_source:
            service = ServiceConfig(swagger_url=env_source)
        else:
            raise ProviderConfigError(
                f"'{provider_name}' not found in provider's services configuration ({self.config_path}) "
                f"and {SWAGGER_URL_ENV_FMT.format(name=provider_name.upper())} is not set"
            )

        source = env_source or service.swagger_url
        self.validate_source(provider_name, source)
        secrets = self.load_secrets(provider_name)
        context = {"secrets": secrets, "env": dict(os.environ)}
        settings = ProviderSettings(
            api_key=self._render(service.api_key, context, "api_key"),
            headers={k: self._render(v, context, f"headers.{k}") for k, v in service.headers.items()},
            base_url=self._render(service.base_url, context, "base_url"),
            timeout=service.timeout,
            insecure_skip_verify=service.insecure_skip_verify,
        )
        log.info("config.resolved", source=source, header_count=len(settings.headers))
        return source, settings

    @staticmethod
    def validate_source(provider_name: str, source: str):
        # Fall back to a path on disk when the value is not a URL.
        if is_url(source) or resolve_path(source).is_file():
            return
        raise ProviderConfigError(
            f"service '{provider_name}' found in the provider configuration does not contain a valid "
            f"swagger-url value ('{source}'). URL must be either a valid formed URL or a path to an "
            "existing swagger file stored in the disk"
        )

    def load_secrets(self, provider_name: str) -> Dict[str, str]:
        secrets_file = self.secrets_dir / f"{provider_name}.secret.env"
        if not secrets_file.exists():
            return {}
        return {
            k.lower(): v
            for k, v in dotenv_values(dotenv_path=secrets_file).items()
            if v is not None
        }

    def _render(self, value: Optional[str], context: Dict[str, Any], field: str) -> Optional[str]:
        if value is None or "{{" not in value:
            return value
        try:
            return self.jinja_env.from_string(value).render(context)
        except TemplateError as e:
            raise ProviderConfigError(f"failed to render '{field}' template '{value}': {e}") from e

    def write_plugin_config(self, config: PluginConfig):
        self.home.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                config.model_dump(by_alias=True, exclude_defaults=True),
                f,
                sort_keys=False,
            )
