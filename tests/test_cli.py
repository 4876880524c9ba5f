import json
import logging
from pathlib import Path

import httpx
import pytest
import structlog
from pytest_mock import MockerFixture
from typer.testing import CliRunner

from openapi_provider.cli import app
from openapi_provider.state import APP_STATE

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_app_state():
    yield
    APP_STATE.verbose_mode = False
    APP_STATE.home = None
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


def test_init_command_populates_home(isolated_provider_home: Path):
    """
    Unit Test: Verifies `init` creates the secrets directory and copies the
    bundled sample configuration, leaving an existing one untouched.
    """
    # Act
    result = runner.invoke(app, ["--home", str(isolated_provider_home), "init"])

    # Assert
    assert result.exit_code == 0, result.output
    assert (isolated_provider_home / "secrets").is_dir()
    config_path = isolated_provider_home / "config.yaml"
    assert "swagger-url" in config_path.read_text()

    config_path.write_text("version: '1'\nservices: {}\n")
    result = runner.invoke(app, ["--home", str(isolated_provider_home), "init"])
    assert result.exit_code == 0
    assert config_path.read_text() == "version: '1'\nservices: {}\n"


def test_resources_command_lists_discovered_types(isolated_provider_home: Path, cdn_swagger_path: Path):
    """Integration Test: Verifies `resources` prints every exposed resource type."""
    result = runner.invoke(app, ["resources", "cdn", "--spec", str(cdn_swagger_path)])

    assert result.exit_code == 0, result.output
    assert "cdn_cdns" in result.output
    assert "cdn_load_balancer" in result.output
    assert "cdn_monitors" not in result.output


def test_schema_command_prints_json(isolated_provider_home: Path, cdn_swagger_path: Path):
    """Unit Test: Verifies `schema` prints the resource description as JSON."""
    result = runner.invoke(app, ["schema", "cdn", "cdn_cdns", "--spec", str(cdn_swagger_path)])

    assert result.exit_code == 0, result.output
    description = json.loads(result.output)
    assert description["type_name"] == "cdn_cdns"
    assert description["schema"]["ips"]["force_new"] is True


def test_get_command_reads_instance(
    isolated_provider_home: Path,
    cdn_swagger_path: Path,
    cdn_backend,
    mocker: MockerFixture,
):
    """Integration Test: Verifies `get` resolves config, reads the object and prints it."""
    # Arrange
    (isolated_provider_home / "config.yaml").write_text(
        f"version: '1'\nservices:\n  cdn:\n    swagger-url: {cdn_swagger_path}\n    api_key: apiKeyValue\n"
    )
    cdn_backend.seed("cdns", {"id": "abc", "label": "x", "ips": [], "hostnames": ["a.com"]})
    real_client = httpx.Client
    mocker.patch(
        "httpx.Client",
        side_effect=lambda **kwargs: real_client(transport=httpx.MockTransport(cdn_backend)),
    )

    # Act
    result = runner.invoke(app, ["--home", str(isolated_provider_home), "get", "cdn", "cdn_cdns", "abc"])

    # Assert
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["label"] == "x"


def test_errors_exit_with_code_one(isolated_provider_home: Path):
    """Unit Test: Verifies library errors are printed and exit with status 1."""
    result = runner.invoke(app, ["--home", str(isolated_provider_home), "resources", "cdn"])

    assert result.exit_code == 1
    assert "'cdn' not found" in result.output


def test_version_option(mocker: MockerFixture):
    """Unit Test: Verifies `--version` prints the installed version and exits."""
    mocker.patch("importlib.metadata.version", return_value="1.2.3")

    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "1.2.3" in result.output


def test_get_command_accepts_spec_option(
    isolated_provider_home: Path,
    cdn_swagger_path: Path,
    cdn_backend,
    mocker: MockerFixture,
):
    """Integration Test: Verifies `get --spec` reads an object without any config.yaml."""
    # Arrange
    cdn_backend.api_key = None
    cdn_backend.seed("cdns", {"id": "abc", "label": "y", "ips": [], "hostnames": ["a.com"]})
    real_client = httpx.Client
    mocker.patch(
        "httpx.Client",
        side_effect=lambda **kwargs: real_client(transport=httpx.MockTransport(cdn_backend)),
    )

    # Act
    result = runner.invoke(app, ["get", "cdn", "cdn_cdns", "abc", "--spec", str(cdn_swagger_path)])

    # Assert
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["label"] == "y"
    assert not (isolated_provider_home / "config.yaml").exists()
