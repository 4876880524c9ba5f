import functools
import importlib.metadata
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table
from rich.traceback import Traceback

from .engine.provider import Provider, ProviderFactory
from .state import APP_STATE
from .utils import PROVIDER_HOME, get_assets_root

console = Console()
logger = structlog.get_logger(__name__)


def version_callback(value: bool):
    """Prints the application version and exits."""
    if value:
        try:
            version = importlib.metadata.version("openapi-provider")
            console.print(f"openapi-provider version: {version}")
        except importlib.metadata.PackageNotFoundError:
            console.print("openapi-provider version: unknown (package not installed)")
        raise typer.Exit()


def setup_logging(verbose: bool):
    log_level = logging.DEBUG if verbose else logging.WARNING
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processor=structlog.dev.ConsoleRenderer(),
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def handle_exceptions(func):
    """A decorator to catch and format exceptions for all CLI commands."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        error_console = Console(stderr=True)
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except Exception as e:
            error_console.print(f"[bold red]Error:[/bold red] {e}")
            if APP_STATE.verbose_mode:
                error_console.print(
                    Traceback.from_exception(
                        type(e), e, e.__traceback__, show_locals=True
                    )
                )
            raise typer.Exit(code=1)

    return wrapper


def _home() -> Path:
    return APP_STATE.home or PROVIDER_HOME


def _build_provider(provider_name: str, spec: Optional[str]) -> Provider:
    if spec:
        return ProviderFactory(provider_name, spec).build()
    return ProviderFactory.from_config(provider_name, home=_home()).build()


app = typer.Typer(
    name="openapi-provider",
    help="Expose the CRUD resources of an OpenAPI document as managed resource types.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose DEBUG logging."
    ),
    home: Optional[Path] = typer.Option(
        None,
        "--home",
        envvar="OPENAPI_PROVIDER_HOME",
        help="Directory holding config.yaml and secrets/.",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the application's version and exit.",
    ),
):
    """Handles global options."""
    APP_STATE.verbose_mode = verbose
    APP_STATE.home = home
    setup_logging(verbose)


@app.command()
@handle_exceptions
def init():
    """Creates the provider home with a sample config.yaml and a secrets/ directory."""
    home = _home()
    secrets_dir = home / "secrets"
    secrets_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"✅ Ensured directory exists: [dim]{secrets_dir}[/dim]")

    target_path = home / "config.yaml"
    if target_path.exists():
        console.print(f"☑️  Configuration already exists, skipping: [dim]{target_path}[/dim]")
    else:
        shutil.copy(get_assets_root() / "config.example.yaml", target_path)
        console.print(f"✅ Created sample configuration: [dim]{target_path}[/dim]")

    console.print("\n[bold green]Initialization complete![/bold green]")
    console.print("Edit config.yaml, then run `openapi-provider resources <service>`.")


@app.command()
@handle_exceptions
def resources(
    provider_name: str = typer.Argument(..., help="Service name from config.yaml."),
    spec: Optional[str] = typer.Option(
        None, "--spec", "-s", help="OpenAPI document URL or path, bypassing config.yaml."
    ),
):
    """Lists the resource types discovered in a service's OpenAPI document."""
    with _build_provider(provider_name, spec) as provider:
        table = Table(title=f"Resources exposed by '{provider_name}'")
        table.add_column("Type Name", style="cyan", no_wrap=True)
        table.add_column("Root Path", style="magenta")
        table.add_column("Identifier", style="green")
        table.add_column("Properties", justify="right")
        for type_name, definition in provider.resources.items():
            table.add_row(
                type_name,
                definition.descriptor.root_path,
                definition.schema.identifier.name,
                str(len(definition.schema.properties)),
            )
        console.print(table)


@app.command()
@handle_exceptions
def schema(
    provider_name: str = typer.Argument(..., help="Service name from config.yaml."),
    type_name: str = typer.Argument(..., help="Resource type name, e.g. cdn_cdns."),
    spec: Optional[str] = typer.Option(
        None, "--spec", "-s", help="OpenAPI document URL or path, bypassing config.yaml."
    ),
):
    """Prints the synthesized schema of one resource type as JSON."""
    with _build_provider(provider_name, spec) as provider:
        console.print_json(json.dumps(provider.resource(type_name).describe()))


@app.command()
@handle_exceptions
def get(
    provider_name: str = typer.Argument(..., help="Service name from config.yaml."),
    type_name: str = typer.Argument(..., help="Resource type name, e.g. cdn_cdns."),
    identifier: str = typer.Argument(..., help="Identifier of the remote object."),
    spec: Optional[str] = typer.Option(
        None, "--spec", "-s", help="OpenAPI document URL or path, bypassing config.yaml."
    ),
):
    """Reads one remote object and prints its observed state as JSON."""
    with _build_provider(provider_name, spec) as provider:
        lifecycle = provider.resource(type_name).read(identifier)
        if lifecycle.observed is None:
            console.print(f"[yellow]{type_name} '{identifier}' does not exist.[/yellow]")
            raise typer.Exit(code=1)
        console.print_json(json.dumps(lifecycle.observed))


if __name__ == "__main__":
    app()
