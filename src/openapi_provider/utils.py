import os
import re
import sys
from pathlib import Path

# Single source of truth for the provider's configuration directory.
PROVIDER_HOME = Path(
    os.getenv("OPENAPI_PROVIDER_HOME", Path.home() / ".openapi-provider")
)

PYTHON_KEYWORDS = {
    "in",
    "from",
    "for",
    "is",
    "while",
    "class",
    "def",
    "return",
    "True",
    "False",
    "None",
}


def get_pkg_root() -> Path:
    """
    Gets the root directory of the openapi_provider package. This works
    correctly whether running from source or as a frozen executable.
    """
    if getattr(sys, "frozen", False):
        return Path(sys._MEIPASS) / "openapi_provider"
    return Path(__file__).parent


def get_assets_root() -> Path:
    """Gets the root directory of the bundled 'assets'."""
    return get_pkg_root() / "assets"


def is_url(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def resolve_path(path_str: str) -> Path:
    """
    Resolves a local document location. Accepts `file:` URLs, `~`-relative
    and CWD-relative paths.
    """
    if path_str.startswith("file:"):
        path_part = path_str.split(":", 1)[1]
        # file:///abs/path and file:/abs/path both collapse to /abs/path
        clean_path = "/" + path_part.lstrip("/")
        return Path(clean_path).resolve()
    return Path(path_str).expanduser().resolve()


def safe_snake_case(name: str) -> str:
    """
    Converts an API name (camelCase, kebab-case, dotted) into a snake_case
    name usable as a host-facing field name.
    """
    if not name:
        return "_unknown"
    s1 = re.sub(r"[-\s\.]+", "_", name)
    s2 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", s1)
    s3 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s2).lower()
    cleaned_name = re.sub(r"\W+", "", s3)
    cleaned_name = re.sub(r"_+", "_", cleaned_name)
    if cleaned_name and cleaned_name[0].isdigit():
        cleaned_name = "_" + cleaned_name
    if cleaned_name in PYTHON_KEYWORDS:
        return f"{cleaned_name}_"
    return cleaned_name or "_unknown"


_DURATION_REGEX = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """
    Parses a duration such as "30s", "2m", "1h" or "500ms" into seconds.
    A bare number is read as seconds.
    """
    match = _DURATION_REGEX.match(str(value))
    if not match:
        raise ValueError(f"'{value}' is not a valid duration (e.g. '30s', '2m', '1h')")
    unit = match.group("unit") or "s"
    return float(match.group("value")) * _DURATION_UNITS[unit]
