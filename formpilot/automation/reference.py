from functools import lru_cache
from pathlib import Path

import yaml

from formpilot.core.config import get_settings


@lru_cache
def load_reference(name: str, data_dir: str | None = None) -> dict:
    """Read-only reference table, loaded once per process and shared by every step."""
    root = Path(data_dir) if data_dir else get_settings().reference_data_dir
    path = Path(root) / f"{name}.yaml"
    with path.open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    table = document.get(name, {}) or {}
    return {str(key).strip().upper(): str(value) for key, value in table.items()}


@lru_cache
def default_location(data_dir: str | None = None) -> str:
    root = Path(data_dir) if data_dir else get_settings().reference_data_dir
    with (Path(root) / "locations.yaml").open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    return str(document.get("default", ""))


def lookup_code(table: dict, value) -> str:
    """Translate a display name into its option code. Unknown names pass through unchanged."""
    text = str(value).strip()
    return table.get(text.upper(), text)


def resolve_location(embassy: str | None) -> tuple[str, str]:
    """Return ``(code, label)`` for the requested interview location."""
    label = (embassy or "").strip()
    if not label or label.lower() == "not specified":
        label = default_location()
    table = load_reference("locations")
    return lookup_code(table, label), label.upper()
