"""Load custom field ids from YAML (with fallbacks to the built-in defaults)."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .config import CUSTOM_FIELDS
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "custom_fields.yaml"
SHAPES = frozenset({"user", "option", "string"})


def load_custom_fields(path: str | Path | None = None) -> dict[str, tuple[str, str]]:
    """Return the attribute -> (field id, shape) table.

    The YAML file looks like::

        custom_fields:
          epic: customfield_10014
          tribe: {id: customfield_12100, shape: option}

    Only attributes already known in ``CUSTOM_FIELDS`` may be overridden; a
    plain string replaces the id and keeps the default shape.
    """
    table = dict(CUSTOM_FIELDS)
    yaml_path = Path(path) if path else Path.cwd() / DEFAULT_FILENAME
    if not yaml_path.exists():
        if path:
            raise ConfigError(f"Custom fields file not found: {yaml_path}")
        return table

    try:
        data = yaml.safe_load(yaml_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {yaml_path}: {exc}") from exc

    overrides = data.get("custom_fields") or {}
    if not isinstance(overrides, dict):
        raise ConfigError(f"'custom_fields' in {yaml_path} must be a mapping")

    for attribute, entry in overrides.items():
        if attribute not in table:
            raise ConfigError(f"Unknown custom attribute '{attribute}' in {yaml_path}")
        field_id, shape = table[attribute]
        if isinstance(entry, str):
            field_id = entry
        elif isinstance(entry, dict):
            field_id = entry.get("id", field_id)
            shape = entry.get("shape", shape)
        else:
            raise ConfigError(f"Invalid entry for '{attribute}' in {yaml_path}")
        if shape not in SHAPES:
            raise ConfigError(f"Unknown shape '{shape}' for '{attribute}' in {yaml_path}")
        table[attribute] = (field_id, shape)

    logger.debug("Loaded custom field ids from %s", yaml_path)
    return table
