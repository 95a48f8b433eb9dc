# nxdeploy/core/config.py

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

import jsonschema
from jsonschema import Draft7Validator

from nxdeploy.core.io import atomic_write_text

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schema" / "config.v1.schema.json"
SCHEMA = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))

log = logging.getLogger(__name__)

CONFIG_ENV_VAR = "NXDEPLOY_CONFIG_FILE"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "nxdeploy" / "config.json"

_default_properties = Draft7Validator.VALIDATORS["properties"]


def _set_defaults(validator, properties, instance, schema):
    """
    jsonschema hook: whenever a property has a 'default', insert a copy of it,
    then delegate to the original Draft7 `properties` validator.
    """
    if not isinstance(instance, dict):
        return
    for prop, subschema in properties.items():
        if "default" in subschema:
            instance.setdefault(prop, copy.deepcopy(subschema["default"]))

    yield from _default_properties(validator, properties, instance, schema)


_DefaultingValidator = jsonschema.validators.extend(
    Draft7Validator, {"properties": _set_defaults}
)


def _deep_update(base: dict, updates: dict) -> None:
    for k, v in updates.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v


def schema_defaults() -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    for _ in _DefaultingValidator(SCHEMA).iter_errors(config):
        pass
    return config


def resolve_config_path(explicit: Path | None = None) -> Path:
    if explicit is not None:
        return explicit
    env_value = os.environ.get(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Loads and validates configuration against the JSON Schema.
    Fills in any missing properties with the schema's own default values.
    """
    log.debug(f"Attempting to load configuration from: {config_path}")

    config = schema_defaults()
    final_validator = Draft7Validator(SCHEMA)

    if not config_path.is_file():
        log.debug(f"No config at {config_path}; using schema defaults.")
        return config

    try:
        user_config = json.loads(config_path.read_text(encoding="utf-8"))
        final_validator.validate(user_config)
    except json.JSONDecodeError as e:
        log.error(f"Error parsing JSON in {config_path}: {e}")
        log.warning("Using schema defaults only.")
        return config
    except jsonschema.ValidationError as e:
        log.error(f"Configuration validation error: {e.message}")
        log.warning("Falling back to schema defaults.")
        return config

    _deep_update(config, user_config)

    try:
        final_validator.validate(config)
    except jsonschema.ValidationError as e:
        log.error(f"Merged configuration failed schema validation: {e.message}")
        raise

    log.debug("Configuration loaded and validated.")
    return config


def generate_default_config(config_path: Path = DEFAULT_CONFIG_PATH, force: bool = False) -> bool:
    """Write the schema defaults to `config_path`. Returns False if it already exists."""
    if config_path.is_file() and not force:
        log.info("Config already exists; skipping.")
        return False

    atomic_write_text(config_path, json.dumps(schema_defaults(), indent=4) + "\n")
    log.info(f"Default configuration written to {config_path}")
    return True
