"""Run configuration: defaults, JSON files and parameter objects."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Mapping

import jsonschema

from .clustering.engine import BHCParameters
from .clustering.seed import SEED_METHODS
from .scoring.prior import PriorPolicy, PriorSearchParameters


class ConfigurationError(ValueError):
    """Raised when a configuration file cannot be parsed or fails validation."""


DEFAULT_CONFIG: Dict[str, Any] = {
    "alignment": {
        "format": None,
        "polymorphic_only": False,
    },
    "prior": {
        "policy": PriorPolicy.BAPS.value,
        "symmetric_constant": 1.0,
        "lower": 5e-4,
        "upper": 10.0,
        "max_iter": 500,
        "tolerance": 1e-5,
    },
    "engine": {
        "concentration": None,
        "max_full_frontier": 200,
        "n_neighbors": 10,
        "n_jobs": 1,
    },
    "selection": {
        "threshold": 0.5,
    },
    "seeding": {
        "enabled": False,
        "k_init": None,
        "method": "average",
    },
    "multires": {
        "levels": 2,
        "min_split_size": 2,
    },
    "bootstrap": {
        "replicates": 100,
        "seed": None,
    },
}

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_NULLABLE_POSITIVE_NUMBER = {"type": ["number", "null"], "exclusiveMinimum": 0}


def _section(properties: Mapping[str, Any]) -> dict[str, Any]:
    return {"type": "object", "properties": dict(properties), "additionalProperties": False}


CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "alignment": _section(
            {
                "format": {"type": ["string", "null"]},
                "polymorphic_only": {"type": "boolean"},
            }
        ),
        "prior": _section(
            {
                "policy": {"type": "string"},
                "symmetric_constant": _POSITIVE_NUMBER,
                "lower": _POSITIVE_NUMBER,
                "upper": _POSITIVE_NUMBER,
                "max_iter": {"type": "integer", "minimum": 1},
                "tolerance": _POSITIVE_NUMBER,
            }
        ),
        "engine": _section(
            {
                "concentration": _NULLABLE_POSITIVE_NUMBER,
                "max_full_frontier": {"type": "integer", "minimum": 2},
                "n_neighbors": {"type": "integer", "minimum": 1},
                "n_jobs": {"type": "integer", "minimum": 1},
            }
        ),
        "selection": _section(
            {
                "threshold": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
            }
        ),
        "seeding": _section(
            {
                "enabled": {"type": "boolean"},
                "k_init": {"type": ["integer", "null"], "minimum": 1},
                "method": {"enum": list(SEED_METHODS)},
            }
        ),
        "multires": _section(
            {
                "levels": {"type": "integer", "minimum": 1},
                "min_split_size": {"type": "integer", "minimum": 2},
            }
        ),
        "bootstrap": _section(
            {
                "replicates": {"type": "integer", "minimum": 1},
                "seed": {"type": ["integer", "null"], "minimum": 0},
            }
        ),
    },
}

_VALIDATOR = jsonschema.Draft202012Validator(CONFIG_SCHEMA)


def validate_configuration(config: Mapping[str, Any]) -> None:
    """Raise :class:`ConfigurationError` listing every schema violation in ``config``."""

    errors = sorted(_VALIDATOR.iter_errors(config), key=lambda error: list(error.path))
    if errors:
        messages = []
        for error in errors:
            location = ".".join(str(part) for part in error.path) or "<root>"
            messages.append(f"{location}: {error.message}")
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(messages)}")

    policy = config.get("prior", {}).get("policy")
    if policy is not None:
        try:
            PriorPolicy.parse(policy)
        except ValueError as exc:
            raise ConfigurationError(f"prior.policy: {exc}") from exc


def load_configuration(config_path: str | Path) -> Dict[str, Any]:
    """Load a JSON configuration file and merge it over :data:`DEFAULT_CONFIG`.

    Raises
    ------
    FileNotFoundError
        If ``config_path`` does not exist.
    ConfigurationError
        If the file is not JSON or does not match :data:`CONFIG_SCHEMA`.
    """

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    if path.suffix.lower() != ".json":
        raise ConfigurationError(f"Unsupported config file format: {path.suffix}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            overrides = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Error parsing configuration file {path}: {exc}") from exc

    validate_configuration(overrides)
    return merge_configurations(DEFAULT_CONFIG, overrides)


def merge_configurations(base_config: Mapping[str, Any], override_config: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override_config`` into a copy of ``base_config`` and validate it."""

    def merge_dicts(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
        result = dict(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
                result[key] = merge_dicts(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    merged = merge_dicts(copy.deepcopy(dict(base_config)), override_config)
    validate_configuration(merged)
    return merged


def parameters_from_config(config: Mapping[str, Any]) -> BHCParameters:
    engine = config.get("engine", {})
    defaults = DEFAULT_CONFIG["engine"]
    try:
        return BHCParameters(**{key: engine.get(key, default) for key, default in defaults.items()})
    except ValueError as exc:
        raise ConfigurationError(f"engine: {exc}") from exc


def search_from_config(config: Mapping[str, Any]) -> PriorSearchParameters:
    prior = config.get("prior", {})
    defaults = DEFAULT_CONFIG["prior"]
    values = {key: prior.get(key, default) for key, default in defaults.items() if key != "policy"}
    try:
        return PriorSearchParameters(**values)
    except ValueError as exc:
        raise ConfigurationError(f"prior: {exc}") from exc


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationError",
    "DEFAULT_CONFIG",
    "load_configuration",
    "merge_configurations",
    "parameters_from_config",
    "search_from_config",
    "validate_configuration",
]
