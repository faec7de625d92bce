"""Tests for configuration loading and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from popbhc.config import (
    DEFAULT_CONFIG,
    ConfigurationError,
    load_configuration,
    merge_configurations,
    parameters_from_config,
    search_from_config,
    validate_configuration,
)


def _write_config(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "popbhc.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_defaults_are_valid() -> None:
    validate_configuration(DEFAULT_CONFIG)

    params = parameters_from_config(DEFAULT_CONFIG)
    assert params.max_full_frontier == 200
    assert params.concentration is None
    assert search_from_config(DEFAULT_CONFIG).upper == 10.0


def test_overrides_merge_over_defaults(tmp_path: Path) -> None:
    path = _write_config(tmp_path, {"engine": {"n_jobs": 4}, "prior": {"policy": "hc"}})

    config = load_configuration(path)

    assert config["engine"]["n_jobs"] == 4
    assert config["engine"]["n_neighbors"] == DEFAULT_CONFIG["engine"]["n_neighbors"]
    assert config["prior"]["policy"] == "hc"
    assert DEFAULT_CONFIG["engine"]["n_jobs"] == 1


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path, {"engine": {"n_workers": 4}})

    with pytest.raises(ConfigurationError, match="engine"):
        load_configuration(path)


def test_out_of_range_values_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="threshold"):
        merge_configurations(DEFAULT_CONFIG, {"selection": {"threshold": 1.5}})


def test_threshold_is_a_selection_setting() -> None:
    assert "threshold" not in DEFAULT_CONFIG["engine"]
    assert DEFAULT_CONFIG["selection"]["threshold"] == 0.5
    assert not hasattr(parameters_from_config(DEFAULT_CONFIG), "threshold")

    with pytest.raises(ConfigurationError, match="engine"):
        merge_configurations(DEFAULT_CONFIG, {"engine": {"threshold": 0.5}})


def test_unknown_prior_policy_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="prior.policy"):
        merge_configurations(DEFAULT_CONFIG, {"prior": {"policy": "uniform"}})


def test_inconsistent_search_bounds_are_rejected() -> None:
    config = merge_configurations(DEFAULT_CONFIG, {"prior": {"lower": 5.0, "upper": 1.0}})

    with pytest.raises(ConfigurationError, match="prior"):
        search_from_config(config)


def test_non_json_files_are_rejected(tmp_path: Path) -> None:
    path = tmp_path / "popbhc.yaml"
    path.write_text("engine: {}\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Unsupported"):
        load_configuration(path)


def test_malformed_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "popbhc.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="parsing"):
        load_configuration(path)


def test_missing_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_configuration(tmp_path / "absent.json")
