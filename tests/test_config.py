import copy
import dataclasses

import pytest
import yaml

from newsdesk.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    build_config,
    get_runtime_config,
    load_config,
    load_runtime_config,
    set_runtime_config,
)


def test_bootstrap_seeds_runtime_config_with_data_dir(conn, tmp_path):
    cfg = bootstrap_runtime_config(conn)
    assert cfg["app"] == DEFAULT_CONFIG["app"]
    assert cfg["paths"]["data_dir"] == str(tmp_path / "data")
    assert cfg["paths"]["site_dir"].startswith(str(tmp_path / "data"))


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    set_runtime_config(conn, custom)
    assert get_runtime_config(conn)["app"]["name"] == "Test"
    assert load_runtime_config(conn).app.name == "Test"


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)


def test_build_config_rejects_out_of_range_threshold():
    with pytest.raises(ConfigError) as excinfo:
        build_config({"pipeline": {"fact_check_threshold": 1.5}})
    assert "fact_check_threshold" in str(excinfo.value)


def test_build_config_rejects_wrong_type_and_unknown_key():
    with pytest.raises(ConfigError):
        build_config({"pipeline": {"batch_size": "five"}})
    with pytest.raises(ConfigError):
        build_config({"pipeline": {"no_such_option": True}})


def test_config_is_immutable():
    config = build_config({})
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.pipeline.batch_size = 10


def test_config_lowercases_gate_lists():
    config = build_config({"pipeline": {"categories_require_approval": ["Politik"]}})
    assert config.pipeline.categories_require_approval == ("politik",)


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump({"pipeline": {"target_languages": ["de", "ua"], "auto_publish_enabled": True}}),
        encoding="utf-8",
    )
    config = load_config(str(path))
    assert config.pipeline.target_languages == ("de", "ua")
    assert config.pipeline.auto_publish_enabled is True
    assert config.scheduler.max_attempts == 3


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"))
