import os
import json
import logging
import logging.handlers

import pytest

from urbanchange.config.settings import ConfigManager, LoggingConfig, setup_logging
from urbanchange.exceptions import InvalidThresholdConfig

ENV_VARS = [
    "URBAN_REGION", "URBAN_YEAR_START", "URBAN_YEAR_END", "URBAN_CLOUD_CEILING",
    "URBAN_MAX_PIXELS", "MAX_WORKERS", "TILE_SIZE", "LOG_LEVEL", "STAC_URL",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def manager(tmp_path):
    return ConfigManager(env_file=str(tmp_path / "missing.env"))


def test_defaults_reproduce_original_run(manager):
    analysis = manager.config.analysis
    assert analysis.region == "Montréal"
    assert analysis.years == [2019, 2020, 2021, 2022, 2023, 2024]
    assert analysis.month_window == [5, 10]
    assert analysis.cloud_ceiling == 8.0
    assert analysis.resolution == 10.0
    assert analysis.max_pixels == int(1e13)
    assert [c["name"] for c in analysis.threshold_configs] == ["original", "lenient", "strict", "ebbi"]
    assert manager.validate_config()


def test_file_overrides_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "analysis": {"region": "Laval", "year_range": [2020, 2022]},
        "processing": {"max_workers": 2},
    }))
    config = ConfigManager(str(path), env_file=str(tmp_path / "none.env")).config
    assert config.analysis.region == "Laval"
    assert config.analysis.years == [2020, 2021, 2022]
    assert config.analysis.month_window == [5, 10]
    assert config.processing.max_workers == 2


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"analysis": {"region": "Laval"}}))
    monkeypatch.setenv("URBAN_REGION", "Longueuil")
    monkeypatch.setenv("URBAN_YEAR_START", "2021")
    monkeypatch.setenv("URBAN_MAX_PIXELS", "1e9")
    monkeypatch.setenv("TILE_SIZE", "256")
    config = ConfigManager(str(path), env_file=str(tmp_path / "none.env")).config
    assert config.analysis.region == "Longueuil"
    assert config.analysis.year_range == [2021, 2024]
    assert config.analysis.max_pixels == 1_000_000_000
    assert config.processing.tile_size == 256


def test_dotenv_file_is_loaded(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("URBAN_CLOUD_CEILING=12.5\n")
    try:
        config = ConfigManager(env_file=str(env_file)).config
        assert config.analysis.cloud_ceiling == 12.5
    finally:
        os.environ.pop("URBAN_CLOUD_CEILING", None)


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigManager(str(tmp_path / "absent.json"))


@pytest.mark.parametrize(
    "section, field, value",
    [
        ("analysis", "year_range", [2024, 2019]),
        ("analysis", "month_window", [0, 10]),
        ("analysis", "cloud_ceiling", 0),
        ("analysis", "resolution", -10),
        ("analysis", "change_pairs", [[2023, 2019]]),
        ("processing", "max_workers", 0),
        ("processing", "tile_size", 8),
    ],
)
def test_validation_failures(manager, section, field, value):
    setattr(getattr(manager.config, section), field, value)
    assert manager.validate_config() is False


def test_invalid_threshold_raises(manager):
    manager.config.analysis.threshold_configs = [{"name": "x", "rules": [{"index": "NDBI", "comparator": "?", "value": 0}]}]
    with pytest.raises(InvalidThresholdConfig):
        manager.validate_config()


def test_save_and_reload(manager, tmp_path):
    path = tmp_path / "saved.json"
    manager.config.analysis.region = "Gatineau"
    manager.save_config(str(path))
    reloaded = ConfigManager(str(path), env_file=str(tmp_path / "none.env")).config
    assert reloaded.analysis.region == "Gatineau"
    assert reloaded.analysis.threshold_configs == manager.config.analysis.threshold_configs


def test_setup_logging_file_handler(tmp_path):
    root = logging.getLogger()
    saved = list(root.handlers)
    saved_level = root.level
    try:
        setup_logging(LoggingConfig(level="DEBUG", log_directory=str(tmp_path), file_logging=True))
        assert root.level == logging.DEBUG
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers)
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)
        root.setLevel(saved_level)
