from pathlib import Path

import pytest
from pydantic import ValidationError

from vidpipe.config import (
    env_overrides,
    get_config_value,
    load_yaml,
    merge_dicts,
    resolve_config,
    set_config_value,
)
from vidpipe.models import PipelineConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config(environ={})
    assert isinstance(config, PipelineConfig)
    assert config.queue.max_attempts == 3
    assert config.queue.job_timeout_s == 1800
    assert config.queue.max_concurrent_jobs.normal == 5
    assert config.processing.default_qualities == ["720p", "480p", "360p"]
    assert config.processing.metadata_mode == "inline"


def test_explicit_config_file(tmp_path):
    """Test an explicit file replaces default.yaml."""
    path = tmp_path / "pipeline.yaml"
    path.write_text("queue:\n  max_attempts: 5\nstorage:\n  path: /data/videos\n")

    config = resolve_config(config_path=path, environ={})

    assert config.queue.max_attempts == 5
    assert config.storage.path == "/data/videos"
    # Unset sections keep model defaults
    assert config.queue.retry_delay_s == 30.0


def test_env_overrides_yaml():
    """Test environment variables override YAML defaults."""
    config = resolve_config(
        environ={
            "JOB_TIMEOUT": "600",
            "HIGH_PRIORITY_MAX_JOBS": "4",
            "DEFAULT_FORMATS": "mp4",
            "ENABLE_PREVIEWS": "false",
        }
    )
    assert config.queue.job_timeout_s == 600
    assert config.queue.max_concurrent_jobs.high == 4
    assert config.queue.max_concurrent_jobs.normal == 5
    assert config.processing.default_formats == ["mp4"]
    assert config.processing.enable_previews is False


def test_invalid_env_value():
    """Test a non-numeric value for a numeric variable is reported by name."""
    with pytest.raises(ValueError, match="JOB_TIMEOUT"):
        env_overrides({"JOB_TIMEOUT": "soon"})


def test_empty_env_value_is_ignored():
    assert env_overrides({"JOB_TIMEOUT": ""}) == {}


def test_cli_overrides_env():
    """Test CLI args take precedence over environment variables."""
    config = resolve_config(
        {"db": "cli.db", "job_timeout": 60, "storage": None},
        environ={"VIDPIPE_DB": "env.db", "STORAGE_PATH": "/env/storage"},
    )
    assert config.database.path == "cli.db"
    assert config.queue.job_timeout_s == 60
    assert config.storage.path == "/env/storage"


def test_invalid_merged_config():
    """Test validation errors surface from resolve_config."""
    with pytest.raises(ValidationError):
        resolve_config({"log_level": "LOUD"}, environ={})


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    assert load_yaml(Path("nonexistent.yaml")) == {}


def test_merge_dicts_is_recursive():
    base = {"queue": {"max_attempts": 3, "retry_delay_s": 30}}
    merged = merge_dicts(base, {"queue": {"max_attempts": 5}})
    assert merged == {"queue": {"max_attempts": 5, "retry_delay_s": 30}}
    assert base["queue"]["max_attempts"] == 3


def test_get_config_value_with_pydantic():
    """Test get_config_value helper with Pydantic model."""
    config = resolve_config(environ={})
    assert get_config_value(config, "queue.max_concurrent_jobs.thumbnail") == 8


def test_get_config_value_with_dict():
    """Test get_config_value helper with dict."""
    config_dict = {"queue": {"job_timeout_s": 90}}
    assert get_config_value(config_dict, "queue.job_timeout_s") == 90
    assert get_config_value(config_dict, "queue.missing", default="x") == "x"


def test_set_config_value_creates_sections():
    data = {}
    set_config_value(data, "queue.max_concurrent_jobs.low", 3)
    assert data == {"queue": {"max_concurrent_jobs": {"low": 3}}}
