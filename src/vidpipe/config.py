import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> (dotted config path, converter)
ENV_OVERRIDES = {
    "STORAGE_PATH": ("storage.path", str),
    "MAX_FILE_SIZE": ("storage.max_file_size", int),
    "ALLOWED_MIME_TYPES": ("storage.allowed_mime_types", lambda v: v.split(",")),
    "FFMPEG_PATH": ("engine.ffmpeg_path", str),
    "FFPROBE_PATH": ("engine.ffprobe_path", str),
    "FFMPEG_TIMEOUT": ("engine.timeout_s", int),
    "DEFAULT_QUALITIES": ("processing.default_qualities", lambda v: v.split(",")),
    "DEFAULT_FORMATS": ("processing.default_formats", lambda v: v.split(",")),
    "ENABLE_THUMBNAILS": ("processing.enable_thumbnails", lambda v: v != "false"),
    "ENABLE_PREVIEWS": ("processing.enable_previews", lambda v: v != "false"),
    "THUMBNAIL_COUNT": ("processing.thumbnail_count", int),
    "PREVIEW_DURATION": ("processing.preview_duration_s", int),
    "QUEUE_MAX_RETRIES": ("queue.max_attempts", int),
    "QUEUE_RETRY_DELAY": ("queue.retry_delay_s", float),
    "JOB_TIMEOUT": ("queue.job_timeout_s", int),
    "CLEANUP_INTERVAL": ("queue.cleanup_interval_s", int),
    "HIGH_PRIORITY_MAX_JOBS": ("queue.max_concurrent_jobs.high", int),
    "NORMAL_PRIORITY_MAX_JOBS": ("queue.max_concurrent_jobs.normal", int),
    "LOW_PRIORITY_MAX_JOBS": ("queue.max_concurrent_jobs.low", int),
    "THUMBNAIL_MAX_JOBS": ("queue.max_concurrent_jobs.thumbnail", int),
    "ENABLE_METRICS": ("monitoring.enable_metrics", lambda v: v != "false"),
    "METRICS_INTERVAL": ("monitoring.metrics_interval_s", int),
    "METRICS_RETENTION_DAYS": ("monitoring.retention_days", int),
    "ENABLE_AUTH": ("security.enable_auth", lambda v: v == "true"),
    "RATE_LIMIT_WINDOW": ("security.rate_limit_window_s", int),
    "RATE_LIMIT_MAX": ("security.rate_limit_max", int),
    "VIDPIPE_DB": ("database.path", str),
    "VIDPIPE_LOG_LEVEL": ("logging.level", str),
}

# CLI argument name -> dotted config path
CLI_OVERRIDES = {
    "db": "database.path",
    "storage": "storage.path",
    "log_level": "logging.level",
    "job_timeout": "queue.job_timeout_s",
    "ffmpeg": "engine.ffmpeg_path",
}


def get_config_value(config: Union[PipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineConfig model or dict
        path: Dot-separated path like "queue.job_timeout_s"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PipelineConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_config_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path inside a nested dict, creating intermediate dicts."""
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect recognised environment variables into a nested override dict."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for name, (path, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            set_config_value(overrides, path, convert(raw))
        except ValueError as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PipelineConfig model.

    Raises:
        pydantic.ValidationError: If the merged configuration is invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or an explicit file)
    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    if config_path is None:
        config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Environment variables
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. CLI overrides
    for arg, path in CLI_OVERRIDES.items():
        if cli_args.get(arg) is not None:
            set_config_value(config_data, path, cli_args[arg])

    return PipelineConfig.from_dict(config_data)
