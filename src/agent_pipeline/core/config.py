"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ExecutionConfig(BaseModel):
    """Execution-mode selection."""
    mode: Literal["auto", "cli", "api_key"] = "auto"

    # Upper bound on the stored-auth lookup before falling back
    auth_lookup_timeout: float = 5.0
    fallback_mode: Literal["cli", "api_key"] = "api_key"
    auth_cache_ttl: float = 60.0
    verify_cli_login: bool = False

    @field_validator('auth_lookup_timeout')
    @classmethod
    def validate_lookup_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"auth_lookup_timeout must be positive, got {v}")
        return v


class CLIConfig(BaseModel):
    """Claude CLI subprocess settings."""
    executable: str = "claude"
    protocol: Literal["stream_json", "text"] = "stream_json"
    default_model: str = "sonnet"
    startup_timeout: float = 120.0  # spawn -> first activity
    idle_timeout: float = 300.0  # between activity events
    max_turns: int = 20
    extra_args: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_timeouts(self) -> 'CLIConfig':
        if self.startup_timeout < 0 or self.idle_timeout < 0:
            raise ValueError("CLI timeouts must be >= 0 (0 disables the watchdog)")
        return self


class APIConfig(BaseModel):
    """In-process streaming client settings (litellm)."""
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    default_model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 0.0
    default_allowed_tools: List[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebSearch", "WebFetch"]
    )

    @field_validator('api_base')
    @classmethod
    def validate_api_base(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"api_base must start with http:// or https://, got '{v}'")
        return v


class PipelineConfig(BaseModel):
    """Pipeline step defaults."""
    memory_dir: Optional[Path] = None  # enables persisted iteration memory
    max_issues: int = 20
    memory_max_age_days: int = 30


class SchedulerConfig(BaseModel):
    """Resume scheduler settings."""
    # Re-arm delay when the quota source reports no reset time
    fallback_recheck_seconds: float = 900.0
    # rateLimits JSON kept current by another process; takes precedence over usage_command
    usage_file: Optional[Path] = None
    usage_command: List[str] = Field(default_factory=lambda: ["codex", "app-server"])
    usage_timeout_seconds: float = 20.0


class FrameworkConfig(BaseSettings):
    """Main configuration."""
    workspace: Path = Field(default=Path("."))
    logs_dir: Optional[Path] = None

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    cli: CLIConfig = Field(default_factory=CLIConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    class Config:
        env_prefix = "AGENT_PIPELINE_"
        env_file = ".env"
        extra = "allow"


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> FrameworkConfig:
    """Internal loader (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    config = FrameworkConfig(**data)

    if config.execution.mode == "api_key" and not (config.api.api_key or os.environ.get("ANTHROPIC_API_KEY")):
        logger.warning("execution.mode is 'api_key' but no API key is configured")

    return config


def load_config(config_path: Path = Path("agent-pipeline.yaml")) -> FrameworkConfig:
    """Load configuration from YAML file.

    Uses mtime-based caching: returns cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return FrameworkConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else FrameworkConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` values in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "api.api_key")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
