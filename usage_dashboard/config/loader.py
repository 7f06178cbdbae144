"""
Configuration management and loading.

Handles dashboard settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from usage_dashboard.core.cache import CachePolicy

DEFAULT_PROJECTS_PATH = "~/.claude/projects"

ENV_PROJECTS_PATH = "USAGE_DASHBOARD_PROJECTS_PATH"
ENV_PROCESSOR_PATH = "USAGE_DASHBOARD_PROCESSOR_PATH"
ENV_USE_PROCESSOR = "USAGE_DASHBOARD_USE_PROCESSOR"


@dataclass(frozen=True)
class CacheConfig:
    """Result cache settings."""
    ttl_seconds: float = 300.0
    policy: CachePolicy = CachePolicy.FINGERPRINT

    def __post_init__(self):
        """Validate cache values are positive."""
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")


@dataclass(frozen=True)
class ExternalProcessorConfig:
    """External processor settings; unused unless a path is set."""
    enabled: bool = True
    path: Optional[str] = None
    timeout_seconds: float = 30.0
    max_output_bytes: int = 50 * 1024 * 1024

    def __post_init__(self):
        """Validate processor limits."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.path)


@dataclass(frozen=True)
class DashboardConfig:
    """Complete dashboard configuration."""
    projects_path: str = DEFAULT_PROJECTS_PATH
    cache: CacheConfig = field(default_factory=CacheConfig)
    external_processor: ExternalProcessorConfig = field(default_factory=ExternalProcessorConfig)

    @property
    def projects_root(self) -> Path:
        return Path(os.path.expanduser(self.projects_path))


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_number(data: Dict, key: str, path: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return value


def _parse_cache_config(data: Dict) -> CacheConfig:
    """Parse and validate the ``cache`` section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {"ttl_seconds", "policy"}, "cache")
    defaults = CacheConfig()

    ttl = _positive_number(data, "ttl_seconds", "cache") if "ttl_seconds" in data else defaults.ttl_seconds

    policy = defaults.policy
    if "policy" in data:
        policy_str = data["policy"]
        if not isinstance(policy_str, str):
            raise ValueError("'policy' in cache must be a string")
        try:
            policy = CachePolicy(policy_str.lower())
        except ValueError:
            valid_policies = [p.value for p in CachePolicy]
            raise ValueError(f"'policy' in cache must be one of: {valid_policies}")

    return CacheConfig(ttl_seconds=float(ttl), policy=policy)


def _parse_processor_config(data: Dict) -> ExternalProcessorConfig:
    """Parse and validate the ``external_processor`` section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(
        data,
        {"enabled", "path", "timeout_seconds", "max_output_bytes"},
        "external_processor",
    )
    defaults = ExternalProcessorConfig()

    enabled = data.get("enabled", defaults.enabled)
    if not isinstance(enabled, bool):
        raise ValueError("'enabled' in external_processor must be a boolean")

    path = data.get("path", defaults.path)
    if path is not None and not isinstance(path, str):
        raise ValueError("'path' in external_processor must be a string")

    timeout = defaults.timeout_seconds
    if "timeout_seconds" in data:
        timeout = _positive_number(data, "timeout_seconds", "external_processor")

    max_output = defaults.max_output_bytes
    if "max_output_bytes" in data:
        max_output = _positive_number(data, "max_output_bytes", "external_processor")
        if not isinstance(max_output, int):
            raise ValueError("'max_output_bytes' in external_processor must be an integer")

    return ExternalProcessorConfig(
        enabled=enabled,
        path=os.path.expanduser(path) if path else None,
        timeout_seconds=float(timeout),
        max_output_bytes=max_output,
    )


def apply_environment(config: DashboardConfig, environ: Optional[Mapping[str, str]] = None) -> DashboardConfig:
    """Overlay environment variable overrides on a configuration.

    ``USAGE_DASHBOARD_USE_PROCESSOR=false`` disables the external processor.
    """
    env = os.environ if environ is None else environ

    projects_path = env.get(ENV_PROJECTS_PATH) or config.projects_path

    processor = config.external_processor
    if env.get(ENV_PROCESSOR_PATH):
        processor = replace(processor, path=os.path.expanduser(env[ENV_PROCESSOR_PATH]))
    if env.get(ENV_USE_PROCESSOR, "").strip().lower() == "false":
        processor = replace(processor, enabled=False)

    return replace(config, projects_path=projects_path, external_processor=processor)


def load_dashboard_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DashboardConfig:
    """Load and validate dashboard configuration.

    Built-in defaults are overlaid by the YAML file (if given) and then by
    environment variables.

    Args:
        path: Optional path to YAML configuration file
        environ: Environment mapping, ``os.environ`` when None

    Returns:
        Validated DashboardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return apply_environment(DashboardConfig(), environ)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Dashboard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config: Any = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _check_keys(raw_config, {"projects_path", "cache", "external_processor"}, "configuration")

    projects_path = raw_config.get("projects_path", DEFAULT_PROJECTS_PATH)
    if not isinstance(projects_path, str) or not projects_path.strip():
        raise ValueError("'projects_path' must be a non-empty string")

    cache_data = raw_config.get("cache", {}) or {}
    if not isinstance(cache_data, dict):
        raise ValueError("'cache' must be a dictionary")

    processor_data = raw_config.get("external_processor", {}) or {}
    if not isinstance(processor_data, dict):
        raise ValueError("'external_processor' must be a dictionary")

    config = DashboardConfig(
        projects_path=projects_path,
        cache=_parse_cache_config(cache_data),
        external_processor=_parse_processor_config(processor_data),
    )
    return apply_environment(config, environ)
