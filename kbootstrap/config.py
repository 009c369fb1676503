"""Configuration management for kbootstrap.

Configuration is loaded from the following sources, later ones winning:
1. Default values
2. Configuration file (YAML)
3. Environment variables (``KBOOTSTRAP_*``, a ``.env`` file is honoured)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("kbootstrap.config")

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_CONFIG_PATHS: List[Path] = [
    Path("/etc/kbootstrap/config.yaml"),
    Path("~/.config/kbootstrap/config.yaml"),
    Path("kbootstrap-config.yaml"),
]

ENV_PREFIX = "KBOOTSTRAP_"


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    port: int = Field(default=22, description="SSH port number")
    connect_timeout: int = Field(default=10, description="SSH connection timeout in seconds")
    command_timeout: int = Field(default=900, description="Remote script timeout in seconds")


class RetryConfig(BaseModel):
    """Delay applied between attempts of a retryable script."""
    delay: float = Field(default=5.0, ge=0, description="Initial delay between attempts in seconds")
    backoff: float = Field(default=2.0, ge=1, description="Multiplier applied to the delay after each attempt")
    max_delay: float = Field(default=60.0, ge=0, description="Upper bound for the delay in seconds")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stdout only)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")

    @field_validator('level')
    @classmethod
    def upper_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


class StorageConfig(BaseModel):
    """Where bootstrap state documents are kept."""
    state_dir: str = Field(default="~/.kbootstrap/state", description="Root directory for state documents")

    @field_validator('state_dir')
    @classmethod
    def expand_state_dir(cls, v: str) -> str:
        """Expand the user home directory in the state path."""
        return os.path.expanduser(v)


class BootstrapConfig(BaseModel):
    """kbootstrap configuration."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = {"extra": "ignore"}

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


def _load_config_file(path: Path) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    try:
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        return {}


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Dict[str, str]]:
    """Collect ``KBOOTSTRAP_<SECTION>__<FIELD>`` variables into nested overrides."""
    overrides: Dict[str, Dict[str, str]] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        section, _, field = key[len(ENV_PREFIX):].lower().partition("__")
        if section in BootstrapConfig.model_fields and field:
            overrides.setdefault(section, {})[field] = value
    return overrides


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BootstrapConfig:
    """Load configuration from file and environment variables.

    Args:
        config_path: Explicit config file. If None, the default locations are tried.
        environ: Environment to read overrides from (defaults to ``os.environ``)

    Returns:
        BootstrapConfig instance
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path).expanduser().absolute()
        if path.exists():
            config_data = _load_config_file(path)
        else:
            logger.warning(f"Config file {path} does not exist, using defaults")
    else:
        for path in DEFAULT_CONFIG_PATHS:
            path = path.expanduser().absolute()
            if path.exists():
                config_data = _load_config_file(path)
                break

    for section, values in _env_overrides(dict(os.environ if environ is None else environ)).items():
        merged = dict(config_data.get(section) or {})
        merged.update(values)
        config_data[section] = merged

    return BootstrapConfig(**config_data)
