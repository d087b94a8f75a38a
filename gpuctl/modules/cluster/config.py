"""Installer settings management.

Settings that tune how the installer behaves on a host (log output, polling
budgets, well-known system file locations) are loaded with the following
precedence:
1. Environment variables (``GPUCTL_<SECTION>__<FIELD>``)
2. Configuration file (explicit path, else the first default path found)
3. Default values

What gets installed is described by :class:`~.models.Configuration`, built from
command line options; these settings only change how the host is driven.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("gpuctl.config")

ENV_PREFIX = "GPUCTL_"
ENV_NESTED_DELIMITER = "__"

DEFAULT_CONFIG_PATHS = [
    Path("/etc/gpuctl/config.yaml"),
    Path("~/.config/gpuctl/config.yaml").expanduser(),
    Path("gpuctl.yaml").absolute(),
]


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    file: Optional[str] = Field(
        default=None,
        description="Path to log file (if None, logs to stderr only)"
    )
    max_size_mb: int = Field(
        default=100,
        description="Maximum log file size in MB before rotation"
    )
    backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep"
    )

    @field_validator('level')
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class PollingConfig(BaseModel):
    """Attempt counts and fixed intervals of the bounded waits."""
    mesh_attempts: int = Field(default=30, description="Polls for a mesh-assigned address")
    mesh_interval: float = Field(default=2.0, description="Seconds between mesh polls")
    storage_attempts: int = Field(default=10, description="Polls for the storage export")
    storage_interval: float = Field(default=5.0, description="Seconds between export polls")
    database_attempts: int = Field(default=30, description="Polls for database readiness")
    database_interval: float = Field(default=2.0, description="Seconds between database polls")
    reachability_timeout: float = Field(default=5.0, description="Coordinator probe timeout")


class HostPathsConfig(BaseModel):
    """Locations of system files the installer edits."""
    unit_dir: Path = Path("/etc/systemd/system")
    exports_file: Path = Path("/etc/exports")
    fstab_file: Path = Path("/etc/fstab")
    limits_file: Path = Path("/etc/security/limits.d/99-backendai.conf")
    sysctl_file: Path = Path("/etc/sysctl.d/99-backendai.conf")
    cuda_ld_conf: Path = Path("/etc/ld.so.conf.d/cuda.conf")
    cuda_profile: Path = Path("/etc/profile.d/cuda.sh")
    pyenv_profile: Path = Path("/etc/profile.d/pyenv.sh")
    os_release: Path = Path("/etc/os-release")


class InstallerSettings(BaseModel):
    """gpuctl installer settings."""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    paths: HostPathsConfig = Field(default_factory=HostPathsConfig)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'InstallerSettings':
        """Load settings from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if config_path.exists():
                config_data = cls._load_config_file(config_path)
            else:
                logger.warning(f"Settings file {config_path} not found, using defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        _apply_env_overrides(config_data, os.environ)
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load settings from a YAML file."""
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load settings from {path}: {e}")
            return {}

    def save(self, path: Union[str, Path]) -> None:
        """Save settings to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode='json', exclude_none=True), f,
                           default_flow_style=False, sort_keys=False)


def _apply_env_overrides(data: Dict[str, Any], environ: Any) -> None:
    """Fold ``GPUCTL_SECTION__FIELD`` variables into the loaded mapping."""
    sections = set(InstallerSettings.model_fields)
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or ENV_NESTED_DELIMITER not in key:
            continue
        section, _, name = key[len(ENV_PREFIX):].lower().partition(ENV_NESTED_DELIMITER)
        if section not in sections or not name:
            continue
        target = data.setdefault(section, {})
        if isinstance(target, dict):
            target[name] = value

