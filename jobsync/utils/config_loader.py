"""Configuration loader for the job sync service."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from jobsync.models.config import AppConfig

log = structlog.stdlib.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self) -> None:
        # ${VAR} or ${VAR:-default}
        self.env_var_pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from a YAML file.

        Values not present in the file fall back to JOBSYNC_* environment
        variables, then to the model defaults.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/<JOBSYNC_ENV>.yaml or config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If the file is missing, unparseable or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info("configuration_loaded_successfully")
        return app_config

    def _get_default_config_path(self) -> str:
        env = os.getenv("JOBSYNC_ENV", "default")
        config_dir = Path(__file__).parent.parent.parent / "config"
        config_file = config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set JOBSYNC_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load a YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} references with environment values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        """Substitute environment variables in a string.

        Raises:
            ConfigurationError: If a variable without a default is not set
        """

        def replace(match: re.Match) -> str:
            var_name, default = match.group(1), match.group(2)
            env_value = os.getenv(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            raise ConfigurationError(
                f"Required environment variable not set: {var_name}. "
                f"Please set {var_name} in your environment or .env file."
            )

        return self.env_var_pattern.sub(replace, value)

    def validate_config(self, config: AppConfig) -> list[str]:
        """Check for settings that are valid but probably unintended.

        Returns:
            List of warning messages (empty if no warnings)
        """
        warnings = []

        if config.sync.concurrency > config.target.rate_limit_per_minute:
            warnings.append(
                f"sync.concurrency ({config.sync.concurrency}) exceeds "
                f"target.rate_limit_per_minute ({config.target.rate_limit_per_minute}); "
                f"extra workers will only wait on the rate limit"
            )

        if config.sync.state_backend == "memory":
            warnings.append(
                "sync.state_backend is 'memory'; sync state is lost between runs and "
                "every incremental run falls back to the lookback window"
            )

        if config.sync.internal_sector_id and not config.target.sectors_collection_id:
            warnings.append(
                "sync.internal_sector_id is set but target.sectors_collection_id is not; "
                "regular sector references will not be resolved"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
