"""Configuration management library with YAML support and hot-reload.

Provides:

- YAML file loading and saving
- Validation (structure, pydantic model, sanity warnings)
- Environment variable overrides (``LABWATCH_*``)
- Hot-reload with file watching
- Configuration merging and defaults

Usage:
    from labwatch.lib.config import ConfigManager

    config_manager = ConfigManager("labwatch.yaml")
    config = config_manager.load_config()

    # With hot-reload
    config_manager = ConfigManager("labwatch.yaml", hot_reload=True)
    config_manager.on_config_changed = my_callback
    config = config_manager.load_config()
"""

import os
import time
from pathlib import Path
from typing import Dict, Any, Optional, Callable, Union, List
from datetime import datetime
from threading import Thread, Event

import structlog
import yaml
from pydantic import ValidationError
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from ...models.configuration import LabwatchConfiguration
from .validation import (
    ConfigValidator,
    ValidationResult,
    generate_example_config,
    strip_unknown_keys,
)


logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


class ConfigChangeHandler(FileSystemEventHandler):
    """File system event handler for configuration hot-reload."""

    def __init__(self, config_manager: 'ConfigManager'):
        super().__init__()
        self.config_manager = config_manager

    def on_modified(self, event):
        if event.is_directory:
            return

        if Path(event.src_path).resolve() == self.config_manager.config_path.resolve():
            self.config_manager._trigger_reload()


class ConfigManager:
    """Configuration manager with YAML support and validation."""

    env_prefix = "LABWATCH_"

    # Environment variable suffix -> (config path, converter)
    env_mappings: Dict[str, tuple] = {
        "API_HOST": (["api", "host"], str),
        "API_PORT": (["api", "port"], int),
        "DEBUG": (["enable_debug_logging"], "bool"),
        "JSON_LOGS": (["json_logs"], "bool"),
        "DATABASE_PATH": (["storage", "database_path"], str),
        "IN_MEMORY": (["storage", "in_memory"], "bool"),
        "RETENTION_HOURS": (["storage", "retention_hours"], int),
        "CRITICAL_TEMP": (["thresholds", "critical_temp"], float),
        "HIGH_TEMP": (["thresholds", "high_temp"], float),
        "LOW_TEMP": (["thresholds", "low_temp"], float),
        "CRITICAL_LOW_TEMP": (["thresholds", "critical_low_temp"], float),
        "CRITICAL_HUMIDITY": (["thresholds", "critical_humidity"], float),
        "HIGH_HUMIDITY": (["thresholds", "high_humidity"], float),
        "LOW_HUMIDITY": (["thresholds", "low_humidity"], float),
    }

    def __init__(
        self,
        config_path: Union[str, Path],
        validate: bool = True,
        strict_validation: bool = False,
        hot_reload: bool = False,
        create_if_missing: bool = False
    ):
        self.config_path = Path(config_path)
        self.validate = validate
        self.strict_validation = strict_validation
        self.hot_reload = hot_reload
        self.create_if_missing = create_if_missing

        # State
        self._current_config: Optional[LabwatchConfiguration] = None
        self._last_loaded: Optional[datetime] = None
        self._last_validation: Optional[ValidationResult] = None

        # Hot-reload components
        self._observer: Optional[Observer] = None
        self._reload_event = Event()
        self._reload_thread: Optional[Thread] = None
        self._shutdown_event = Event()

        # Callbacks
        self.on_config_changed: Optional[Callable[[LabwatchConfiguration], None]] = None
        self.on_config_error: Optional[Callable[[Exception], None]] = None

        if self.create_if_missing and not self.config_path.exists():
            self._save_yaml_file(generate_example_config())
            logger.info("Created default configuration", path=str(self.config_path))

        if self.hot_reload:
            self._start_hot_reload()

    def load_config(self) -> LabwatchConfiguration:
        """Load, override, validate and return the configuration."""
        try:
            config_data = self._load_yaml_file()
            config_data = self._apply_env_overrides(config_data)

            if self.validate:
                validation_result = self._validate_config(config_data)
                self._last_validation = validation_result

                if not validation_result.is_valid:
                    raise ConfigurationError(
                        f"Configuration validation failed: {validation_result.errors[0]}"
                    )

                for warning in validation_result.warnings:
                    logger.warning("Configuration warning", detail=warning)

            if not self.strict_validation:
                config_data = strip_unknown_keys(config_data)

            try:
                self._current_config = LabwatchConfiguration(**config_data)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}") from e
            self._last_loaded = datetime.now()

            logger.info("Configuration loaded", path=str(self.config_path))
            return self._current_config

        except Exception as e:
            if self.on_config_error:
                self.on_config_error(e)
            raise

    def save_config(self, config: LabwatchConfiguration) -> None:
        """Save configuration to the YAML file."""
        self._save_yaml_file(config.export_dict())
        self._current_config = config
        self._last_loaded = datetime.now()

    def reload_config(self) -> LabwatchConfiguration:
        """Force reload configuration from file."""
        return self.load_config()

    def get_current_config(self) -> Optional[LabwatchConfiguration]:
        """Currently loaded configuration without reloading."""
        return self._current_config

    def is_config_stale(self) -> bool:
        """True when the file changed after the last load."""
        if not self._last_loaded:
            return True

        try:
            file_mtime = datetime.fromtimestamp(self.config_path.stat().st_mtime)
            return file_mtime > self._last_loaded
        except OSError:
            return True

    def get_validation_result(self) -> Optional[ValidationResult]:
        return self._last_validation

    def export_config_yaml(self, output_path: Optional[Path] = None) -> str:
        """Export current configuration to a YAML string or file."""
        if not self._current_config:
            raise ConfigurationError("No configuration loaded")

        yaml_content = self._dict_to_yaml(self._current_config.export_dict())

        if output_path:
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(yaml_content)

        return yaml_content

    def merge_config(self, override_data: Dict[str, Any]) -> LabwatchConfiguration:
        """Merge override data into the current (or default) configuration."""
        if not self._current_config:
            base_data = generate_example_config()
        else:
            base_data = self._current_config.export_dict()

        merged_data = self._deep_merge(base_data, override_data)

        if self.validate:
            validation_result = self._validate_config(merged_data)
            if not validation_result.is_valid:
                raise ConfigurationError(
                    f"Merged configuration validation failed: {validation_result.errors[0]}"
                )

        return LabwatchConfiguration(**merged_data)

    def _load_yaml_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML parsing error: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Error reading config file: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration file must contain a mapping")
        return data

    def _save_yaml_file(self, config_data: Dict[str, Any]) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                f.write(self._dict_to_yaml(config_data))
        except OSError as e:
            raise ConfigurationError(f"Error writing config file: {e}") from e

    def _dict_to_yaml(self, data: Dict[str, Any]) -> str:
        header = f"""# Labwatch alert service configuration
# Generated: {datetime.now().isoformat()}
#
# Thresholds are inclusive: a reading at exactly the threshold triggers it.
# Environment variables prefixed with {self.env_prefix} override file values.

"""
        yaml_content = yaml.dump(
            data,
            default_flow_style=False,
            indent=2,
            sort_keys=False,
            allow_unicode=True
        )
        return header + yaml_content

    def _validate_config(self, config_data: Dict[str, Any]) -> ValidationResult:
        validator = ConfigValidator(strict_mode=self.strict_validation)
        return validator.validate_config(config_data)

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        return self.apply_env_overrides(config_data)

    @classmethod
    def apply_env_overrides(cls, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of config_data with LABWATCH_* environment values applied."""
        modified_data = cls._deep_merge({}, config_data)

        for suffix, (path, converter) in cls.env_mappings.items():
            env_var = f"{cls.env_prefix}{suffix}"
            env_value = os.getenv(env_var)
            if env_value is None:
                continue

            try:
                converted = cls._convert_env_value(env_value, converter)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}") from e

            cls._set_nested_value(modified_data, path, converted)
            logger.debug("Applied environment override", variable=env_var)

        return modified_data

    @staticmethod
    def _convert_env_value(value: str, converter: Any) -> Any:
        if converter == "bool":
            return value.lower() in ('true', '1', 'yes', 'on')
        return converter(value)

    @staticmethod
    def _set_nested_value(data: Dict[str, Any], path: List[str], value: Any) -> None:
        current = data
        for key in path[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    @classmethod
    def _deep_merge(cls, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = cls._deep_merge(result[key], value)
            elif isinstance(value, dict):
                result[key] = cls._deep_merge({}, value)
            else:
                result[key] = value

        return result

    def _start_hot_reload(self) -> None:
        if not self.config_path.exists():
            logger.warning("Hot reload disabled, config file missing", path=str(self.config_path))
            return

        self._observer = Observer()
        self._observer.schedule(ConfigChangeHandler(self), str(self.config_path.parent), recursive=False)
        self._observer.start()

        self._reload_thread = Thread(target=self._reload_worker, daemon=True)
        self._reload_thread.start()
        logger.info("Configuration hot reload enabled", path=str(self.config_path))

    def _reload_worker(self) -> None:
        while not self._shutdown_event.is_set():
            if self._reload_event.wait(timeout=1.0):
                self._reload_event.clear()

                # Let the writer finish
                time.sleep(0.1)

                try:
                    new_config = self.load_config()
                except (ConfigurationError, ValidationError) as e:
                    logger.error("Configuration reload failed", error=str(e))
                    continue

                if self.on_config_changed:
                    self.on_config_changed(new_config)

    def _trigger_reload(self) -> None:
        self._reload_event.set()

    def shutdown(self) -> None:
        """Stop file watching."""
        self._shutdown_event.set()

        if self._observer:
            self._observer.stop()
            self._observer.join()

        if self._reload_thread:
            self._reload_thread.join(timeout=5.0)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def load_config_from_file(
    config_path: Union[str, Path],
    validate: bool = True
) -> LabwatchConfiguration:
    """Load configuration from a YAML file."""
    return ConfigManager(config_path, validate=validate).load_config()


def load_default_configuration() -> LabwatchConfiguration:
    """Default configuration with environment overrides applied."""
    data = ConfigManager.apply_env_overrides(generate_example_config())
    try:
        return LabwatchConfiguration(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def save_config_to_file(
    config: LabwatchConfiguration,
    config_path: Union[str, Path]
) -> None:
    """Save configuration to a YAML file."""
    ConfigManager(config_path, validate=False).save_config(config)


def create_default_config_file(config_path: Union[str, Path]) -> None:
    """Create a default configuration file if none exists."""
    ConfigManager(config_path, create_if_missing=True, validate=False)


__all__ = [
    "ConfigManager",
    "ConfigurationError",
    "load_config_from_file",
    "load_default_configuration",
    "save_config_to_file",
    "create_default_config_file",
]
