"""Configuration validation utilities for YAML config files.

Validation runs in three steps: structure (known sections and keys), the
pydantic model (types, ranges and threshold ordering), and sanity checks that
produce warnings for values that are legal but unusual for a laboratory.
"""

from pathlib import Path
from typing import Dict, List, Any, Optional, Union

import yaml
from pydantic import ValidationError

from ...models.configuration import (
    AlertThresholds,
    ApiSettings,
    LabwatchConfiguration,
    StorageSettings,
)


class ConfigValidationError(Exception):
    """Custom exception for configuration validation errors."""

    def __init__(self, message: str, path: str = "", details: Optional[Dict] = None):
        self.message = message
        self.path = path
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.path:
            return f"Config validation error at '{self.path}': {self.message}"
        return f"Config validation error: {self.message}"


class ValidationResult:
    """Result of configuration validation."""

    def __init__(self):
        self.is_valid = True
        self.errors: List[ConfigValidationError] = []
        self.warnings: List[str] = []
        self.info: List[str] = []

    def add_error(self, error: ConfigValidationError) -> None:
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, message: str, path: str = "") -> None:
        warning_msg = f"Warning at '{path}': {message}" if path else f"Warning: {message}"
        self.warnings.append(warning_msg)

    def add_info(self, message: str) -> None:
        self.info.append(message)

    def get_summary(self) -> Dict[str, Any]:
        """Get validation summary."""
        return {
            "valid": self.is_valid,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "info_count": len(self.info),
            "errors": [str(error) for error in self.errors],
            "warnings": self.warnings,
            "info": self.info
        }


SECTION_MODELS = {
    "thresholds": AlertThresholds,
    "storage": StorageSettings,
    "api": ApiSettings,
}

TOP_LEVEL_FLAGS = {"enable_debug_logging", "json_logs"}


def strip_unknown_keys(config: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the configuration model does not know."""
    cleaned: Dict[str, Any] = {}
    for key, value in config.items():
        if key in TOP_LEVEL_FLAGS:
            cleaned[key] = value
        elif key in SECTION_MODELS:
            if isinstance(value, dict):
                fields = SECTION_MODELS[key].model_fields
                cleaned[key] = {k: v for k, v in value.items() if k in fields}
            else:
                cleaned[key] = value
    return cleaned


class ConfigValidator:
    """Configuration validator."""

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode
        self.result = ValidationResult()

    def validate_config(self, config_data: Dict[str, Any]) -> ValidationResult:
        """Validate complete configuration dictionary."""
        self.result = ValidationResult()

        if not isinstance(config_data, dict):
            self.result.add_error(ConfigValidationError("Configuration must be a mapping"))
            return self.result

        self._validate_structure(config_data)
        if not self.strict_mode:
            config_data = strip_unknown_keys(config_data)
        config_obj = self._validate_pydantic_model(config_data)

        if config_obj:
            self._validate_thresholds(config_obj.thresholds)
            self._validate_storage(config_obj.storage)

        return self.result

    def validate_yaml_file(self, file_path: Union[str, Path]) -> ValidationResult:
        """Validate YAML configuration file."""
        self.result = ValidationResult()
        file_path = Path(file_path)

        if not file_path.is_file():
            self.result.add_error(ConfigValidationError(
                f"Configuration file does not exist: {file_path}"
            ))
            return self.result

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            self.result.add_error(ConfigValidationError(f"YAML parsing error: {e}"))
            return self.result

        return self.validate_config(config_data)

    def _validate_structure(self, config: Dict[str, Any]) -> None:
        """Check for unknown sections and keys."""
        known_keys = set(SECTION_MODELS) | TOP_LEVEL_FLAGS
        unknown = [key for key in config if key not in known_keys]

        for section, model in SECTION_MODELS.items():
            values = config.get(section)
            if values is None:
                continue
            if not isinstance(values, dict):
                self.result.add_error(ConfigValidationError(
                    "Section must be a mapping", path=section
                ))
                continue
            unknown.extend(
                f"{section}.{key}" for key in values if key not in model.model_fields
            )

        if not unknown:
            return
        if self.strict_mode:
            for key in unknown:
                self.result.add_error(ConfigValidationError(
                    f"Unknown configuration key: {key}", path=key
                ))
        else:
            self.result.add_warning(
                f"Unknown configuration keys (will be ignored): {', '.join(unknown)}"
            )

    def _validate_pydantic_model(self, config: Dict[str, Any]) -> Optional[LabwatchConfiguration]:
        try:
            config_obj = LabwatchConfiguration(**config)
            self.result.add_info("Pydantic model validation passed")
            return config_obj

        except ValidationError as e:
            for error in e.errors():
                field_path = ".".join(str(x) for x in error['loc'])
                self.result.add_error(ConfigValidationError(
                    error['msg'],
                    path=field_path,
                    details={"type": error['type'], "input": error.get('input')}
                ))
            return None

    def _validate_thresholds(self, thresholds: AlertThresholds) -> None:
        """Warn about thresholds that are legal but unusual."""
        if thresholds.critical_temp > 60:
            self.result.add_warning(
                f"Critical temperature {thresholds.critical_temp}°C is above typical lab limits",
                path="thresholds.critical_temp"
            )

        if thresholds.critical_low_temp < -30:
            self.result.add_warning(
                f"Critical low temperature {thresholds.critical_low_temp}°C will rarely trigger",
                path="thresholds.critical_low_temp"
            )

        if thresholds.thermal_high_max <= thresholds.high_temp:
            self.result.add_warning(
                "Thermal hotspot threshold is not above the room high temperature; "
                "thermal alerts may fire for ordinary warm rooms",
                path="thresholds.thermal_high_max"
            )

        if thresholds.min_people_confidence < 0.3:
            self.result.add_warning(
                f"Low people-count confidence ({thresholds.min_people_confidence}) "
                "may cause false overcrowding alerts",
                path="thresholds.min_people_confidence"
            )

        defaults = AlertThresholds()
        changed = [
            name for name in AlertThresholds.model_fields
            if getattr(thresholds, name) != getattr(defaults, name)
        ]
        if changed:
            self.result.add_info(f"Non-default thresholds: {', '.join(changed)}")

    def _validate_storage(self, storage: StorageSettings) -> None:
        if storage.in_memory:
            self.result.add_info("Alerts are kept in memory and lost on restart")
        elif not Path(storage.database_path).parent.exists():
            self.result.add_warning(
                f"Directory for {storage.database_path} does not exist yet",
                path="storage.database_path"
            )


def validate_config_dict(config_data: Dict[str, Any], strict: bool = False) -> ValidationResult:
    """Validate configuration dictionary (convenience function)."""
    return ConfigValidator(strict_mode=strict).validate_config(config_data)


def validate_config_file(file_path: Union[str, Path], strict: bool = False) -> ValidationResult:
    """Validate configuration YAML file (convenience function)."""
    return ConfigValidator(strict_mode=strict).validate_yaml_file(file_path)


def create_config_schema() -> Dict[str, Any]:
    """JSON schema for the configuration file."""
    return LabwatchConfiguration.model_json_schema()


def generate_example_config() -> Dict[str, Any]:
    """Generate example configuration dictionary."""
    return LabwatchConfiguration().export_dict()
