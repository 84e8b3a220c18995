"""Configuration models: alert thresholds, storage and API settings."""

from typing import Dict, Any
from pydantic import BaseModel, Field, computed_field, model_validator


class AlertThresholds(BaseModel):
    """Fixed alert thresholds for every sensor type.

    Ordering between related thresholds is checked at construction so a
    corrupt configuration fails when the process starts, not per reading.
    """

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    # Temperature (°C)
    critical_temp: float = Field(default=35.0, description="Critical high temperature")
    high_temp: float = Field(default=30.0, description="High temperature")
    low_temp: float = Field(default=10.0, description="Low temperature")
    critical_low_temp: float = Field(default=5.0, description="Critical low temperature")

    # Relative humidity (%)
    critical_humidity: float = Field(default=80.0, ge=0.0, le=100.0)
    high_humidity: float = Field(default=70.0, ge=0.0, le=100.0)
    low_humidity: float = Field(default=20.0, ge=0.0, le=100.0)

    # Particulate matter (µg/m³)
    pm25_critical: float = Field(default=150.5, gt=0.0)
    pm25_high: float = Field(default=55.5, gt=0.0)
    pm25_medium: float = Field(default=35.5, gt=0.0)
    pm10_critical: float = Field(default=425.0, gt=0.0)
    pm10_high: float = Field(default=255.0, gt=0.0)
    pm10_medium: float = Field(default=155.0, gt=0.0)

    # Thermal imager (°C)
    thermal_critical_avg: float = Field(default=60.0)
    thermal_high_avg: float = Field(default=50.0)
    thermal_critical_max: float = Field(default=70.0, description="Hottest single cell, critical")
    thermal_high_max: float = Field(default=60.0, description="Hottest single cell, high")

    # Vibration (RMS acceleration, g)
    vibration_critical: float = Field(default=5.0, gt=0.0)
    vibration_high: float = Field(default=2.0, gt=0.0)

    # Occupancy (people)
    occupancy_critical: int = Field(default=20, ge=1)
    occupancy_high: int = Field(default=10, ge=1)
    min_people_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="People counts below this confidence are not evaluated"
    )

    @model_validator(mode='after')
    def check_ordering(self) -> 'AlertThresholds':
        """Validate threshold ordering."""
        ascending = [
            ("critical_low_temp", "low_temp"),
            ("low_temp", "high_temp"),
            ("high_temp", "critical_temp"),
            ("low_humidity", "high_humidity"),
            ("high_humidity", "critical_humidity"),
            ("pm25_medium", "pm25_high"),
            ("pm25_high", "pm25_critical"),
            ("pm10_medium", "pm10_high"),
            ("pm10_high", "pm10_critical"),
            ("thermal_high_avg", "thermal_critical_avg"),
            ("thermal_high_max", "thermal_critical_max"),
            ("vibration_high", "vibration_critical"),
            ("occupancy_high", "occupancy_critical"),
        ]
        for lower, upper in ascending:
            if getattr(self, lower) >= getattr(self, upper):
                raise ValueError(f"{lower} must be lower than {upper}")
        return self


class StorageSettings(BaseModel):
    """Alert persistence settings."""

    in_memory: bool = Field(default=True, description="Keep alerts in an in-memory database")
    database_path: str = Field(default="labwatch_alerts.db", description="SQLite file when not in memory")
    retention_hours: int = Field(
        default=24 * 7,
        ge=1,
        le=24 * 365,
        description="How long resolved alerts are kept"
    )


class ApiSettings(BaseModel):
    """HTTP API settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5002, ge=1024, le=65535, description="HTTP API server port")

    @computed_field
    @property
    def base_url(self) -> str:
        """Base URL clients should use."""
        return f"http://{self.host}:{self.port}"


class LabwatchConfiguration(BaseModel):
    """Complete service configuration."""

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
        "json_schema_extra": {
            "example": {
                "thresholds": {"critical_temp": 35.0, "high_temp": 30.0},
                "storage": {"in_memory": True},
                "api": {"port": 5002}
            }
        }
    }

    thresholds: AlertThresholds = Field(
        default_factory=AlertThresholds,
        description="Alert thresholds"
    )
    storage: StorageSettings = Field(
        default_factory=StorageSettings,
        description="Alert persistence"
    )
    api: ApiSettings = Field(
        default_factory=ApiSettings,
        description="HTTP API"
    )

    enable_debug_logging: bool = Field(
        default=False,
        description="Enable debug level logging"
    )
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON lines"
    )

    def export_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary for YAML/JSON serialization."""
        return self.model_dump(mode='json', exclude={"api": {"base_url"}})
