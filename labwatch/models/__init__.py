"""Data models for the laboratory alert service."""

from .sensor_reading import (
    SensorType,
    ReadingStatus,
    AQILevel,
    BaseReading,
    TempHumidityReading,
    AirQualityReading,
    VibrationReading,
    ThermalImagerReading,
    PeopleCountReading,
    SensorReading,
    parse_reading,
)
from .alert import (
    Alert,
    AlertSeverity,
    AlertType,
    AlertStatus,
    CheckKind,
    InvalidAlertTransition,
)
from .decisions import AlertDecision, NoAction, Raise, Escalate, Resolve, InvalidReading
from .configuration import AlertThresholds, StorageSettings, ApiSettings, LabwatchConfiguration

__all__ = [
    "SensorType",
    "ReadingStatus",
    "AQILevel",
    "BaseReading",
    "TempHumidityReading",
    "AirQualityReading",
    "VibrationReading",
    "ThermalImagerReading",
    "PeopleCountReading",
    "SensorReading",
    "parse_reading",
    "Alert",
    "AlertSeverity",
    "AlertType",
    "AlertStatus",
    "CheckKind",
    "InvalidAlertTransition",
    "AlertDecision",
    "NoAction",
    "Raise",
    "Escalate",
    "Resolve",
    "InvalidReading",
    "AlertThresholds",
    "StorageSettings",
    "ApiSettings",
    "LabwatchConfiguration",
]
