"""Alert data model for persisted laboratory alerts."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator


class AlertSeverity(str, Enum):
    """Alert severity levels, lowest to highest."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank for ordering severities."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class AlertType(str, Enum):
    """Kinds of alert."""

    # Environment
    HIGH_TEMPERATURE = "high_temperature"
    LOW_TEMPERATURE = "low_temperature"
    HIGH_HUMIDITY = "high_humidity"
    LOW_HUMIDITY = "low_humidity"
    POOR_AIR_QUALITY_PM25 = "poor_air_quality_pm25"
    POOR_AIR_QUALITY_PM10 = "poor_air_quality_pm10"
    THERMAL_ANOMALY = "thermal_anomaly"
    HIGH_VIBRATION = "high_vibration"

    # Occupancy
    ROOM_OVERCROWDED = "room_overcrowded"

    # System
    SYSTEM_NOTIFICATION = "system_notification"


class CheckKind(str, Enum):
    """One dimension of anomaly evaluation derived from a reading."""

    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    PM25 = "pm25"
    PM10 = "pm10"
    THERMAL = "thermal"
    VIBRATION = "vibration"
    OCCUPANCY = "occupancy"


class AlertStatus(str, Enum):
    """Alert lifecycle states."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class InvalidAlertTransition(Exception):
    """Raised when an alert lifecycle change is not allowed."""
    pass


def new_alert_id() -> str:
    """Generate a new alert identifier."""
    return uuid.uuid4().hex


class Alert(BaseModel):
    """Alert record raised for a room, optionally tied to one sensor."""

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
    }

    id: str = Field(default_factory=new_alert_id)
    room_id: str = Field(min_length=1, description="Room the alert belongs to")
    room_name: str = Field(min_length=1, description="Display name of the room")
    sensor_id: Optional[str] = Field(default=None, description="Sensor that triggered the alert")
    sensor_type: Optional[str] = Field(default=None, description="Type of the triggering sensor")
    alert_type: AlertType = Field(description="Kind of alert")
    check_kind: Optional[CheckKind] = Field(
        default=None,
        description="Evaluation dimension the alert was raised on"
    )
    severity: AlertSeverity = Field(description="Alert severity level")
    message: str = Field(min_length=1, max_length=500, description="Human-readable description")
    triggering_value: Optional[str] = Field(default=None, description="Value that crossed the threshold")
    triggered_at: datetime = Field(default_factory=datetime.now)

    # Lifecycle
    status: AlertStatus = Field(default=AlertStatus.OPEN)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional context")

    @field_validator('message', 'room_id', 'room_name')
    @classmethod
    def strip_text(cls, v: str) -> str:
        """Reject blank text after stripping."""
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @property
    def is_open(self) -> bool:
        """True while the alert has been neither acknowledged nor resolved."""
        return self.status == AlertStatus.OPEN

    @property
    def requires_attention(self) -> bool:
        """Open alerts of high or critical severity."""
        return self.is_open and self.severity.rank >= AlertSeverity.HIGH.rank

    @property
    def age_seconds(self) -> float:
        """Seconds since the alert was last triggered."""
        return (datetime.now(self.triggered_at.tzinfo) - self.triggered_at).total_seconds()

    def acknowledge(self, user_id: Optional[str] = None) -> None:
        """Mark the alert as acknowledged by an operator."""
        if self.status == AlertStatus.RESOLVED:
            raise InvalidAlertTransition(f"Alert {self.id} is already resolved")
        if self.status == AlertStatus.OPEN:
            self.status = AlertStatus.ACKNOWLEDGED
            self.acknowledged_at = datetime.now()
            self.acknowledged_by = user_id

    def resolve(self) -> None:
        """Close the alert."""
        if self.status == AlertStatus.RESOLVED:
            raise InvalidAlertTransition(f"Alert {self.id} is already resolved")
        self.status = AlertStatus.RESOLVED
        self.resolved_at = datetime.now()

    def to_log_entry(self) -> str:
        """Convert alert to a one-line log entry."""
        sensor_info = f" [{self.sensor_id}]" if self.sensor_id else ""
        return f"[{self.severity.value.upper()}]{sensor_info} {self.alert_type.value}: {self.message}"

    def __str__(self) -> str:
        timestamp_str = self.triggered_at.strftime("%H:%M:%S")
        return f"{timestamp_str} {self.severity.value.upper()} ({self.status.value}): {self.message}"
