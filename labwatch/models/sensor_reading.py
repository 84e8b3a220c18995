"""Sensor reading data models for the laboratory sensor types."""

import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


THERMAL_GRID_SIZE = 8


class SensorType(str, Enum):
    """Sensor types a room can report."""

    TEMP_HUMIDITY = "tempHumidity"
    AIR_QUALITY = "airQuality"
    VIBRATION = "vibration"
    THERMAL_IMAGER = "thermalImager"
    PEOPLE_COUNT = "peopleCount"


class ReadingStatus(str, Enum):
    """Overall condition of a reading, set by the alert evaluator."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class AQILevel(str, Enum):
    """US EPA air quality index categories."""

    GOOD = "good"
    MODERATE = "moderate"
    UNHEALTHY_SENSITIVE = "unhealthy_sensitive"
    UNHEALTHY = "unhealthy"
    VERY_UNHEALTHY = "very_unhealthy"
    HAZARDOUS = "hazardous"


# (C_low, C_high, I_low, I_high) for 24h PM2.5 in µg/m³
PM25_AQI_BREAKPOINTS: Tuple[Tuple[float, float, int, int], ...] = (
    (0.0, 12.0, 0, 50),
    (12.1, 35.4, 51, 100),
    (35.5, 55.4, 101, 150),
    (55.5, 150.4, 151, 200),
    (150.5, 250.4, 201, 300),
    (250.5, 350.4, 301, 400),
    (350.5, 500.4, 401, 500),
)


def calculate_pm25_aqi(pm25: float) -> int:
    """Convert a PM2.5 concentration to an AQI value (0-500)."""
    concentration = math.floor(max(pm25, 0.0) * 10) / 10
    for c_low, c_high, i_low, i_high in PM25_AQI_BREAKPOINTS:
        if concentration <= c_high:
            return round((i_high - i_low) / (c_high - c_low) * (concentration - c_low) + i_low)
    return 500


def aqi_level_for(aqi: int) -> AQILevel:
    """Map an AQI value to its category."""
    if aqi <= 50:
        return AQILevel.GOOD
    elif aqi <= 100:
        return AQILevel.MODERATE
    elif aqi <= 150:
        return AQILevel.UNHEALTHY_SENSITIVE
    elif aqi <= 200:
        return AQILevel.UNHEALTHY
    elif aqi <= 300:
        return AQILevel.VERY_UNHEALTHY
    return AQILevel.HAZARDOUS


class BaseReading(BaseModel):
    """Fields shared by every sensor reading.

    Measurement fields on the subclasses are optional so that a reading with
    a missing value can still be evaluated; the affected check reports
    ``InvalidReading`` instead of the whole reading being rejected.
    """

    model_config = {
        "extra": "ignore",
        "populate_by_name": True,
        "alias_generator": to_camel,
    }

    sensor_id: Optional[str] = Field(default=None, description="Sensor identifier")
    room_id: Optional[str] = Field(default=None, description="Room the sensor is installed in")
    room_name: Optional[str] = Field(default=None, description="Display name of the room")
    name: Optional[str] = Field(default=None, description="Display name of the sensor")
    timestamp: datetime = Field(default_factory=datetime.now)
    status: ReadingStatus = Field(default=ReadingStatus.NORMAL)

    @property
    def display_name(self) -> str:
        """Name used in alert messages."""
        return self.name or self.sensor_id or "Unknown Sensor"


class TempHumidityReading(BaseReading):
    """SHT20 temperature (°C) and relative humidity (%) reading."""

    sensor_type: Literal["tempHumidity"] = Field(default="tempHumidity", alias="sensor_type")
    temperature: Optional[float] = Field(default=None, ge=-100.0, le=200.0)
    humidity: Optional[float] = Field(default=None, ge=0.0, le=100.0)

    def __str__(self) -> str:
        return f"{self.display_name}: {self.temperature}°C, {self.humidity}%"


class AirQualityReading(BaseReading):
    """SDS011 particulate matter reading in µg/m³."""

    sensor_type: Literal["airQuality"] = Field(default="airQuality", alias="sensor_type")
    pm25: Optional[float] = Field(default=None, ge=0.0)
    pm10: Optional[float] = Field(default=None, ge=0.0)
    aqi: Optional[int] = Field(default=None, ge=0, le=500)
    aqi_level: Optional[AQILevel] = None

    def model_post_init(self, __context: Any) -> None:
        """Derive AQI from PM2.5 when the device did not report it."""
        if self.pm25 is not None and self.aqi is None:
            self.aqi = calculate_pm25_aqi(self.pm25)
        if self.aqi is not None and self.aqi_level is None:
            self.aqi_level = aqi_level_for(self.aqi)


class VibrationReading(BaseReading):
    """MPU6050 RMS acceleration reading in g."""

    sensor_type: Literal["vibration"] = Field(default="vibration", alias="sensor_type")
    rms_acceleration: Optional[float] = Field(default=None, ge=0.0)


class ThermalImagerReading(BaseReading):
    """AMG8833 8x8 thermal imager frame."""

    sensor_type: Literal["thermalImager"] = Field(default="thermalImager", alias="sensor_type")
    temperatures: Optional[List[List[float]]] = Field(
        default=None,
        description="8x8 grid of per-cell temperatures in °C"
    )
    min_temp: Optional[float] = None
    max_temp: Optional[float] = None
    avg_temp: Optional[float] = None

    @field_validator('temperatures', mode='before')
    @classmethod
    def rows_from_mapping(cls, v: Any) -> Any:
        """Accept the row-keyed mapping form ({"0": [...], "1": [...]})."""
        if isinstance(v, dict):
            return [v[key] for key in sorted(v, key=lambda k: int(k))]
        return v

    @field_validator('temperatures')
    @classmethod
    def validate_grid(cls, v: Optional[List[List[float]]]) -> Optional[List[List[float]]]:
        """Validate the grid is 8x8."""
        if v is None:
            return v
        if len(v) != THERMAL_GRID_SIZE or any(len(row) != THERMAL_GRID_SIZE for row in v):
            raise ValueError(f"temperatures must be a {THERMAL_GRID_SIZE}x{THERMAL_GRID_SIZE} grid")
        return v

    def model_post_init(self, __context: Any) -> None:
        """Fill min/max/avg from the grid when they were not reported."""
        if not self.temperatures:
            return
        cells = [cell for row in self.temperatures for cell in row]
        if self.min_temp is None:
            self.min_temp = min(cells)
        if self.max_temp is None:
            self.max_temp = max(cells)
        if self.avg_temp is None:
            self.avg_temp = round(sum(cells) / len(cells), 2)


class PeopleCountReading(BaseReading):
    """Camera-based people count for a room."""

    sensor_type: Literal["peopleCount"] = Field(default="peopleCount", alias="sensor_type")
    count: Optional[int] = Field(default=None, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


SensorReading = Annotated[
    Union[
        TempHumidityReading,
        AirQualityReading,
        VibrationReading,
        ThermalImagerReading,
        PeopleCountReading,
    ],
    Field(discriminator="sensor_type"),
]

_reading_adapter: TypeAdapter = TypeAdapter(SensorReading)


def parse_reading(payload: Dict[str, Any]) -> BaseReading:
    """Build the reading variant named by the payload's sensor type.

    Raises pydantic.ValidationError when the payload cannot be parsed.
    """
    data = dict(payload)
    if "sensor_type" not in data and "sensorType" in data:
        data["sensor_type"] = data.pop("sensorType")
    return _reading_adapter.validate_python(data)
