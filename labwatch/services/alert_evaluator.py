"""AlertEvaluator: threshold rules that turn one sensor reading into alert decisions.

The evaluator is pure and synchronous. It owns no state and performs no I/O:
the caller supplies the open alerts for the reading's sensor and persists the
returned decisions. Callers that evaluate concurrently must serialise
evaluate-then-persist per sensor themselves (see AlertProcessor).
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ..models import (
    Alert,
    AlertSeverity,
    AlertThresholds,
    AlertType,
    BaseReading,
    CheckKind,
    ReadingStatus,
    SensorType,
    parse_reading,
)
from ..models.decisions import AlertDecision, Escalate, InvalidReading, NoAction, Raise, Resolve


logger = structlog.get_logger(__name__)

_ALERT_ID_NAMESPACE = uuid.UUID("5b8f4a36-2a39-4c1e-9a53-0c1d7e0b6f21")

MAX_MESSAGE_LENGTH = 500


class Comparator(str, Enum):
    """How a reading value is compared against a threshold."""

    AT_LEAST = ">="
    AT_MOST = "<="

    def matches(self, value: float, threshold: float) -> bool:
        if self is Comparator.AT_LEAST:
            return value >= threshold
        return value <= threshold


@dataclass(frozen=True)
class ThresholdRule:
    """One (severity, comparator, threshold) entry of a check."""

    severity: AlertSeverity
    comparator: Comparator
    threshold: float
    field: str
    alert_type: AlertType
    condition: str
    label: str = ""


@dataclass(frozen=True)
class CheckDefinition:
    """An independent check on one reading, rules ordered high to low severity."""

    kind: CheckKind
    fields: Tuple[str, ...]
    unit: str
    rules: Tuple[ThresholdRule, ...]
    confidence_field: Optional[str] = None
    min_confidence: float = 0.0


ThresholdTable = Dict[SensorType, Tuple[CheckDefinition, ...]]


ALERT_TYPE_CHECK_KINDS: Dict[AlertType, CheckKind] = {
    AlertType.HIGH_TEMPERATURE: CheckKind.TEMPERATURE,
    AlertType.LOW_TEMPERATURE: CheckKind.TEMPERATURE,
    AlertType.HIGH_HUMIDITY: CheckKind.HUMIDITY,
    AlertType.LOW_HUMIDITY: CheckKind.HUMIDITY,
    AlertType.POOR_AIR_QUALITY_PM25: CheckKind.PM25,
    AlertType.POOR_AIR_QUALITY_PM10: CheckKind.PM10,
    AlertType.THERMAL_ANOMALY: CheckKind.THERMAL,
    AlertType.HIGH_VIBRATION: CheckKind.VIBRATION,
    AlertType.ROOM_OVERCROWDED: CheckKind.OCCUPANCY,
}


def build_threshold_table(thresholds: AlertThresholds) -> ThresholdTable:
    """Build the sensor type -> checks lookup table from configured thresholds."""
    t = thresholds
    critical = AlertSeverity.CRITICAL
    high = AlertSeverity.HIGH
    medium = AlertSeverity.MEDIUM
    at_least = Comparator.AT_LEAST
    at_most = Comparator.AT_MOST

    temperature = CheckDefinition(
        kind=CheckKind.TEMPERATURE,
        fields=("temperature",),
        unit="°C",
        rules=(
            ThresholdRule(critical, at_least, t.critical_temp, "temperature",
                          AlertType.HIGH_TEMPERATURE, "Critical high temperature"),
            ThresholdRule(high, at_least, t.high_temp, "temperature",
                          AlertType.HIGH_TEMPERATURE, "High temperature"),
            ThresholdRule(critical, at_most, t.critical_low_temp, "temperature",
                          AlertType.LOW_TEMPERATURE, "Critical low temperature"),
            ThresholdRule(high, at_most, t.low_temp, "temperature",
                          AlertType.LOW_TEMPERATURE, "Low temperature"),
        ),
    )
    humidity = CheckDefinition(
        kind=CheckKind.HUMIDITY,
        fields=("humidity",),
        unit="%",
        rules=(
            ThresholdRule(critical, at_least, t.critical_humidity, "humidity",
                          AlertType.HIGH_HUMIDITY, "Critical high humidity"),
            ThresholdRule(high, at_least, t.high_humidity, "humidity",
                          AlertType.HIGH_HUMIDITY, "High humidity"),
            ThresholdRule(medium, at_most, t.low_humidity, "humidity",
                          AlertType.LOW_HUMIDITY, "Low humidity"),
        ),
    )
    pm25 = CheckDefinition(
        kind=CheckKind.PM25,
        fields=("pm25",),
        unit=" µg/m³",
        rules=(
            ThresholdRule(critical, at_least, t.pm25_critical, "pm25",
                          AlertType.POOR_AIR_QUALITY_PM25, "Critical PM2.5 level", "PM2.5 "),
            ThresholdRule(high, at_least, t.pm25_high, "pm25",
                          AlertType.POOR_AIR_QUALITY_PM25, "High PM2.5 level", "PM2.5 "),
            ThresholdRule(medium, at_least, t.pm25_medium, "pm25",
                          AlertType.POOR_AIR_QUALITY_PM25,
                          "Moderate PM2.5 level (sensitive groups)", "PM2.5 "),
        ),
    )
    pm10 = CheckDefinition(
        kind=CheckKind.PM10,
        fields=("pm10",),
        unit=" µg/m³",
        rules=(
            ThresholdRule(critical, at_least, t.pm10_critical, "pm10",
                          AlertType.POOR_AIR_QUALITY_PM10, "Critical PM10 level", "PM10 "),
            ThresholdRule(high, at_least, t.pm10_high, "pm10",
                          AlertType.POOR_AIR_QUALITY_PM10, "High PM10 level", "PM10 "),
            ThresholdRule(medium, at_least, t.pm10_medium, "pm10",
                          AlertType.POOR_AIR_QUALITY_PM10,
                          "Moderate PM10 level (sensitive groups)", "PM10 "),
        ),
    )
    thermal = CheckDefinition(
        kind=CheckKind.THERMAL,
        fields=("max_temp", "avg_temp"),
        unit="°C",
        rules=(
            ThresholdRule(critical, at_least, t.thermal_critical_max, "max_temp",
                          AlertType.THERMAL_ANOMALY, "Critical thermal anomaly", "max "),
            ThresholdRule(critical, at_least, t.thermal_critical_avg, "avg_temp",
                          AlertType.THERMAL_ANOMALY, "Critical thermal anomaly", "avg "),
            ThresholdRule(high, at_least, t.thermal_high_max, "max_temp",
                          AlertType.THERMAL_ANOMALY, "High thermal anomaly", "max "),
            ThresholdRule(high, at_least, t.thermal_high_avg, "avg_temp",
                          AlertType.THERMAL_ANOMALY, "High thermal anomaly", "avg "),
        ),
    )
    vibration = CheckDefinition(
        kind=CheckKind.VIBRATION,
        fields=("rms_acceleration",),
        unit="g",
        rules=(
            ThresholdRule(critical, at_least, t.vibration_critical, "rms_acceleration",
                          AlertType.HIGH_VIBRATION, "Critical vibration"),
            ThresholdRule(high, at_least, t.vibration_high, "rms_acceleration",
                          AlertType.HIGH_VIBRATION, "High vibration"),
        ),
    )
    occupancy = CheckDefinition(
        kind=CheckKind.OCCUPANCY,
        fields=("count",),
        unit=" people",
        rules=(
            ThresholdRule(critical, at_least, t.occupancy_critical, "count",
                          AlertType.ROOM_OVERCROWDED, "Critical overcrowding"),
            ThresholdRule(high, at_least, t.occupancy_high, "count",
                          AlertType.ROOM_OVERCROWDED, "Overcrowding"),
        ),
        confidence_field="confidence",
        min_confidence=t.min_people_confidence,
    )

    return {
        SensorType.TEMP_HUMIDITY: (temperature, humidity),
        SensorType.AIR_QUALITY: (pm25, pm10),
        SensorType.THERMAL_IMAGER: (thermal,),
        SensorType.VIBRATION: (vibration,),
        SensorType.PEOPLE_COUNT: (occupancy,),
    }


@dataclass(frozen=True)
class _CheckOutcome:
    """Classification of one check before open alerts are considered."""

    check: CheckDefinition
    rule: Optional[ThresholdRule] = None
    value: Optional[float] = None
    invalid: Optional[InvalidReading] = None
    skipped: Optional[str] = None


def format_number(value: float) -> str:
    """Format a measurement without trailing zeros (32.0 -> "32")."""
    if float(value).is_integer():
        return str(int(value))
    return str(round(value, 2))


def _fit_message(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[:MAX_MESSAGE_LENGTH - 3].rstrip() + "..."


def _comparable_time(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken as local time."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc)


def _extract_number(reading: Any, field: str) -> Tuple[Optional[float], Optional[str]]:
    """Return (value, None) or (None, problem) for a reading field."""
    if isinstance(reading, Mapping):
        raw = reading.get(field, reading.get(to_camel(field)))
    else:
        raw = getattr(reading, field, None)

    if raw is None:
        return None, "missing"
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None, f"not numeric: {raw!r}"
    if not math.isfinite(raw):
        return None, f"not finite: {raw!r}"
    return float(raw), None


class AlertEvaluator:
    """Stateless threshold evaluator for sensor readings."""

    def __init__(self, thresholds: Optional[AlertThresholds] = None):
        """Build the threshold table once; invalid thresholds fail here."""
        self.thresholds = thresholds or AlertThresholds()
        self.table: ThresholdTable = build_threshold_table(self.thresholds)

    def evaluate(self,
                 room_id: str,
                 room_name: str,
                 sensor_id: str,
                 sensor_type: Union[SensorType, str],
                 reading: Union[BaseReading, Mapping[str, Any]],
                 existing_open_alerts: Iterable[Alert] = (),
                 evaluated_at: Optional[datetime] = None) -> List[AlertDecision]:
        """Evaluate a reading against the open alerts of its sensor.

        Returns exactly one decision per check defined for the sensor type.
        Data-shape problems are returned as ``InvalidReading`` decisions and
        never raised.

        ``evaluated_at`` stands in for the reading time when the reading has
        no timestamp. Pass it to get equal decisions for repeated calls on
        such readings; without it the current time is used.
        """
        checks = self._checks_for(sensor_type)
        if checks is None:
            return [NoAction(reason=f"No threshold table for sensor type {sensor_type!r}")]

        reading = self._normalize(sensor_type, reading, evaluated_at)
        open_alerts = self._index_open_alerts(sensor_id, existing_open_alerts)
        triggered_at = self._reading_time(reading, evaluated_at)
        sensor_name = self._sensor_name(reading, sensor_id)

        decisions: List[AlertDecision] = []
        for check in checks:
            outcome = self._classify(check, reading)
            decision = self._decide(
                outcome,
                open_alerts.get(check.kind),
                room_id=room_id,
                room_name=room_name,
                sensor_id=sensor_id,
                sensor_type=SensorType(sensor_type),
                sensor_name=sensor_name,
                triggered_at=triggered_at,
            )
            decisions.append(decision)

        logger.debug("Reading evaluated",
                     room_id=room_id,
                     sensor_id=sensor_id,
                     sensor_type=str(SensorType(sensor_type).value),
                     actions=[d.action for d in decisions])
        return decisions

    def reading_status(self,
                       sensor_type: Union[SensorType, str],
                       reading: Union[BaseReading, Mapping[str, Any]]) -> ReadingStatus:
        """Overall status of a reading: critical, warning or normal."""
        checks = self._checks_for(sensor_type)
        if checks is None:
            return ReadingStatus.NORMAL

        reading = self._normalize(sensor_type, reading)
        status = ReadingStatus.NORMAL
        for check in checks:
            rule = self._classify(check, reading).rule
            if rule is None:
                continue
            if rule.severity == AlertSeverity.CRITICAL:
                return ReadingStatus.CRITICAL
            status = ReadingStatus.WARNING
        return status

    def describe_thresholds(self) -> List[Dict[str, Any]]:
        """Flatten the threshold table for display and the API."""
        rows = []
        for sensor_type, checks in self.table.items():
            for check in checks:
                for rule in check.rules:
                    rows.append({
                        "sensor_type": sensor_type.value,
                        "check": check.kind.value,
                        "field": rule.field,
                        "severity": rule.severity.value,
                        "comparator": rule.comparator.value,
                        "threshold": rule.threshold,
                        "unit": check.unit.strip(),
                        "alert_type": rule.alert_type.value,
                    })
        return rows

    def _checks_for(self, sensor_type: Union[SensorType, str]) -> Optional[Tuple[CheckDefinition, ...]]:
        try:
            return self.table[SensorType(sensor_type)]
        except (ValueError, KeyError):
            logger.warning("Unknown sensor type, reading not evaluated", sensor_type=str(sensor_type))
            return None

    def _normalize(self, sensor_type: Union[SensorType, str],
                   reading: Union[BaseReading, Mapping[str, Any]],
                   evaluated_at: Optional[datetime] = None) -> Union[BaseReading, Mapping[str, Any]]:
        """Parse raw mappings into typed readings where they validate.

        A mapping without a timestamp is stamped with ``evaluated_at``. A
        mapping that does not validate is evaluated field by field so that
        one bad value only fails its own check.
        """
        if isinstance(reading, BaseReading) or not isinstance(reading, Mapping):
            return reading
        payload = {**reading, "sensor_type": SensorType(sensor_type).value}
        if payload.get("timestamp") is None and evaluated_at is not None:
            payload["timestamp"] = evaluated_at
        try:
            return parse_reading(payload)
        except ValidationError:
            return reading

    def _classify(self, check: CheckDefinition, reading: Any) -> _CheckOutcome:
        values: Dict[str, float] = {}
        for field in check.fields:
            value, problem = _extract_number(reading, field)
            if problem is not None:
                return _CheckOutcome(
                    check=check,
                    invalid=InvalidReading(
                        check_kind=check.kind,
                        field=field,
                        detail=f"{field} is {problem}"
                    )
                )
            values[field] = value

        if check.confidence_field:
            confidence, problem = _extract_number(reading, check.confidence_field)
            if problem is None and confidence < check.min_confidence:
                return _CheckOutcome(
                    check=check,
                    skipped=f"{check.confidence_field} {format_number(confidence)} "
                            f"below {format_number(check.min_confidence)}"
                )

        for rule in check.rules:
            value = values[rule.field]
            if rule.comparator.matches(value, rule.threshold):
                return _CheckOutcome(check=check, rule=rule, value=value)
        return _CheckOutcome(check=check)

    def _decide(self, outcome: _CheckOutcome, existing: Optional[Alert], *,
                room_id: str, room_name: str, sensor_id: str, sensor_type: SensorType,
                sensor_name: str, triggered_at: datetime) -> AlertDecision:
        check = outcome.check
        if outcome.invalid is not None:
            logger.warning("Invalid reading for check",
                           sensor_id=sensor_id,
                           check=check.kind.value,
                           detail=outcome.invalid.detail)
            return outcome.invalid
        if outcome.skipped is not None:
            return NoAction(check_kind=check.kind, reason=outcome.skipped)

        rule = outcome.rule
        if rule is None:
            if existing is None:
                return NoAction(check_kind=check.kind, reason="Within normal range")
            return Resolve(check_kind=check.kind, alert_id=existing.id)

        value_text = f"{rule.label}{format_number(outcome.value)}{check.unit}"
        threshold_text = f"{format_number(rule.threshold)}{check.unit}"
        message = _fit_message(
            f"{rule.condition} detected in {room_name} ({sensor_name}): "
            f"{value_text} (threshold: {threshold_text})."
        )

        if existing is None or existing.alert_type != rule.alert_type:
            try:
                alert = Alert(
                    id=self._alert_id(room_id, sensor_id, rule.alert_type, triggered_at),
                    room_id=room_id,
                    room_name=room_name,
                    sensor_id=sensor_id,
                    sensor_type=sensor_type.value,
                    alert_type=rule.alert_type,
                    check_kind=check.kind,
                    severity=rule.severity,
                    message=message,
                    triggering_value=value_text,
                    triggered_at=triggered_at,
                    details={
                        "field": rule.field,
                        "value": outcome.value,
                        "threshold": rule.threshold,
                        "comparator": rule.comparator.value,
                    },
                )
            except ValidationError as e:
                error = e.errors()[0]
                field = ".".join(str(part) for part in error["loc"]) or "alert"
                logger.warning("Alert could not be built for reading",
                               sensor_id=sensor_id,
                               check=check.kind.value,
                               field=field,
                               error=error["msg"])
                return InvalidReading(
                    check_kind=check.kind,
                    field=field,
                    detail=f"{field}: {error['msg']}"
                )
            return Raise(
                check_kind=check.kind,
                alert=alert,
                supersedes=existing.id if existing is not None else None
            )

        if rule.severity.rank > existing.severity.rank:
            return Escalate(
                check_kind=check.kind,
                alert_id=existing.id,
                new_severity=rule.severity,
                message=message,
                triggering_value=value_text,
                triggered_at=triggered_at,
            )

        # Same or lower severity: no duplicate and no automatic downgrade.
        return NoAction(
            check_kind=check.kind,
            reason=f"Open {existing.severity.value} alert {existing.id} already covers this condition"
        )

    def _index_open_alerts(self, sensor_id: str, alerts: Iterable[Alert]) -> Dict[CheckKind, Alert]:
        """Map check kind -> the open alert of this sensor on that check."""
        indexed: Dict[CheckKind, Alert] = {}
        for alert in alerts:
            if not alert.is_open or alert.sensor_id != sensor_id:
                continue
            kind = alert.check_kind or ALERT_TYPE_CHECK_KINDS.get(alert.alert_type)
            if kind is None:
                continue

            current = indexed.get(kind)
            if current is None:
                indexed[kind] = alert
                continue

            logger.warning("Multiple open alerts for one check",
                           sensor_id=sensor_id,
                           check=kind.value,
                           alert_ids=[current.id, alert.id])
            if ((alert.severity.rank, _comparable_time(alert.triggered_at))
                    > (current.severity.rank, _comparable_time(current.triggered_at))):
                indexed[kind] = alert
        return indexed

    @staticmethod
    def _reading_time(reading: Any, evaluated_at: Optional[datetime]) -> datetime:
        timestamp = reading.get("timestamp") if isinstance(reading, Mapping) else getattr(reading, "timestamp", None)
        if isinstance(timestamp, datetime):
            return timestamp
        return evaluated_at or datetime.now()

    @staticmethod
    def _sensor_name(reading: Any, sensor_id: str) -> str:
        name = reading.get("name") if isinstance(reading, Mapping) else getattr(reading, "name", None)
        return name if isinstance(name, str) and name.strip() else sensor_id

    @staticmethod
    def _alert_id(room_id: str, sensor_id: str, alert_type: AlertType, triggered_at: datetime) -> str:
        """Deterministic id so repeated evaluation yields equal decisions."""
        key = f"{room_id}|{sensor_id}|{alert_type.value}|{triggered_at.isoformat()}"
        return uuid.uuid5(_ALERT_ID_NAMESPACE, key).hex


__all__ = [
    "AlertEvaluator",
    "Comparator",
    "ThresholdRule",
    "CheckDefinition",
    "ThresholdTable",
    "ALERT_TYPE_CHECK_KINDS",
    "build_threshold_table",
    "format_number",
]
