"""AlertProcessor service: evaluates readings and persists the resulting alert changes."""

import asyncio
import inspect
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, Field

from ..models import (
    Alert,
    AlertSeverity,
    AlertType,
    BaseReading,
    LabwatchConfiguration,
    ReadingStatus,
    SensorType,
)
from ..models.decisions import AlertDecision, Escalate, InvalidReading, NoAction, Raise, Resolve
from .alert_evaluator import AlertEvaluator
from .alert_storage import AlertNotFoundError, AlertStorage


logger = structlog.get_logger(__name__)

SYSTEM_ROOM_ID = "system"
SYSTEM_ROOM_NAME = "System-Wide"

AlertListener = Callable[[str, Alert], Union[None, Awaitable[None]]]


class ProcessingResult(BaseModel):
    """Outcome of processing one reading."""

    room_id: str
    sensor_id: str
    sensor_type: str
    status: ReadingStatus
    decisions: List[AlertDecision] = Field(default_factory=list)
    created: List[Alert] = Field(default_factory=list)
    escalated: List[Alert] = Field(default_factory=list)
    resolved: List[Alert] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=datetime.now)

    @property
    def errors(self) -> List[InvalidReading]:
        return [d for d in self.decisions if isinstance(d, InvalidReading)]


class AlertProcessor:
    """Runs evaluate-then-persist for readings, one sensor at a time.

    Readings for the same sensor are serialised with a per-sensor lock so two
    concurrent readings cannot both see "no open alert" and raise duplicates.
    Readings for different sensors proceed concurrently.
    """

    def __init__(self,
                 storage: AlertStorage,
                 evaluator: Optional[AlertEvaluator] = None):
        self.storage = storage
        self.evaluator = evaluator or AlertEvaluator()

        # Entries disappear once no reading holds or waits for the lock.
        self._sensor_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._listeners: List[AlertListener] = []

        # Statistics
        self.readings_processed = 0
        self.decision_counts: Dict[str, int] = {}

    @classmethod
    def from_configuration(cls, configuration: LabwatchConfiguration) -> "AlertProcessor":
        """Build storage and evaluator from configuration."""
        storage = AlertStorage(
            database_path=configuration.storage.database_path,
            in_memory=configuration.storage.in_memory,
            retention_hours=configuration.storage.retention_hours
        )
        return cls(storage, AlertEvaluator(configuration.thresholds))

    async def start(self) -> None:
        """Open storage if needed."""
        if not self.storage.is_initialized:
            await self.storage.initialize()
        logger.info("Alert processor started")

    async def stop(self) -> None:
        """Close storage."""
        await self.storage.close()
        logger.info("Alert processor stopped")

    def add_listener(self, listener: AlertListener) -> None:
        """Register a callback for alert changes: listener(change, alert)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: AlertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def process_reading(self,
                              room_id: str,
                              room_name: str,
                              sensor_id: str,
                              sensor_type: Union[SensorType, str],
                              reading: Union[BaseReading, Mapping[str, Any]]) -> ProcessingResult:
        """Evaluate a reading and persist the resulting alert changes."""
        async with self._lock_for(sensor_id):
            open_alerts = await self.storage.get_open_alerts(sensor_id)
            decisions = self.evaluator.evaluate(
                room_id, room_name, sensor_id, sensor_type, reading, open_alerts,
                evaluated_at=datetime.now()
            )
            status = self.evaluator.reading_status(sensor_type, reading)
            if isinstance(reading, BaseReading):
                reading.status = status

            result = ProcessingResult(
                room_id=room_id,
                sensor_id=sensor_id,
                sensor_type=str(getattr(sensor_type, "value", sensor_type)),
                status=status,
                decisions=decisions,
            )
            notifications = await self._apply(decisions, open_alerts, result)

        self.readings_processed += 1
        for decision in result.decisions:
            self.decision_counts[decision.action] = self.decision_counts.get(decision.action, 0) + 1

        if result.created or result.escalated or result.resolved:
            logger.info("Alert changes applied",
                        room_id=room_id,
                        sensor_id=sensor_id,
                        created=len(result.created),
                        escalated=len(result.escalated),
                        resolved=len(result.resolved))

        await self._notify(notifications)
        return result

    async def acknowledge_alert(self, alert_id: str, user_id: Optional[str] = None) -> Alert:
        """Operator acknowledgement; raises AlertNotFoundError or InvalidAlertTransition."""
        alert = await self._change_alert(alert_id, lambda a: a.acknowledge(user_id))
        logger.info("Alert acknowledged", alert_id=alert_id, user_id=user_id)
        await self._notify([("acknowledged", alert)])
        return alert

    async def resolve_alert(self, alert_id: str) -> Alert:
        """Operator resolution; raises AlertNotFoundError or InvalidAlertTransition."""
        alert = await self._change_alert(alert_id, lambda a: a.resolve())
        logger.info("Alert resolved", alert_id=alert_id)
        await self._notify([("resolved", alert)])
        return alert

    async def create_system_notification(self,
                                         message: str,
                                         severity: AlertSeverity = AlertSeverity.INFO,
                                         room_id: Optional[str] = None,
                                         room_name: Optional[str] = None) -> Alert:
        """Create an alert not tied to any sensor."""
        if not message or not message.strip():
            raise ValueError("Notification message cannot be empty")

        effective_room_id = room_id if room_id is not None else SYSTEM_ROOM_ID
        effective_room_name = room_name if room_name is not None else SYSTEM_ROOM_NAME
        if not effective_room_id.strip() or not effective_room_name.strip():
            raise ValueError("room_id and room_name for a system notification cannot be empty")

        alert = Alert(
            room_id=effective_room_id,
            room_name=effective_room_name,
            alert_type=AlertType.SYSTEM_NOTIFICATION,
            severity=severity,
            message=message,
        )
        await self.storage.create_alert(alert)
        logger.info("System notification created", alert_id=alert.id, severity=alert.severity.value)
        await self._notify([("created", alert)])
        return alert

    async def get_stats(self) -> Dict[str, Any]:
        """Processing and storage statistics."""
        return {
            "readings_processed": self.readings_processed,
            "decisions": dict(self.decision_counts),
            "listeners": len(self._listeners),
            "storage": self.storage.get_storage_stats(),
        }

    def _lock_for(self, sensor_id: str) -> asyncio.Lock:
        lock = self._sensor_locks.get(sensor_id)
        if lock is None:
            lock = self._sensor_locks[sensor_id] = asyncio.Lock()
        return lock

    async def _change_alert(self, alert_id: str, change: Callable[[Alert], None]) -> Alert:
        alert = await self.storage.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)

        async with self._lock_for(alert.sensor_id or alert.room_id):
            # Re-read under the lock; a reading may have changed it meanwhile.
            alert = await self.storage.get_alert(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            change(alert)
            await self.storage.update_alert(alert)
        return alert

    async def _apply(self,
                     decisions: List[AlertDecision],
                     open_alerts: List[Alert],
                     result: ProcessingResult) -> List[tuple]:
        """Translate decisions into one storage transaction.

        A raise whose alert id is already stored comes from a reading that was
        processed before (a device retransmit or a late duplicate). It is
        recorded as ``NoAction`` in ``result.decisions`` and changes nothing.
        """
        by_id = {alert.id: alert for alert in open_alerts}
        updates: List[Alert] = []
        inserts: List[Alert] = []
        notifications: List[tuple] = []

        for index, decision in enumerate(decisions):
            if isinstance(decision, Raise):
                if await self.storage.get_alert(decision.alert.id) is not None:
                    logger.info("Reading already processed, alert not raised again",
                                sensor_id=decision.alert.sensor_id,
                                alert_id=decision.alert.id)
                    result.decisions[index] = NoAction(
                        check_kind=decision.check_kind,
                        reason=f"Reading already processed as alert {decision.alert.id}"
                    )
                    continue
                if decision.supersedes and decision.supersedes in by_id:
                    stale = by_id[decision.supersedes].model_copy(deep=True)
                    stale.resolve()
                    updates.append(stale)
                    result.resolved.append(stale)
                    notifications.append(("resolved", stale))
                alert = decision.alert.model_copy(deep=True)
                inserts.append(alert)
                result.created.append(alert)
                notifications.append(("created", alert))

            elif isinstance(decision, Escalate):
                alert = by_id[decision.alert_id].model_copy(deep=True)
                previous = alert.severity
                alert.severity = decision.new_severity
                alert.message = decision.message
                alert.triggering_value = decision.triggering_value
                alert.triggered_at = decision.triggered_at
                alert.details = {**(alert.details or {}), "escalated_from": previous.value}
                updates.append(alert)
                result.escalated.append(alert)
                notifications.append(("escalated", alert))

            elif isinstance(decision, Resolve):
                alert = by_id[decision.alert_id].model_copy(deep=True)
                alert.resolve()
                updates.append(alert)
                result.resolved.append(alert)
                notifications.append(("resolved", alert))

        if updates or inserts:
            await self.storage.apply_changes(updates=updates, inserts=inserts)
        return notifications

    async def _notify(self, notifications: List[tuple]) -> None:
        for change, alert in notifications:
            for listener in list(self._listeners):
                try:
                    outcome = listener(change, alert)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error("Alert listener failed", change=change, alert_id=alert.id, error=str(e))


__all__ = ["AlertProcessor", "ProcessingResult", "AlertListener", "SYSTEM_ROOM_ID", "SYSTEM_ROOM_NAME"]
