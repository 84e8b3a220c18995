"""Unit tests for AlertProcessor and the built-in scenarios."""

import asyncio
import gc
import pytest
from datetime import timedelta

from labwatch.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    CheckKind,
    InvalidAlertTransition,
    NoAction,
    ReadingStatus,
    SensorType,
)
from labwatch.services import AlertNotFoundError, SCENARIOS, run_scenarios
from labwatch.services.alert_simulator import SIM_SENSOR_ID, find_scenarios


ROOM_ID = "room-101"
ROOM_NAME = "Lab"
SENSOR_ID = "sensor-1"


async def process(processor, reading):
    return await processor.process_reading(
        ROOM_ID, ROOM_NAME, SENSOR_ID, SensorType.TEMP_HUMIDITY, reading
    )


class TestProcessReading:
    """Test evaluate-then-persist."""

    @pytest.mark.asyncio
    async def test_normal_reading_creates_nothing(self, processor, make_reading):
        reading = make_reading(25, 50)

        result = await process(processor, reading)

        assert result.status == ReadingStatus.NORMAL
        assert result.created == []
        assert reading.status == ReadingStatus.NORMAL
        assert await processor.storage.count_alerts() == 0

    @pytest.mark.asyncio
    async def test_high_temperature_raises_alert(self, processor, make_reading):
        reading = make_reading(32, 50)

        result = await process(processor, reading)

        assert result.status == ReadingStatus.WARNING
        assert reading.status == ReadingStatus.WARNING
        assert len(result.created) == 1
        open_alerts = await processor.storage.get_open_alerts(SENSOR_ID)
        assert [(a.alert_type, a.severity) for a in open_alerts] == [
            (AlertType.HIGH_TEMPERATURE, AlertSeverity.HIGH)
        ]

    @pytest.mark.asyncio
    async def test_escalation_updates_existing_alert(self, processor, make_reading, reading_time):
        await process(processor, make_reading(32, 50))
        later = reading_time + timedelta(minutes=5)

        result = await process(processor, make_reading(37, 50, timestamp=later))

        assert result.status == ReadingStatus.CRITICAL
        assert result.created == []
        [escalated] = result.escalated
        stored = await processor.storage.get_alert(escalated.id)
        assert stored.severity == AlertSeverity.CRITICAL
        assert stored.triggered_at == later
        assert stored.triggering_value == "37°C"
        assert stored.details["escalated_from"] == "high"
        assert await processor.storage.count_alerts() == 1

    @pytest.mark.asyncio
    async def test_lower_severity_does_not_downgrade(self, processor, make_reading, reading_time):
        await process(processor, make_reading(37, 50))

        result = await process(processor, make_reading(32, 50, timestamp=reading_time + timedelta(minutes=1)))

        assert result.created == result.escalated == result.resolved == []
        [alert] = await processor.storage.get_open_alerts(SENSOR_ID)
        assert alert.severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_recovery_resolves_alert(self, processor, make_reading, reading_time):
        first = await process(processor, make_reading(32, 50))

        result = await process(processor, make_reading(25, 50, timestamp=reading_time + timedelta(minutes=1)))

        assert [a.id for a in result.resolved] == [first.created[0].id]
        stored = await processor.storage.get_alert(first.created[0].id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.resolved_at is not None
        assert await processor.storage.get_open_alerts(SENSOR_ID) == []

    @pytest.mark.asyncio
    async def test_opposite_condition_supersedes(self, processor, make_reading, reading_time):
        hot = await process(processor, make_reading(32, 50))

        result = await process(processor, make_reading(8, 50, timestamp=reading_time + timedelta(minutes=1)))

        assert [a.id for a in result.resolved] == [hot.created[0].id]
        [cold] = result.created
        assert cold.alert_type == AlertType.LOW_TEMPERATURE
        open_alerts = await processor.storage.get_open_alerts(SENSOR_ID)
        assert [a.id for a in open_alerts] == [cold.id]

    @pytest.mark.asyncio
    async def test_independent_checks(self, processor, make_reading):
        result = await process(processor, make_reading(38, 90))

        kinds = {alert.check_kind for alert in result.created}
        assert kinds == {CheckKind.TEMPERATURE, CheckKind.HUMIDITY}
        assert await processor.storage.count_alerts(AlertStatus.OPEN) == 2

    @pytest.mark.asyncio
    async def test_mapping_reading(self, processor):
        result = await process(processor, {"temperature": 32, "humidity": 50})

        assert len(result.created) == 1
        assert result.sensor_type == "tempHumidity"

    @pytest.mark.asyncio
    async def test_invalid_reading_is_reported_not_raised(self, processor):
        result = await process(processor, {"temperature": "hot", "humidity": 50})

        assert len(result.errors) == 1
        assert result.errors[0].check_kind == CheckKind.TEMPERATURE
        assert await processor.storage.count_alerts() == 0

    @pytest.mark.asyncio
    async def test_concurrent_readings_for_one_sensor(self, processor, make_reading, reading_time):
        readings = [
            make_reading(32, 50, timestamp=reading_time + timedelta(seconds=i))
            for i in range(5)
        ]

        results = await asyncio.gather(*(process(processor, r) for r in readings))

        assert sum(len(r.created) for r in results) == 1
        assert len(await processor.storage.get_open_alerts(SENSOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_replayed_reading_after_recovery(self, processor, make_reading, reading_time):
        first = await process(processor, make_reading(32, 50))
        await process(processor, make_reading(25, 50, timestamp=reading_time + timedelta(minutes=1)))

        replay = await process(processor, make_reading(32, 50))

        assert replay.created == []
        assert isinstance(replay.decisions[0], NoAction)
        assert first.created[0].id in replay.decisions[0].reason
        [stored] = await processor.storage.list_alerts()
        assert stored.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_replayed_reading_after_acknowledge(self, processor, make_reading):
        created = (await process(processor, make_reading(32, 50))).created[0]
        await processor.acknowledge_alert(created.id)

        replay = await process(processor, make_reading(32, 50))

        assert replay.created == []
        assert (await processor.storage.get_alert(created.id)).status == AlertStatus.ACKNOWLEDGED
        assert await processor.storage.count_alerts() == 1

    @pytest.mark.asyncio
    async def test_sensor_locks_released_after_use(self, processor, make_reading):
        for sensor_id in ("sensor-1", "sensor-2", "sensor-3"):
            await processor.process_reading(
                ROOM_ID, ROOM_NAME, sensor_id, SensorType.TEMP_HUMIDITY, make_reading(25, 50)
            )
        notification = await processor.create_system_notification("Maintenance at noon")
        await processor.acknowledge_alert(notification.id)

        gc.collect()
        assert len(processor._sensor_locks) == 0

    @pytest.mark.asyncio
    async def test_stats(self, processor, make_reading):
        await process(processor, make_reading(32, 50))

        stats = await processor.get_stats()

        assert stats["readings_processed"] == 1
        assert stats["decisions"] == {"raise": 1, "no_action": 1}
        assert stats["storage"]["open_count"] == 1


class TestListeners:
    """Test alert change notifications."""

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self, processor, make_reading, reading_time):
        seen = []

        def on_change(change, alert):
            seen.append(("sync", change, alert.alert_type))

        async def on_change_async(change, alert):
            seen.append(("async", change, alert.alert_type))

        processor.add_listener(on_change)
        processor.add_listener(on_change_async)

        await process(processor, make_reading(32, 50))
        await process(processor, make_reading(37, 50, timestamp=reading_time + timedelta(minutes=1)))

        assert seen == [
            ("sync", "created", AlertType.HIGH_TEMPERATURE),
            ("async", "created", AlertType.HIGH_TEMPERATURE),
            ("sync", "escalated", AlertType.HIGH_TEMPERATURE),
            ("async", "escalated", AlertType.HIGH_TEMPERATURE),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, processor, make_reading):
        seen = []

        def broken(change, alert):
            raise RuntimeError("listener down")

        processor.add_listener(broken)
        processor.add_listener(lambda change, alert: seen.append(change))

        result = await process(processor, make_reading(32, 50))

        assert len(result.created) == 1
        assert seen == ["created"]

    @pytest.mark.asyncio
    async def test_remove_listener(self, processor, make_reading):
        seen = []
        listener = lambda change, alert: seen.append(change)  # noqa: E731
        processor.add_listener(listener)
        processor.remove_listener(listener)

        await process(processor, make_reading(32, 50))

        assert seen == []


class TestOperatorActions:
    """Test acknowledge, resolve and system notifications."""

    @pytest.mark.asyncio
    async def test_acknowledge(self, processor, make_reading):
        created = (await process(processor, make_reading(32, 50))).created[0]

        alert = await processor.acknowledge_alert(created.id, "operator-7")

        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.acknowledged_by == "operator-7"
        assert (await processor.storage.get_alert(created.id)).status == AlertStatus.ACKNOWLEDGED
        assert await processor.storage.get_open_alerts(SENSOR_ID) == []

    @pytest.mark.asyncio
    async def test_acknowledged_alert_is_not_reraised_twice(self, processor, make_reading, reading_time):
        created = (await process(processor, make_reading(32, 50))).created[0]
        await processor.acknowledge_alert(created.id)

        result = await process(processor, make_reading(33, 50, timestamp=reading_time + timedelta(minutes=1)))

        # The acknowledged alert no longer counts as open, so a fresh one is raised.
        assert len(result.created) == 1
        assert result.created[0].id != created.id

    @pytest.mark.asyncio
    async def test_resolve(self, processor, make_reading):
        created = (await process(processor, make_reading(32, 50))).created[0]

        alert = await processor.resolve_alert(created.id)

        assert alert.status == AlertStatus.RESOLVED
        with pytest.raises(InvalidAlertTransition):
            await processor.resolve_alert(created.id)
        with pytest.raises(InvalidAlertTransition):
            await processor.acknowledge_alert(created.id)

    @pytest.mark.asyncio
    async def test_unknown_alert(self, processor):
        with pytest.raises(AlertNotFoundError):
            await processor.acknowledge_alert("nope")
        with pytest.raises(AlertNotFoundError):
            await processor.resolve_alert("nope")

    @pytest.mark.asyncio
    async def test_operator_changes_notify_listeners(self, processor, make_reading):
        seen = []
        processor.add_listener(lambda change, alert: seen.append(change))
        created = (await process(processor, make_reading(32, 50))).created[0]

        await processor.acknowledge_alert(created.id)
        await processor.resolve_alert(created.id)

        assert seen == ["created", "acknowledged", "resolved"]

    @pytest.mark.asyncio
    async def test_system_notification_defaults(self, processor):
        alert = await processor.create_system_notification("Maintenance at 18:00")

        assert alert.alert_type == AlertType.SYSTEM_NOTIFICATION
        assert alert.severity == AlertSeverity.INFO
        assert alert.room_id == "system"
        assert alert.room_name == "System-Wide"
        assert alert.sensor_id is None
        assert await processor.storage.get_alert(alert.id) == alert

    @pytest.mark.asyncio
    async def test_system_notification_for_room(self, processor):
        alert = await processor.create_system_notification(
            "Door left open", AlertSeverity.MEDIUM, room_id=ROOM_ID, room_name=ROOM_NAME
        )

        assert alert.room_id == ROOM_ID
        assert alert.severity == AlertSeverity.MEDIUM

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"message": "   "},
        {"message": "ok", "room_id": ""},
        {"message": "ok", "room_name": " "},
    ])
    async def test_system_notification_rejects_blank_input(self, processor, kwargs):
        with pytest.raises(ValueError):
            await processor.create_system_notification(**kwargs)


class TestScenarios:
    """Test the built-in simulation scenarios."""

    @pytest.mark.asyncio
    async def test_all_scenarios_match(self, processor, reading_time):
        outcomes = await run_scenarios(processor, start_time=reading_time)

        assert len(outcomes) == len(SCENARIOS)
        mismatched = [o.scenario.name for o in outcomes if not o.matched]
        assert mismatched == []

    @pytest.mark.asyncio
    async def test_final_open_alerts(self, processor, reading_time):
        await run_scenarios(processor, start_time=reading_time)

        open_alerts = await processor.storage.get_open_alerts(SIM_SENSOR_ID)
        assert {(a.alert_type, a.severity) for a in open_alerts} == {
            (AlertType.LOW_TEMPERATURE, AlertSeverity.CRITICAL),
            (AlertType.LOW_HUMIDITY, AlertSeverity.MEDIUM),
        }

    def test_find_scenarios(self):
        [scenario] = find_scenarios(["critical high temperature"])

        assert scenario.temperature == 37
        with pytest.raises(KeyError):
            find_scenarios(["Heatwave"])
