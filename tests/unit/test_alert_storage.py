"""Unit tests for SQLite alert storage."""

import json
import pytest
from datetime import datetime, timedelta

from labwatch.models import AlertSeverity, AlertStatus, AlertType, CheckKind
from labwatch.services import AlertStorage, AlertStorageError, AlertNotFoundError


class TestAlertStorage:
    """Test AlertStorage persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, storage, make_alert):
        alert = make_alert(details={"field": "temperature", "value": 32.0})

        await storage.create_alert(alert)
        stored = await storage.get_alert(alert.id)

        assert stored == alert
        assert stored.check_kind == CheckKind.TEMPERATURE
        assert stored.details == {"field": "temperature", "value": 32.0}

    @pytest.mark.asyncio
    async def test_get_missing_alert(self, storage):
        assert await storage.get_alert("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_open_alerts_by_sensor(self, storage, make_alert):
        mine = make_alert()
        other_sensor = make_alert(sensor_id="sensor-2")
        acknowledged = make_alert(alert_type=AlertType.HIGH_HUMIDITY, check_kind=CheckKind.HUMIDITY)
        acknowledged.acknowledge("operator")

        for alert in (mine, other_sensor, acknowledged):
            await storage.create_alert(alert)

        open_alerts = await storage.get_open_alerts("sensor-1")

        assert [a.id for a in open_alerts] == [mine.id]

    @pytest.mark.asyncio
    async def test_one_open_alert_per_check(self, storage, make_alert):
        await storage.create_alert(make_alert())

        with pytest.raises(AlertStorageError, match="Constraint"):
            await storage.create_alert(make_alert(severity=AlertSeverity.CRITICAL))

    @pytest.mark.asyncio
    async def test_resolved_alert_frees_the_check(self, storage, make_alert):
        first = make_alert()
        await storage.create_alert(first)
        first.resolve()
        await storage.update_alert(first)

        second = make_alert()
        await storage.create_alert(second)

        assert [a.id for a in await storage.get_open_alerts("sensor-1")] == [second.id]

    @pytest.mark.asyncio
    async def test_notifications_are_not_limited(self, storage, make_alert):
        for _ in range(3):
            await storage.create_alert(make_alert(
                alert_type=AlertType.SYSTEM_NOTIFICATION,
                check_kind=None,
                sensor_id=None,
                severity=AlertSeverity.INFO,
            ))

        assert await storage.count_alerts(AlertStatus.OPEN) == 3

    @pytest.mark.asyncio
    async def test_update_unknown_alert(self, storage, make_alert):
        with pytest.raises(AlertNotFoundError) as exc_info:
            await storage.update_alert(make_alert(id="missing"))

        assert exc_info.value.alert_id == "missing"

    @pytest.mark.asyncio
    async def test_apply_changes_is_atomic(self, storage, make_alert):
        existing = make_alert()
        await storage.create_alert(existing)

        resolved = existing.model_copy(deep=True)
        resolved.resolve()
        duplicate_a = make_alert(alert_type=AlertType.HIGH_HUMIDITY, check_kind=CheckKind.HUMIDITY)
        duplicate_b = make_alert(alert_type=AlertType.LOW_HUMIDITY, check_kind=CheckKind.HUMIDITY)

        with pytest.raises(AlertStorageError):
            await storage.apply_changes(updates=[resolved], inserts=[duplicate_a, duplicate_b])

        assert (await storage.get_alert(existing.id)).status == AlertStatus.OPEN
        assert await storage.get_alert(duplicate_a.id) is None

    @pytest.mark.asyncio
    async def test_list_alerts_filters(self, storage, make_alert, reading_time):
        old = make_alert(triggered_at=reading_time - timedelta(hours=2))
        old.resolve()
        recent = make_alert(severity=AlertSeverity.CRITICAL, triggered_at=reading_time)
        elsewhere = make_alert(room_id="room-202", room_name="Clean Room", sensor_id="sensor-9")

        for alert in (old, recent, elsewhere):
            await storage.create_alert(alert)

        newest_first = await storage.list_alerts(room_id="room-101")
        assert [a.id for a in newest_first] == [recent.id, old.id]

        assert [a.id for a in await storage.list_alerts(status=AlertStatus.RESOLVED)] == [old.id]
        assert [a.id for a in await storage.list_alerts(severity=AlertSeverity.CRITICAL)] == [recent.id]
        assert len(await storage.list_alerts(limit=1)) == 1
        assert len(await storage.list_alerts(start_time=reading_time - timedelta(hours=1))) == 2

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired_resolved(self, storage, make_alert):
        expired = make_alert()
        expired.resolve()
        expired.resolved_at = datetime.now() - timedelta(hours=storage.retention_hours + 1)
        fresh = make_alert(alert_type=AlertType.HIGH_HUMIDITY, check_kind=CheckKind.HUMIDITY)
        fresh.resolve()
        still_open = make_alert()

        for alert in (expired, fresh, still_open):
            await storage.create_alert(alert)

        removed = await storage.cleanup_old_alerts()

        assert removed == 1
        assert await storage.get_alert(expired.id) is None
        assert await storage.count_alerts() == 2

    @pytest.mark.asyncio
    async def test_stats_and_export(self, storage, make_alert, tmp_path):
        await storage.create_alert(make_alert())
        resolved = make_alert(alert_type=AlertType.LOW_HUMIDITY, check_kind=CheckKind.HUMIDITY)
        resolved.resolve()
        await storage.create_alert(resolved)

        stats = storage.get_storage_stats()
        assert stats["open_count"] == 1
        assert stats["resolved_count"] == 1
        assert stats["database_path"] == ":memory:"

        output = tmp_path / "export" / "alerts.json"
        assert await storage.export_alerts(str(output)) == 2

        exported = json.loads(output.read_text(encoding="utf-8"))
        assert len(exported["alerts"]) == 2
        assert {a["status"] for a in exported["alerts"]} == {"open", "resolved"}

    @pytest.mark.asyncio
    async def test_requires_initialization(self, make_alert):
        storage = AlertStorage(in_memory=True)

        assert not storage.is_initialized
        with pytest.raises(AlertStorageError, match="not initialized"):
            await storage.create_alert(make_alert())

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path, make_alert):
        path = str(tmp_path / "alerts.db")
        alert = make_alert()

        first = AlertStorage(database_path=path, in_memory=False)
        await first.initialize()
        await first.create_alert(alert)
        await first.close()

        second = AlertStorage(database_path=path, in_memory=False)
        await second.initialize()
        try:
            assert await second.get_alert(alert.id) == alert
        finally:
            await second.close()
