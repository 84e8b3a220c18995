"""Pytest configuration and fixtures."""

import pytest
import pytest_asyncio
import structlog
from fastapi.testclient import TestClient
import sys
from datetime import datetime
from pathlib import Path

# Make the package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from labwatch.models import Alert, AlertSeverity, AlertType, CheckKind, TempHumidityReading
from labwatch.lib.api_server import create_app
from labwatch.services import AlertEvaluator, AlertProcessor, AlertStorage


ROOM_ID = "room-101"
ROOM_NAME = "Lab"
SENSOR_ID = "sensor-1"


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by CLI entry points."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def evaluator():
    return AlertEvaluator()


@pytest.fixture
def reading_time():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def make_reading(reading_time):
    """Factory for temperature/humidity readings from sensor-1 in the Lab."""

    def _make(temperature=25.0, humidity=50.0, timestamp=None):
        return TempHumidityReading(
            sensor_id=SENSOR_ID,
            room_id=ROOM_ID,
            room_name=ROOM_NAME,
            temperature=temperature,
            humidity=humidity,
            timestamp=timestamp or reading_time
        )

    return _make


@pytest.fixture
def make_alert(reading_time):
    """Factory for open alerts raised by sensor-1."""

    def _make(alert_type=AlertType.HIGH_TEMPERATURE,
              severity=AlertSeverity.HIGH,
              check_kind=CheckKind.TEMPERATURE,
              sensor_id=SENSOR_ID,
              **overrides):
        data = dict(
            room_id=ROOM_ID,
            room_name=ROOM_NAME,
            sensor_id=sensor_id,
            sensor_type="tempHumidity",
            alert_type=alert_type,
            check_kind=check_kind,
            severity=severity,
            message=f"{alert_type.value} in {ROOM_NAME}",
            triggering_value="32°C",
            triggered_at=reading_time,
        )
        data.update(overrides)
        return Alert(**data)

    return _make


@pytest_asyncio.fixture
async def storage():
    """Initialized in-memory alert storage."""
    alert_storage = AlertStorage(in_memory=True)
    await alert_storage.initialize()
    yield alert_storage
    await alert_storage.close()


@pytest_asyncio.fixture
async def processor(storage):
    alert_processor = AlertProcessor(storage, AlertEvaluator())
    await alert_processor.start()
    yield alert_processor


@pytest.fixture
def api_client():
    """TestClient around an app backed by in-memory storage; runs startup and shutdown."""
    app = create_app(AlertProcessor(AlertStorage(in_memory=True)))
    with TestClient(app) as client:
        yield client
