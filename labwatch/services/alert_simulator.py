"""Built-in temperature/humidity scenarios for exercising the alert pipeline.

Scenarios run in order against one sensor, so each starts from the open
alerts the previous one left behind. After every scenario the open alerts
of the sensor should be exactly the expected ones.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..models import AlertSeverity, AlertType, CheckKind, SensorType, TempHumidityReading
from .alert_processor import AlertProcessor, ProcessingResult


logger = structlog.get_logger(__name__)

SIM_ROOM_ID = "sim-room-001"
SIM_ROOM_NAME = "Simulation Lab"
SIM_SENSOR_ID = "sim-sensor-temp-hum-001"
SIM_SENSOR_NAME = "Simulation Temp/Humidity Sensor"

ExpectedAlert = Tuple[AlertType, AlertSeverity]


@dataclass(frozen=True)
class SimulationScenario:
    name: str
    description: str
    temperature: float
    humidity: float
    expected_temperature: Optional[ExpectedAlert] = None
    expected_humidity: Optional[ExpectedAlert] = None

    @property
    def expected(self) -> Dict[CheckKind, ExpectedAlert]:
        expected = {}
        if self.expected_temperature:
            expected[CheckKind.TEMPERATURE] = self.expected_temperature
        if self.expected_humidity:
            expected[CheckKind.HUMIDITY] = self.expected_humidity
        return expected


@dataclass
class ScenarioOutcome:
    scenario: SimulationScenario
    result: ProcessingResult
    open_alerts: Dict[CheckKind, ExpectedAlert]

    @property
    def matched(self) -> bool:
        return self.open_alerts == self.scenario.expected


SCENARIOS: Tuple[SimulationScenario, ...] = (
    SimulationScenario(
        "Normal Conditions", "Normal temperature and humidity, no alerts expected", 25, 50
    ),
    SimulationScenario(
        "High Temperature Alert", "Temperature above high threshold", 32, 50,
        expected_temperature=(AlertType.HIGH_TEMPERATURE, AlertSeverity.HIGH)
    ),
    SimulationScenario(
        "Critical High Temperature", "Temperature above critical threshold", 37, 50,
        expected_temperature=(AlertType.HIGH_TEMPERATURE, AlertSeverity.CRITICAL)
    ),
    SimulationScenario(
        "Low Temperature Alert", "Temperature below low threshold", 8, 50,
        expected_temperature=(AlertType.LOW_TEMPERATURE, AlertSeverity.HIGH)
    ),
    SimulationScenario(
        "Critical Low Temperature", "Temperature below critical low threshold", 3, 50,
        expected_temperature=(AlertType.LOW_TEMPERATURE, AlertSeverity.CRITICAL)
    ),
    SimulationScenario(
        "High Humidity Alert", "Humidity above high threshold", 25, 75,
        expected_humidity=(AlertType.HIGH_HUMIDITY, AlertSeverity.HIGH)
    ),
    SimulationScenario(
        "Critical High Humidity", "Humidity above critical threshold", 25, 85,
        expected_humidity=(AlertType.HIGH_HUMIDITY, AlertSeverity.CRITICAL)
    ),
    SimulationScenario(
        "Low Humidity Alert", "Humidity below low threshold", 25, 15,
        expected_humidity=(AlertType.LOW_HUMIDITY, AlertSeverity.MEDIUM)
    ),
    SimulationScenario(
        "Extreme Conditions", "Both temperature and humidity in critical ranges", 38, 90,
        expected_temperature=(AlertType.HIGH_TEMPERATURE, AlertSeverity.CRITICAL),
        expected_humidity=(AlertType.HIGH_HUMIDITY, AlertSeverity.CRITICAL)
    ),
    SimulationScenario(
        "Cold and Dry", "Both temperature and humidity below thresholds", 2, 10,
        expected_temperature=(AlertType.LOW_TEMPERATURE, AlertSeverity.CRITICAL),
        expected_humidity=(AlertType.LOW_HUMIDITY, AlertSeverity.MEDIUM)
    ),
)


def find_scenarios(names: Sequence[str]) -> List[SimulationScenario]:
    """Scenarios by name (case-insensitive); raises KeyError for unknown names."""
    by_name = {scenario.name.lower(): scenario for scenario in SCENARIOS}
    selected = []
    for name in names:
        scenario = by_name.get(name.lower())
        if scenario is None:
            raise KeyError(name)
        selected.append(scenario)
    return selected


async def run_scenarios(processor: AlertProcessor,
                        scenarios: Sequence[SimulationScenario] = SCENARIOS,
                        start_time: Optional[datetime] = None) -> List[ScenarioOutcome]:
    """Feed each scenario's reading through the processor in order."""
    start_time = start_time or datetime.now()
    outcomes = []

    for index, scenario in enumerate(scenarios):
        reading = TempHumidityReading(
            sensor_id=SIM_SENSOR_ID,
            room_id=SIM_ROOM_ID,
            room_name=SIM_ROOM_NAME,
            name=SIM_SENSOR_NAME,
            temperature=scenario.temperature,
            humidity=scenario.humidity,
            timestamp=start_time + timedelta(minutes=index)
        )
        result = await processor.process_reading(
            SIM_ROOM_ID, SIM_ROOM_NAME, SIM_SENSOR_ID, SensorType.TEMP_HUMIDITY, reading
        )

        open_alerts = {
            alert.check_kind: (alert.alert_type, alert.severity)
            for alert in await processor.storage.get_open_alerts(SIM_SENSOR_ID)
            if alert.check_kind is not None
        }
        outcome = ScenarioOutcome(scenario=scenario, result=result, open_alerts=open_alerts)
        outcomes.append(outcome)

        logger.info("Scenario completed",
                    scenario=scenario.name,
                    status=result.status.value,
                    matched=outcome.matched)

    return outcomes


__all__ = [
    "SimulationScenario",
    "ScenarioOutcome",
    "SCENARIOS",
    "find_scenarios",
    "run_scenarios",
]
