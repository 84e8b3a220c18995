"""Core services for the laboratory alert system."""

from .alert_evaluator import AlertEvaluator, build_threshold_table
from .alert_storage import AlertStorage, AlertStorageError, AlertNotFoundError
from .alert_processor import AlertProcessor, ProcessingResult
from .alert_simulator import SCENARIOS, SimulationScenario, run_scenarios

__all__ = [
    "AlertEvaluator",
    "build_threshold_table",
    "AlertStorage",
    "AlertStorageError",
    "AlertNotFoundError",
    "AlertProcessor",
    "ProcessingResult",
    "SCENARIOS",
    "SimulationScenario",
    "run_scenarios"
]
