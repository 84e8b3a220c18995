"""Command-line entry point for the labwatch alert service."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

import structlog
from rich.console import Console
from rich.table import Table

from ..models import (
    Escalate,
    InvalidReading,
    LabwatchConfiguration,
    NoAction,
    Raise,
    Resolve,
    SensorType,
)
from ..services import AlertEvaluator, AlertProcessor, AlertStorage
from ..services.alert_simulator import SCENARIOS, find_scenarios, run_scenarios
from ..lib.api_server import run_server, set_configuration
from ..lib.config import ConfigManager, ConfigurationError, load_default_configuration


logger = structlog.get_logger(__name__)

console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
    "info": "dim",
}


def configure_logging(debug: bool = False, json_logs: bool = False) -> None:
    """Configure structlog for console or JSON output."""
    level = logging.DEBUG if debug else logging.INFO

    if json_logs:
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def load_cli_configuration(config_path: Optional[str]) -> LabwatchConfiguration:
    """Configuration from file when given, otherwise defaults plus environment."""
    if config_path:
        return ConfigManager(config_path).load_config()
    return load_default_configuration()


def parse_key_values(pairs: Sequence[str]) -> Dict[str, Any]:
    """Parse ``key=value`` arguments; values are read as JSON when possible."""
    reading: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        try:
            reading[key] = json.loads(raw)
        except json.JSONDecodeError:
            reading[key] = raw
    return reading


def _severity_text(severity: Optional[str]) -> str:
    if not severity:
        return ""
    style = SEVERITY_STYLES.get(severity, "")
    return f"[{style}]{severity}[/{style}]" if style else severity


def build_decision_table(decisions) -> Table:
    table = Table(title="Decisions")
    table.add_column("Check")
    table.add_column("Action", style="bold")
    table.add_column("Severity")
    table.add_column("Alert type")
    table.add_column("Detail", overflow="fold")

    for decision in decisions:
        check = decision.check_kind.value if decision.check_kind else "-"
        severity = alert_type = ""
        if isinstance(decision, Raise):
            severity = decision.alert.severity.value
            alert_type = decision.alert.alert_type.value
            detail = decision.alert.message
            if decision.supersedes:
                detail += f" (supersedes {decision.supersedes})"
        elif isinstance(decision, Escalate):
            severity = decision.new_severity.value
            detail = decision.message
        elif isinstance(decision, Resolve):
            detail = f"resolves {decision.alert_id}"
        elif isinstance(decision, InvalidReading):
            detail = decision.detail
        elif isinstance(decision, NoAction):
            detail = decision.reason
        else:
            detail = ""
        table.add_row(check, decision.action, _severity_text(severity), alert_type, detail)

    return table


def build_threshold_table(evaluator: AlertEvaluator) -> Table:
    table = Table(title="Alert thresholds (inclusive)")
    table.add_column("Sensor type")
    table.add_column("Check")
    table.add_column("Severity")
    table.add_column("Rule")
    table.add_column("Alert type")

    for row in evaluator.describe_thresholds():
        rule = f"{row['field']} {row['comparator']} {row['threshold']}"
        if row["unit"]:
            rule += f" {row['unit']}"
        table.add_row(
            row["sensor_type"],
            row["check"],
            _severity_text(row["severity"]),
            rule,
            row["alert_type"]
        )
    return table


def cmd_serve(args, config: LabwatchConfiguration) -> int:
    """Run the HTTP/WebSocket API."""
    host = args.host or config.api.host
    port = args.port or config.api.port
    set_configuration(config)
    run_server(host=host, port=port, debug=args.debug)
    return 0


def cmd_evaluate(args, config: LabwatchConfiguration) -> int:
    """Evaluate one reading against an empty set of open alerts."""
    try:
        reading = parse_key_values(args.values)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    evaluator = AlertEvaluator(config.thresholds)
    decisions = evaluator.evaluate(
        args.room_id, args.room_name, args.sensor_id, args.sensor_type, reading
    )
    status = evaluator.reading_status(args.sensor_type, reading)

    console.print(build_decision_table(decisions))
    console.print(f"Reading status: [bold]{status.value}[/bold]")
    return 0


async def _simulate(config: LabwatchConfiguration, names: Sequence[str]):
    scenarios = find_scenarios(names) if names else list(SCENARIOS)
    processor = AlertProcessor(AlertStorage(in_memory=True), AlertEvaluator(config.thresholds))
    await processor.start()
    try:
        return await run_scenarios(processor, scenarios)
    finally:
        await processor.stop()


def cmd_simulate(args, config: LabwatchConfiguration) -> int:
    """Run the built-in scenarios through an in-memory processor."""
    try:
        outcomes = asyncio.run(_simulate(config, args.scenarios))
    except KeyError as e:
        names = ", ".join(scenario.name for scenario in SCENARIOS)
        console.print(f"[red]Unknown scenario {e}[/red]. Available: {names}")
        return 2

    table = Table(title="Alert simulation")
    table.add_column("#", justify="right")
    table.add_column("Scenario")
    table.add_column("Temp", justify="right")
    table.add_column("Humidity", justify="right")
    table.add_column("Status")
    table.add_column("Changes")
    table.add_column("Open alerts")
    table.add_column("As expected")

    for index, outcome in enumerate(outcomes, start=1):
        result = outcome.result
        changes: List[str] = (
            [f"+{a.alert_type.value}" for a in result.created]
            + [f"^{a.alert_type.value}" for a in result.escalated]
            + [f"-{a.alert_type.value}" for a in result.resolved]
        )
        open_alerts = ", ".join(
            f"{alert_type.value} ({severity.value})"
            for alert_type, severity in outcome.open_alerts.values()
        )
        table.add_row(
            str(index),
            outcome.scenario.name,
            f"{outcome.scenario.temperature:g}",
            f"{outcome.scenario.humidity:g}",
            result.status.value,
            " ".join(changes) or "-",
            open_alerts or "-",
            "[green]yes[/green]" if outcome.matched else "[red]no[/red]"
        )

    console.print(table)
    return 0 if all(outcome.matched for outcome in outcomes) else 1


def cmd_thresholds(args, config: LabwatchConfiguration) -> int:
    """Print the threshold table."""
    console.print(build_threshold_table(AlertEvaluator(config.thresholds)))
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labwatch",
        description="Labwatch - threshold alerting for laboratory room sensors",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  labwatch serve --port 8080
  labwatch evaluate tempHumidity temperature=32 humidity=50
  labwatch simulate "Low Temperature Alert"
  labwatch --config labwatch.yaml thresholds
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket API")
    serve_parser.add_argument("--host", help="Bind address (default: from configuration)")
    serve_parser.add_argument("--port", type=int, help="Port (default: from configuration)")

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate a single reading")
    evaluate_parser.add_argument(
        "sensor_type",
        help=f"Sensor type ({', '.join(t.value for t in SensorType)})"
    )
    evaluate_parser.add_argument("values", nargs="*", metavar="key=value", help="Reading fields")
    evaluate_parser.add_argument("--room-id", default="cli-room")
    evaluate_parser.add_argument("--room-name", default="CLI Room")
    evaluate_parser.add_argument("--sensor-id", default="cli-sensor")

    simulate_parser = subparsers.add_parser("simulate", help="Run built-in alert scenarios")
    simulate_parser.add_argument("scenarios", nargs="*", help="Scenario names (default: all)")

    subparsers.add_parser("thresholds", help="Show the alert threshold table")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_cli_configuration(args.config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 1

    configure_logging(
        debug=args.debug or config.enable_debug_logging,
        json_logs=args.json_logs or config.json_logs
    )

    commands = {
        "serve": cmd_serve,
        "evaluate": cmd_evaluate,
        "simulate": cmd_simulate,
        "thresholds": cmd_thresholds,
    }

    try:
        return commands[args.command](args, config)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
