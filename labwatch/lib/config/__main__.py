"""Command-line interface for configuration management.

Usage:
    python -m labwatch.lib.config [COMMAND] [OPTIONS]

Commands:
    validate    - Validate configuration file
    create      - Create new configuration file
    show        - Show the effective configuration (file plus environment)
    schema      - Generate/export configuration schema

Examples:
    # Validate configuration
    python -m labwatch.lib.config validate labwatch.yaml

    # Create default configuration
    python -m labwatch.lib.config create --output labwatch.yaml
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import structlog
import yaml

from . import ConfigManager, ConfigurationError, load_default_configuration, save_config_to_file
from .validation import ValidationResult, validate_config_file, create_config_schema
from ...models.configuration import LabwatchConfiguration


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="python -m labwatch.lib.config",
        description="Labwatch Configuration Management",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
        metavar="COMMAND"
    )

    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate configuration file"
    )
    validate_parser.add_argument(
        "config_file",
        type=Path,
        help="Path to configuration file to validate"
    )
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat unknown keys as errors"
    )
    validate_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format for validation results"
    )

    create_parser = subparsers.add_parser(
        "create",
        help="Create new configuration file"
    )
    create_parser.add_argument(
        "--output", "-o",
        type=Path,
        required=True,
        help="Output file path"
    )
    create_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing file"
    )

    show_parser = subparsers.add_parser(
        "show",
        help="Show the effective configuration"
    )
    show_parser.add_argument(
        "config_file",
        type=Path,
        nargs="?",
        help="Configuration file (default: built-in defaults)"
    )
    show_parser.add_argument(
        "--format",
        choices=["yaml", "json"],
        default="yaml",
        help="Output format"
    )

    schema_parser = subparsers.add_parser(
        "schema",
        help="Generate configuration schema"
    )
    schema_parser.add_argument(
        "--output", "-o",
        type=Path,
        help="Output schema file (default: stdout)"
    )

    return parser


def print_results(result: ValidationResult, verbose: bool = False) -> None:
    if result.is_valid:
        print("Configuration is valid")
    else:
        print(f"Configuration is invalid ({len(result.errors)} errors)")

    for error in result.errors:
        print(f"  ERROR: {error}")

    for warning in result.warnings:
        print(f"  {warning}")

    if verbose:
        for info in result.info:
            print(f"  INFO: {info}")


def cmd_validate(args) -> int:
    """Handle validate command."""
    result = validate_config_file(args.config_file, strict=args.strict)

    if args.format == "json":
        print(json.dumps(result.get_summary(), indent=2, default=str))
    else:
        print(f"Validating configuration: {args.config_file}")
        print_results(result, verbose=args.verbose)

    return 0 if result.is_valid else 1


def cmd_create(args) -> int:
    """Handle create command."""
    if args.output.exists() and not args.overwrite:
        print(f"File already exists: {args.output}", file=sys.stderr)
        print("Use --overwrite to replace existing file")
        return 1

    save_config_to_file(LabwatchConfiguration(), args.output)
    print(f"Created configuration file: {args.output}")
    return 0


def cmd_show(args) -> int:
    """Handle show command."""
    if args.config_file:
        config = ConfigManager(args.config_file).load_config()
    else:
        config = load_default_configuration()

    data = config.export_dict()
    if args.format == "json":
        print(json.dumps(data, indent=2))
    else:
        print(yaml.dump(data, default_flow_style=False, indent=2, sort_keys=False), end="")
    return 0


def cmd_schema(args) -> int:
    """Handle schema command."""
    output_content = json.dumps(create_config_schema(), indent=2, sort_keys=True)

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(output_content)
        print(f"Schema exported to: {args.output}")
    else:
        print(output_content)

    return 0


def main(argv=None) -> int:
    """Main entry point for the configuration CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    structlog.configure(
        processors=[structlog.dev.ConsoleRenderer(colors=False)],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if args.verbose else logging.WARNING
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    commands = {
        "validate": cmd_validate,
        "create": cmd_create,
        "show": cmd_show,
        "schema": cmd_schema,
    }

    try:
        return commands[args.command](args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
