"""CLI entry point for pype.

Sends one request through a Fitting and prints the response envelope as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pype.config_loader import ConfigError, get_fitting, load_runtime_config
from pype.fitting import Fitting, MissingField
from pype.logging_utils import configure_logging, create_logger
from pype.models import FittingRequest, Health, Method, RuntimeConfig
from pype.transport import HttpxTransport

EXIT_GOOD = 0
EXIT_BAD = 1
EXIT_USAGE = 2


def positive_float(value: str) -> float:
    """Parse and validate a positive float value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def parse_header(value: str) -> tuple[str, str]:
    """Parse NAME:VALUE format. The value may itself contain colons.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if ":" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected NAME:VALUE (e.g., 'Accept:application/json')"
        )
    name, header_value = value.split(":", 1)
    name = name.strip()
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid header '{value}'. Name cannot be empty.")
    return (name, header_value.strip())


def parse_param(value: str) -> tuple[str, Any]:
    """Parse KEY=VALUE format. VALUE is decoded as JSON when possible, else kept as a string.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if "=" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid parameter '{value}'. Expected KEY=VALUE (e.g., 'count=3')"
        )
    key, raw = value.split("=", 1)
    if not key:
        raise argparse.ArgumentTypeError(f"Invalid parameter '{value}'. Key cannot be empty.")
    try:
        return (key, json.loads(raw))
    except json.JSONDecodeError:
        return (key, raw)


@dataclass
class RequestArgs:
    """Parsed arguments for request mode."""

    base_path: str | None
    suffix: str | None
    method: str | None
    content_type: str | None
    headers: list[tuple[str, str]]
    params: list[tuple[str, Any]]
    config: Path | None
    fitting: str | None
    timeout: float | None
    verbose: bool


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with the request subcommand."""
    parser = argparse.ArgumentParser(
        prog="pype",
        description="Send HTTP requests and report the outcome as a response envelope.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Execution mode")

    request_parser = subparsers.add_parser(
        "request",
        help="Send one request and print the response envelope",
    )
    request_parser.add_argument(
        "--base-path",
        help="API base path (e.g., https://xkcd.com)",
    )
    request_parser.add_argument(
        "--suffix",
        help="Request suffix appended to the base path (e.g., /info.0.json)",
    )
    request_parser.add_argument(
        "--method",
        type=str.upper,
        choices=[m.value for m in Method],
        help="HTTP method (default: GET)",
    )
    request_parser.add_argument(
        "--content-type",
        help="Content-Type header (default: application/json)",
    )
    request_parser.add_argument(
        "--header",
        type=parse_header,
        action="append",
        default=[],
        metavar="NAME:VALUE",
        dest="headers",
        help="Add a request header (can be repeated)",
    )
    request_parser.add_argument(
        "--param",
        type=parse_param,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        dest="params",
        help="Add a body parameter for POST/PUT (can be repeated)",
    )
    request_parser.add_argument(
        "--config",
        type=Path,
        help="Path to runtime config YAML",
    )
    request_parser.add_argument(
        "--fitting",
        help="Name of a fitting defined in the config file",
    )
    request_parser.add_argument(
        "--timeout",
        type=positive_float,
        help="Request timeout in seconds (overrides config)",
    )
    request_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log diagnostics to stderr",
    )

    return parser


def parse_request_args(namespace: argparse.Namespace) -> RequestArgs:
    """Convert parsed namespace to RequestArgs dataclass."""
    return RequestArgs(
        base_path=namespace.base_path,
        suffix=namespace.suffix,
        method=namespace.method,
        content_type=namespace.content_type,
        headers=namespace.headers or [],
        params=namespace.params or [],
        config=namespace.config,
        fitting=namespace.fitting,
        timeout=namespace.timeout,
        verbose=namespace.verbose,
    )


def parse_args(args: list[str] | None = None) -> RequestArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.fitting and namespace.config is None:
        parser.error("--fitting requires --config")

    return parse_request_args(namespace)


def build_descriptor(args: RequestArgs, config: RuntimeConfig | None) -> FittingRequest:
    """Merge the configured fitting (if any) with explicit command-line values.

    Explicit flags win. Headers and parameters from flags are added on top of
    the configured ones. The method falls back to GET.
    """
    if args.fitting and config is not None:
        base = get_fitting(config, args.fitting)
    else:
        base = FittingRequest()

    updates: dict[str, Any] = {}
    if args.base_path is not None:
        updates["base_path"] = args.base_path
    if args.suffix is not None:
        updates["suffix"] = args.suffix
    if args.method is not None:
        updates["method"] = Method(args.method)
    elif base.method is None:
        updates["method"] = Method.GET
    if args.content_type is not None:
        updates["content_type"] = args.content_type
    if args.headers:
        updates["headers"] = {**base.headers, **dict(args.headers)}
    if args.params:
        updates["parameters"] = {**base.parameters, **dict(args.params)}

    return base.model_copy(update=updates, deep=True)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        args = parse_args(argv)
        return run_request(args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_BAD


def run_request(args: RequestArgs) -> int:
    """Run request mode. Returns the process exit code."""
    config: RuntimeConfig | None = None
    try:
        if args.config is not None:
            config = load_runtime_config(args.config)
        descriptor = build_descriptor(args, config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    runtime = config or RuntimeConfig()
    transport_config = runtime.transport
    if args.timeout is not None:
        transport_config = transport_config.model_copy(update={"timeout": args.timeout})

    logger = None
    if args.verbose:
        configure_logging(runtime.logging.level, runtime.logging.json_output)
        logger = create_logger("pype")

    fitting = Fitting(transport=HttpxTransport(transport_config), logger=logger)

    try:
        response = asyncio.run(fitting.send_request(descriptor))
    except MissingField as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    print(response.model_dump_json(by_alias=True, indent=2))

    if response.status.health == Health.GOOD:
        return EXIT_GOOD
    print(response.diagnostic, file=sys.stderr)
    return EXIT_BAD


if __name__ == "__main__":
    sys.exit(main())
