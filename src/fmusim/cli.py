"""Command line interface: ``fmusim describe`` and ``fmusim simulate``."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import FmuError, ValidationError
from .info import DEFAULT_CAUSALITIES, fmu_info
from .logging_config import setup_logging
from .simulation import SimulationOptions, simulate_fmu


def load_options(path: str | Path) -> SimulationOptions:
    """Read :class:`SimulationOptions` from a YAML or JSON file."""
    options_path = Path(path)
    if not options_path.is_file():
        raise ValidationError(f"options file not found: {path}")

    text = options_path.read_text(encoding="utf-8")
    try:
        if options_path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ValidationError(f"invalid options syntax: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("options root must be a mapping")
    return options_from_dict(data)


def options_from_dict(data: dict[str, Any]) -> SimulationOptions:
    try:
        return SimulationOptions.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


def cmd_describe(args: argparse.Namespace) -> int:
    try:
        info = fmu_info(args.filename, args.causality or DEFAULT_CAUSALITIES)
    except FmuError as exc:
        print(f"[ERROR] {exc}")
        return 1
    print(info, end="")
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    try:
        options = load_options(args.options) if args.options else SimulationOptions()
        overrides = {
            "start_time": args.start_time,
            "stop_time": args.stop_time,
            "output_interval": args.output_interval,
            "timeout": args.timeout,
        }
        update = {k: v for k, v in overrides.items() if v is not None}
        if args.debug_logging:
            update["debug_logging"] = True
        if update:
            options = options_from_dict(
                {**options.model_dump(exclude_unset=True), **update}
            )
        result = simulate_fmu(args.filename, options)
    except FmuError as exc:
        print(f"[ERROR] {exc}")
        return 1

    if args.output_file:
        result.to_csv(args.output_file)
    else:
        print(result.to_csv(), end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fmusim", description="FMI 2.0 simulation")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug messages")
    parser.add_argument("--log-file", default=None, help="path to write the log to")
    subparsers = parser.add_subparsers(dest="command", required=True)

    describe_parser = subparsers.add_parser("describe", help="print the info of an FMU")
    describe_parser.add_argument("filename", help="path to the FMU")
    describe_parser.add_argument(
        "--causality",
        action="append",
        default=None,
        help="causality of the variables to list (repeatable)",
    )
    describe_parser.set_defaults(func=cmd_describe)

    simulate_parser = subparsers.add_parser("simulate", help="simulate an FMU")
    simulate_parser.add_argument("filename", help="path to the FMU")
    simulate_parser.add_argument("--start-time", type=float, default=None, help="start time")
    simulate_parser.add_argument("--stop-time", type=float, default=None, help="stop time")
    simulate_parser.add_argument(
        "--output-interval", type=float, default=None, help="interval for sampling the outputs"
    )
    simulate_parser.add_argument(
        "--timeout", type=float, default=None, help="wall-clock limit in seconds"
    )
    simulate_parser.add_argument(
        "--debug-logging", action="store_true", help="enable the model's debug logging"
    )
    simulate_parser.add_argument("--options", default=None, help="path to options YAML/JSON")
    simulate_parser.add_argument("--output-file", default=None, help="path to write the CSV result")
    simulate_parser.set_defaults(func=cmd_simulate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        level = logging.DEBUG
    elif getattr(args, "debug_logging", False):
        # model messages are logged at INFO
        level = logging.INFO
    else:
        level = logging.WARNING
    setup_logging(level, args.log_file)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
