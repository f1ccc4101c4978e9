from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from surge.behaviors import list_behaviors
from surge.config import get_settings, load_plan
from surge.engine import Engine, run
from surge.exceptions import SurgeError
from surge.report import format_report, write_summary

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIG_ERROR = 2


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="surge",
        description="Run HTTP load-test plans and check their thresholds.",
    )
    parser.add_argument("--log-level", help="Logging level (default: SURGE_LOG_LEVEL or INFO).")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Execute a plan file.")
    run_parser.add_argument("plan", help="Path to a JSON plan.")
    run_parser.add_argument("--base-url", help="Target base URL override.")
    run_parser.add_argument("--max-vus", type=int, help="Ceiling on concurrently running VUs.")
    run_parser.add_argument("--seed", type=int, help="Seed for reproducible randomness.")
    run_parser.add_argument(
        "--summary",
        help="Write the JSON summary here (default: SURGE_SUMMARY_PATH, if set).",
    )
    run_parser.add_argument(
        "--json", action="store_true", help="Print the JSON summary instead of the text report."
    )

    check_parser = sub.add_parser("validate", help="Validate a plan without running it.")
    check_parser.add_argument("plan", help="Path to a JSON plan.")

    sub.add_parser("behaviors", help="List registered behaviors.")
    return parser.parse_args(argv)


def _configure_logging(level_name: Optional[str]) -> None:
    level = getattr(logging, (level_name or get_settings().log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _cmd_run(args: argparse.Namespace) -> int:
    plan = load_plan(
        args.plan,
        overrides={"base_url": args.base_url, "max_vus": args.max_vus, "seed": args.seed},
    )
    result = run(plan, handle_signals=True)

    summary_path = args.summary or get_settings().summary_path
    if summary_path:
        write_summary(result, summary_path)
        print(f"Summary written to {summary_path}", file=sys.stderr)

    if args.json:
        print(json.dumps(result.to_log_dict(), ensure_ascii=False))
    else:
        print(format_report(result))
    return EXIT_OK if result.passed else EXIT_THRESHOLDS_FAILED


def _cmd_validate(args: argparse.Namespace) -> int:
    plan = load_plan(args.plan)
    # Resolves behaviors and checks thresholds against the metric set.
    Engine(plan)
    for spec in plan.scenarios:
        print(
            f"{spec.name}: {spec.executor.value} exec={spec.exec} "
            f"start={spec.start_offset:g}s window={spec.window_seconds:g}s peak_vus={spec.peak_vus}"
        )
    print(f"nominal duration: {plan.nominal_seconds:g}s")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = _parse_args(argv)
        _configure_logging(args.log_level)
        if args.command == "behaviors":
            for name in sorted(list_behaviors()):
                print(name)
            return EXIT_OK
        if args.command == "validate":
            return _cmd_validate(args)
        return _cmd_run(args)
    except SurgeError as exc:
        print(json.dumps(exc.to_dict(), ensure_ascii=False), file=sys.stderr)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
