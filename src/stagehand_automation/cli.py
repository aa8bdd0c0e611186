from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import ConfigError, StagehandConfig, load_config
from .engine import CancelToken
from .graph import GraphError
from .inventory import InvalidSpec
from .reconciler import ExecutionPlan
from .runner import DeploymentRunner
from .state import ReportStore
from .types import ExecutionResult, Operation, Outcome, RunOutcome, RunReport

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


OUTCOME_COLORS = {
    Outcome.SUCCEEDED: Ansi.GREEN,
    Outcome.SKIPPED_SATISFIED: Ansi.BLUE,
    Outcome.FAILED_FATAL: Ansi.RED,
    Outcome.FAILED_RETRYABLE: Ansi.YELLOW,
    Outcome.SKIPPED_BLOCKED: Ansi.ORANGE,
    Outcome.SKIPPED_CANCELLED: Ansi.ORANGE,
}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stagehand", description="Stagehand deployment orchestrator")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/stagehand/main.conf"),
        help="Path to stagehand config file (default: /etc/stagehand/main.conf)",
    )
    parser.add_argument("--state-dir", type=Path, help="Directory for run reports and markers")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Reconcile and execute a deployment spec")
    run.add_argument("spec", nargs="?", type=Path, help="Deployment spec (default from config)")
    run.add_argument("--inventory", type=Path, help="Inventory file (default from config or spec)")
    run.add_argument("--run-id", help="Identifier for this run (default: random)")

    plan = commands.add_parser("plan", help="Show the pruned graph without executing")
    plan.add_argument("spec", nargs="?", type=Path, help="Deployment spec (default from config)")
    plan.add_argument("--inventory", type=Path, help="Inventory file (default from config or spec)")

    cancel = commands.add_parser("cancel", help="Request cancellation of an active run")
    cancel.add_argument("run_id")

    show = commands.add_parser("show", help="Print a stored run report")
    show.add_argument("run_id")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(colorize(f"Config invalid: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID
    if args.state_dir:
        cfg.state_dir = args.state_dir
    _apply_aws_env(cfg)

    if args.command == "cancel":
        return _cancel(cfg, args.run_id)
    if args.command == "show":
        return _show(cfg, args.run_id)

    spec_path = args.spec or cfg.spec
    if spec_path is None:
        print(colorize("No deployment spec given and none configured", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    runner = DeploymentRunner(cfg, on_start=print_progress)
    try:
        deployment = runner.load(spec_path, args.inventory or cfg.inventory)
        if args.command == "plan":
            plan = runner.plan(deployment)
            for line in format_plan(plan):
                print(line)
            return EXIT_OK
        token = CancelToken()
        previous = signal.signal(signal.SIGINT, lambda *_: token.cancel())
        try:
            report = runner.run(deployment, run_id=args.run_id, cancel=token)
        finally:
            signal.signal(signal.SIGINT, previous)
    except (InvalidSpec, GraphError, ValueError) as exc:
        _clear_progress()
        print(colorize(f"Spec validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    _clear_progress()
    effective_level = logging.getLogger().getEffectiveLevel()
    for result in report.results:
        if should_display_result(result, effective_level):
            print(format_result(result))
    print(render_summary(report))
    return exit_code(report)


def exit_code(report: RunReport) -> int:
    if report.outcome is RunOutcome.CANCELLED:
        return EXIT_CANCELLED
    if report.outcome is RunOutcome.FAILED:
        return EXIT_FAILED
    return EXIT_OK


def format_result(result: ExecutionResult) -> str:
    detail = result.error or ""
    if result.outcome is Outcome.SKIPPED_BLOCKED and result.blocked_by:
        detail = f"blocked by {result.blocked_by}"
    elif result.attempts > 1:
        detail = f"{detail} (attempts={result.attempts})".strip()
    line = f"{result.host}::{result.kind.value}[{result.operation_id}] {result.outcome.value}"
    if detail:
        line = f"{line} - {detail}"
    return colorize(line, OUTCOME_COLORS.get(result.outcome))


def should_display_result(result: ExecutionResult, log_level: int) -> bool:
    if result.outcome is not Outcome.SKIPPED_SATISFIED:
        return True
    return log_level <= logging.DEBUG


def format_plan(plan: ExecutionPlan) -> list[str]:
    lines: list[str] = []
    for op in plan.graph:
        reason = plan.reason(op.id)
        if op.id in plan.skipped:
            lines.append(colorize(f"{op.host}::{op.kind.value}[{op.id}] skip - {reason}", Ansi.BLUE))
            continue
        deps = sorted(plan.pending.dependencies_of(op.id))
        after = f" after {', '.join(deps)}" if deps else ""
        lines.append(colorize(f"{op.host}::{op.kind.value}[{op.id}] run - {reason}{after}{_described(op)}", Ansi.YELLOW))
    lines.append(f"Operations: {len(plan.graph)} | To run: {len(plan.pending)} | Satisfied: {len(plan.skipped)}")
    return lines


def render_summary(report: RunReport) -> str:
    counts: dict[Outcome, int] = {}
    for result in report.results:
        counts[result.outcome] = counts.get(result.outcome, 0) + 1
    parts = [
        f"Run: {report.run_id}",
        f"Outcome: {report.outcome.value}",
        f"Succeeded: {counts.get(Outcome.SUCCEEDED, 0)}",
        f"Satisfied: {counts.get(Outcome.SKIPPED_SATISFIED, 0)}",
        f"Failed: {counts.get(Outcome.FAILED_FATAL, 0)}",
        f"Blocked: {counts.get(Outcome.SKIPPED_BLOCKED, 0)}",
        f"Cancelled: {counts.get(Outcome.SKIPPED_CANCELLED, 0)}",
    ]
    color = Ansi.GREEN if report.outcome is RunOutcome.SUCCEEDED else Ansi.RED
    return colorize(" | ".join(parts), color)


_last_progress_len = 0


def print_progress(operation: Operation) -> None:
    global _last_progress_len
    line = f"{operation.host}::{operation.kind.value}[{operation.id}]{_described(operation)} running..."
    _clear_progress()
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _described(operation: Operation) -> str:
    if operation.action is None:
        return ""
    return f" ({operation.action.describe()})"


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


def _cancel(cfg: StagehandConfig, run_id: str) -> int:
    store = ReportStore(cfg.state_dir)
    try:
        requested = store.request_cancel(run_id)
    except ValueError as exc:
        print(colorize(str(exc), Ansi.RED), file=sys.stderr)
        return EXIT_INVALID
    if not requested:
        print(colorize(f"No active run '{run_id}'", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID
    print(f"Cancellation requested for run {run_id}")
    return EXIT_OK


def _show(cfg: StagehandConfig, run_id: str) -> int:
    store = ReportStore(cfg.state_dir)
    try:
        report = store.load(run_id)
    except ValueError as exc:
        print(colorize(str(exc), Ansi.RED), file=sys.stderr)
        return EXIT_INVALID
    if report is None:
        print(colorize(f"No report for run '{run_id}'", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID
    for result in report.results:
        print(format_result(result))
    print(render_summary(report))
    return exit_code(report)


def _apply_aws_env(cfg: StagehandConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


if __name__ == "__main__":
    raise SystemExit(main())
