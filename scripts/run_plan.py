#!/usr/bin/env python3
"""
Run a Plan

Validates, plans, dry-runs or executes a plan file against a git repository.

Usage:
    python scripts/run_plan.py plan.yaml --mode validate
    python scripts/run_plan.py plan.yaml --mode plan
    python scripts/run_plan.py plan.yaml --dry-run --strategy stacked
    python scripts/run_plan.py plan.yaml --strategy parallel --max-concurrency 5
    python scripts/run_plan.py plan.yaml --strategy stacked --submit

Options:
    --mode MODE             plan, dry-run, execute or validate (default: execute)
    --strategy NAME         parallel, stacked, sequential or hybrid
    --vcs-mode MODE         simple, worktree or stacked
    --continue-on-error     Keep running independent tasks after a failure
    --max-retries N         Retries per task after the first attempt
    --timeout SECONDS       Per-attempt timeout
    --max-concurrency N     Concurrent task executions (1-10)

Environment:
    TASKSTACK_* variables override config files; a .env file is loaded if present.
    TASKSTACK_AGENT_COMMAND sets the agent invoked for each task.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from pydantic import ValidationError

from taskstack.config import Config, RunOptions
from taskstack.errors import ConfigError
from taskstack.events import log_event
from taskstack.models import ExecutionMode, StrategyName, VcsMode
from taskstack.parallel.execution_engine import EXIT_FAILURE, ExecutionEngine, ExecutionReport
from taskstack.parallel.graph_validator import GraphValidator
from taskstack.plan_loader import load_plan_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a taskstack plan",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check the dependency graph only
  python scripts/run_plan.py plan.yaml --mode validate

  # Show layers and per-strategy estimates
  python scripts/run_plan.py plan.yaml --mode plan

  # Drive the whole run without touching the repository
  python scripts/run_plan.py plan.yaml --dry-run

  # Build a reviewable stack of branches and submit it
  python scripts/run_plan.py plan.yaml --strategy stacked --submit
        """
    )
    parser.add_argument('plan', help='Path to a YAML or JSON plan file')
    parser.add_argument(
        '--mode',
        choices=[m.value for m in ExecutionMode],
        default=ExecutionMode.EXECUTE.value,
        help='What to do with the plan (default: execute)'
    )
    parser.add_argument('--strategy', choices=[s.value for s in StrategyName], default=None)
    parser.add_argument('--vcs-mode', choices=[m.value for m in VcsMode], default=None)
    parser.add_argument('--continue-on-error', action='store_true', default=None)
    parser.add_argument('--allow-partial-success', action='store_true', default=None)
    parser.add_argument('--max-retries', type=int, default=None)
    parser.add_argument('--timeout', type=float, default=None, help='Per-attempt timeout in seconds')
    parser.add_argument('--max-concurrency', type=int, default=None, help='Concurrent tasks (1-10)')
    parser.add_argument('--dry-run', action='store_true', help='No VCS side effects, mock agent')
    parser.add_argument('--parent-ref', default=None, help='Base ref (default: configured trunk)')
    parser.add_argument('--cwd', default=None, help='Repository root (default: current directory)')
    parser.add_argument('--submit', action='store_true', default=None, help='Submit the stack for review')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser


def print_report(report: ExecutionReport, tasks) -> None:
    print(f"\n{'='*60}")
    print(f"{report.mode.value.upper()}: {report.message}")
    print(f"{'='*60}")

    if report.validation:
        for error in report.validation.errors:
            print(f"  ERROR: {error}")
        for warning in report.validation.warnings:
            print(f"  WARNING: {warning}")

    if report.mode == ExecutionMode.PLAN:
        validator = GraphValidator()
        validator.validate(tasks)
        print(validator.to_ascii())
        if report.metrics:
            print(f"\nParallelization efficiency: {report.metrics.parallelization_efficiency:.2f}")
            print(f"Estimated speedup: {report.metrics.estimated_speedup:.2f}x")
        for name, seconds in report.estimates.items():
            print(f"  {name:<12} ~{seconds:.0f}s")

    for task_id, info in report.tasks.items():
        line = f"  [{info['state']:<9}] {task_id}"
        if info.get('branch'):
            line += f"  {info['branch']}"
        if info.get('error'):
            line += f"  ({info['error']})"
        print(line)

    if report.result:
        for url in report.result.pr_urls:
            print(f"  Review: {url}")
        for error in report.result.errors:
            print(f"  ERROR: {error}")


async def main() -> int:
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        config = Config.load_default(args.cwd)
        tasks = load_plan_file(args.plan)
        options = RunOptions.from_config(
            config,
            mode=ExecutionMode(args.mode),
            strategy=args.strategy,
            vcs_mode=args.vcs_mode,
            continue_on_error=args.continue_on_error,
            allow_partial_success=args.allow_partial_success,
            max_retries=args.max_retries,
            timeout=args.timeout,
            max_concurrency=args.max_concurrency,
            dry_run=args.dry_run,
            verbose=args.verbose,
            parent_ref=args.parent_ref,
            cwd=args.cwd,
            submit=args.submit,
        )
    except ConfigError as e:
        print(f"Error: {e}")
        return EXIT_FAILURE
    except ValidationError as e:
        print(f"Error: invalid options\n{e}")
        return EXIT_FAILURE

    engine = ExecutionEngine(config, subscribers=[log_event])

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(engine.cancel()))
    except NotImplementedError:
        # Windows event loops do not support signal handlers
        pass

    report = await engine.run(tasks, options)
    print_report(report, tasks)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
