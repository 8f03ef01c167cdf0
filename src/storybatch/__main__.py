"""Entry point for `python -m storybatch` and the `storybatch` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from storybatch import DependencyGraph, Orchestrator
from storybatch.errors import SessionConflict, SpecError, SpecNotFound
from storybatch.executor import AgentExecutor, CommandExecutor, load_executor
from storybatch.models import DependencyPolicy, SessionStatus, parse_iteration_cap
from storybatch.orchestrator import format_outcome, format_status
from storybatch.settings import RuntimeSettings
from storybatch.spec_store import load_spec
from storybatch.state_store import ExecutionStateStore


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"must be an integer, got: {value!r}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got: {parsed}")
    return parsed


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="storybatch", description="Plan and run dependency-ordered work items")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Directory holding session.json and progress.log (default: STORYBATCH_STATE_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Validate a spec and print its batch plan")
    plan.add_argument("--spec", type=Path, default=None, help="Path to the work spec JSON")

    run = subparsers.add_parser("run", help="Execute a spec, resuming a running session if present")
    run.add_argument("--spec", type=Path, default=None, help="Path to the work spec JSON")
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("--executor", default=None, help="Executor import path, e.g. 'package.module:attribute'")
    source.add_argument(
        "--command",
        dest="executor_command",
        default=None,
        help="Command run once per item with the rendered prompt on stdin; {id} and {role} are substituted",
    )
    run.add_argument(
        "--max-iterations",
        type=parse_iteration_cap,
        default=None,
        help="Iteration cap (integer >= 1 or 'unbounded'; default: STORYBATCH_MAX_ITERATIONS)",
    )
    run.add_argument(
        "--policy",
        default=None,
        choices=[policy.value for policy in DependencyPolicy],
        help="Whether items with failed dependencies still run (default: STORYBATCH_DEPENDENCY_POLICY)",
    )
    run.add_argument("--max-concurrency", type=_non_negative_int, default=None, help="Upper bound on items running at once (0: none)")

    subparsers.add_parser("status", help="Print the current session status")
    subparsers.add_parser("clear", help="Delete the session record and progress log")
    subparsers.add_parser("progress", help="Print the progress log")
    return parser.parse_args(argv)


def build_executor(args: argparse.Namespace) -> AgentExecutor:
    if args.executor is not None:
        return load_executor(args.executor)
    return CommandExecutor(args.executor_command, cwd=Path.cwd())


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    state_dir = args.state_dir if args.state_dir is not None else settings.state_path()
    spec_path = getattr(args, "spec", None) or state_dir / settings.spec_filename

    if args.command == "plan":
        try:
            spec = load_spec(spec_path)
        except SpecError as exc:
            logging.error("Spec rejected: %s", exc)
            return 1
        print(DependencyGraph(spec).visualize())
        return 0

    store = ExecutionStateStore(state_dir)
    if args.command == "status":
        print(format_status(store))
        return 0

    if args.command == "clear":
        store.clear()
        print(f"cleared={state_dir}")
        return 0

    if args.command == "progress":
        print(store.read_progress(), end="")
        return 0

    try:
        executor = build_executor(args)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        logging.error("Unable to load executor: %s", exc)
        return 1

    orchestrator = Orchestrator(
        spec_path,
        executor,
        state_dir=state_dir,
        settings=settings,
        policy=DependencyPolicy(args.policy) if args.policy is not None else None,
        max_concurrency=args.max_concurrency,
    )
    try:
        session = orchestrator.run(args.max_iterations)
    except SpecError as exc:
        logging.error("Spec rejected: %s", exc)
        return 1
    except (SessionConflict, SpecNotFound) as exc:
        logging.error("%s", exc)
        return 1

    assert orchestrator.spec is not None
    print(format_outcome(session, len(orchestrator.spec.items)))
    print(f"status={session.status.value}")
    return 0 if session.status == SessionStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
