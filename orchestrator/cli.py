"""
Quest Engine - Command Line

Drive tasks against the simulated world and validate task definitions.

Usage:
    # List the task definitions under tasks/
    python -m orchestrator.cli list

    # Run a task to completion (simulated clock, no real sleeps)
    python -m orchestrator.cli run cooks_assistant
    python -m orchestrator.cli run "Sheep Shearer" --ticks 200 --config-env test

    # Validate definitions
    python -m orchestrator.cli validate tasks/
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from engine.audit import AuditLogHandler, SessionAuditLog
from engine.config_loader import load_config
from engine.errors import ValidationError
from engine.logging import configure_logging
from engine.monitor import ProgressSignalMonitor
from engine.settings import Settings, parse_key_set
from engine.validate import main as validate_main
from engine.waits import SystemClock
from fixtures.world import FakeClock, demo_world
from orchestrator.driver import TickDriver
from orchestrator.registry import TaskRegistry
from orchestrator.runtime import Orchestrator
from orchestrator.types import ExecutorState

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _load_registry(tasks_dir: str, monitor=None) -> TaskRegistry:
    registry = TaskRegistry(monitor=monitor)
    registry.load_directory(tasks_dir)
    return registry


def cmd_list(args) -> int:
    """Show every registered task."""
    try:
        registry = _load_registry(args.tasks)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    tasks = registry.all()
    if not tasks:
        print(f"No task definitions found in {args.tasks}", file=sys.stderr)
        return 0

    print(f"\nTasks ({len(tasks)})", file=sys.stderr)
    print(f"{'─' * 60}", file=sys.stderr)
    for info in tasks:
        items = ", ".join(f"{r.quantity}x {r.name}" for r in info.required_items) or "none"
        print(f"  {info.task_id:24s} {info.display_name}", file=sys.stderr)
        print(f"    difficulty: {info.difficulty.value}  "
              f"est: {info.estimated_minutes}m  items: {items}", file=sys.stderr)
    return 0


def cmd_run(args) -> int:
    """Run one task in the simulated world and print the final stats as JSON."""
    config = load_config(env=args.config_env, project_root=args.root)
    try:
        settings = Settings.from_config(config)
    except ValidationError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(level=args.log_level or settings.log_level, fmt=settings.log_format)

    clock = SystemClock() if args.realtime else FakeClock()
    world = demo_world(None if args.realtime else clock)
    monitor = ProgressSignalMonitor(world.read_signal, settings.monitor, clock)

    try:
        registry = _load_registry(args.tasks, monitor)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    task_id = args.task if registry.get(args.task) else registry.find_by_display_name(args.task)
    if task_id is None:
        print(f"Error: unknown task: {args.task}", file=sys.stderr)
        return 1

    try:
        discover_keys = parse_key_set(args.discover.split(",")) if args.discover else frozenset()
    except ValidationError as e:
        print(f"Error: --discover: {e}", file=sys.stderr)
        return 1

    audit = None
    handler = None
    if settings.audit.enabled:
        audit = SessionAuditLog(str(Path(args.root) / settings.audit.directory))
        handler = AuditLogHandler(audit)
        logging.getLogger("quest_engine").addHandler(handler)

    events: list[str] = []
    orch = Orchestrator(
        registry, world, storage=world, market=world, monitor=monitor,
        settings=settings, clock=clock, audit=audit,
        observer=lambda event, payload: events.append(event),
    )

    print(f"\n{'═' * 60}", file=sys.stderr)
    print(f"  RUN: {task_id} ({registry.display_name(task_id)})", file=sys.stderr)
    print(f"{'═' * 60}", file=sys.stderr, flush=True)

    try:
        if discover_keys:
            baselined = monitor.start_discovery(discover_keys)
            print(f"  discovery: {baselined}/{len(discover_keys)} candidate keys baselined", file=sys.stderr)
        monitor.poll(force=True)
        if not orch.start(task_id):
            print(f"\n  ✗ Could not start {task_id}: {orch.step_description()}", file=sys.stderr)
            orch.stop()
            return 1

        driver = TickDriver(orch)
        ticks = driver.run_until_idle(max_ticks=args.ticks)
        stats = orch.stats()
        completed = task_id in registry.completed()
        if orch.state is not ExecutorState.IDLE:
            orch.stop()
    finally:
        if handler is not None:
            logging.getLogger("quest_engine").removeHandler(handler)
        if audit is not None:
            audit.close()

    print(f"{'─' * 60}", file=sys.stderr)
    print(f"  result:  {'completed' if completed else 'not completed'}", file=sys.stderr)
    print(f"  ticks:   {ticks}", file=sys.stderr)
    print(f"  events:  {len(events)}", file=sys.stderr)
    if monitor.discovering:
        found = ", ".join(str(s.key) for s in monitor.discovered()) or "none"
        print(f"  discovered: {found}", file=sys.stderr)
    if audit is not None:
        print(f"  audit:   {audit.path}", file=sys.stderr)
    print(f"{'═' * 60}\n", file=sys.stderr)

    print(json.dumps({**stats.to_dict(), "completed": completed, "ticks": ticks}, indent=2))
    return 0 if completed else 1


def cmd_validate(args) -> int:
    """Validate task definition files or directories."""
    argv = list(args.paths) + (["--strict"] if args.strict else [])
    return validate_main(argv)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Quest Engine - task runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--tasks", default=str(_PROJECT_ROOT / "tasks"),
        help="Directory of task definitions (default: tasks/ in project root)",
    )
    parser.add_argument(
        "--root", default=str(_PROJECT_ROOT),
        help="Project root holding config/ (default: repository root)",
    )

    subs = parser.add_subparsers(dest="command", help="Command")

    # list
    subs.add_parser("list", help="List registered tasks")

    # run
    run_p = subs.add_parser("run", help="Run a task against the simulated world")
    run_p.add_argument("task", help="Task id or display name")
    run_p.add_argument("--ticks", type=int, default=500, help="Tick budget (default: 500)")
    run_p.add_argument("--config-env", default="dev", help="Config overlay (config/<env>.yaml)")
    run_p.add_argument("--realtime", action="store_true", help="Sleep for real between ticks")
    run_p.add_argument("--log-level", default=None, help="Override the configured log level")
    run_p.add_argument("--discover", default=None, metavar="KEYS",
                       help="Watch extra signal keys, e.g. 500-510,600")

    # validate
    val_p = subs.add_parser("validate", help="Validate task definitions")
    val_p.add_argument("paths", nargs="+", help="Task files or directories")
    val_p.add_argument("--strict", action="store_true", help="Treat warnings as errors")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if args.command == "list":
        return cmd_list(args)
    elif args.command == "run":
        return cmd_run(args)
    elif args.command == "validate":
        return cmd_validate(args)
    return 1


if __name__ == "__main__":
    sys.exit(main())
