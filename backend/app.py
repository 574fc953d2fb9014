"""
Command line entry point for running workflow graphs.

    python app.py run workflow.json --scope selected --select llm-1
    python app.py history --workflow-id my-flow
    python app.py show <run_id>
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

import config
from database import RunHistoryManager, RunHistoryRecorder
from graph_engine.errors import GraphValidationError, InvalidScopeError
from graph_executor import RunManager
from task_backends import HttpTaskBackend, LocalTaskBackend
from utils.logging_utils import compact_json, setup_logging

setup_logging()
logger = logging.getLogger(__name__)


def _load_json(value: str):
    path = Path(value)
    if path.exists():
        return json.loads(path.read_text(encoding="utf-8"))
    return json.loads(value)


def _run(args: argparse.Namespace) -> int:
    graph = _load_json(args.graph)
    inputs = _load_json(args.inputs) if args.inputs else None
    backend = LocalTaskBackend() if args.local else HttpTaskBackend(args.backend_url)

    recorder_factory = None
    if not args.no_history:
        history = RunHistoryManager()

        def recorder_factory(workflow_id):
            return RunHistoryRecorder(history, workflow_id)

    manager = RunManager(
        backend,
        recorder_factory=recorder_factory,
        max_concurrency=args.max_concurrency,
        poll_interval=args.poll_interval,
    )
    try:
        run_id = manager.start_run(
            graph,
            scope=args.scope,
            selection=args.select,
            inputs=inputs,
            workflow_id=args.workflow_id,
        )
    except (GraphValidationError, InvalidScopeError) as e:
        logger.error(f"Cannot start run: {e}")
        return 2

    last_states = None
    try:
        while True:
            status = manager.get_run_status(run_id)
            node_states = {node_id: state.value for node_id, state in status.node_states.items()}
            if node_states != last_states:
                logger.info(f"Run {run_id} [{status.state.value}] {compact_json(node_states)}")
                last_states = node_states
            if status.state.terminal:
                break
            time.sleep(args.status_interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, cancelling run")
        manager.cancel_run(run_id)
        status = manager.wait(run_id)
    finally:
        manager.shutdown()

    print(json.dumps(status.to_dict(), indent=2))
    return 0 if status.succeeded else 1


def _history(args: argparse.Namespace) -> int:
    runs = RunHistoryManager().list_runs(args.workflow_id, limit=args.limit)
    print(json.dumps(runs, indent=2))
    return 0


def _show(args: argparse.Namespace) -> int:
    run = RunHistoryManager().get_run(args.run_id)
    if run is None:
        logger.error(f"Run {args.run_id} not found")
        return 1
    print(json.dumps(run, indent=2))
    return 0


def _clear_history(args: argparse.Namespace) -> int:
    deleted = RunHistoryManager().clear_workflow_history(args.workflow_id)
    print(f"Deleted {deleted} runs")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="graphrun", description="Run workflow graphs")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a workflow graph")
    run.add_argument("graph", help="Graph JSON file or inline JSON")
    run.add_argument("--scope", default="full", choices=["full", "selected", "single"])
    run.add_argument("--select", nargs="+", default=None, help="Node ids for selected/single scope")
    run.add_argument("--inputs", default=None, help="Handle inputs (JSON) for single scope")
    run.add_argument("--workflow-id", default=None)
    run.add_argument("--backend-url", default=config.TASK_BACKEND_URL)
    run.add_argument("--local", action="store_true", help="Use the in-process task backend")
    run.add_argument("--max-concurrency", type=int, default=config.MAX_CONCURRENCY)
    run.add_argument("--poll-interval", type=float, default=config.POLL_INTERVAL)
    run.add_argument("--status-interval", type=float, default=0.5)
    run.add_argument("--no-history", action="store_true", help="Do not record the run in DuckDB")
    run.set_defaults(func=_run)

    history = sub.add_parser("history", help="List recorded runs")
    history.add_argument("--workflow-id", default=None)
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(func=_history)

    show = sub.add_parser("show", help="Show one recorded run with node detail")
    show.add_argument("run_id")
    show.set_defaults(func=_show)

    clear = sub.add_parser("clear-history", help="Delete every recorded run of a workflow")
    clear.add_argument("workflow_id")
    clear.set_defaults(func=_clear_history)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
