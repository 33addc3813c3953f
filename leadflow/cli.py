from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from rich.console import Console

from leadflow.logging_utils import configure_logging
from leadflow.settings import load_settings
from leadflow.workflow import (
    DryRunHarness,
    ExecutionResult,
    GraphFormatError,
    ResumeScheduler,
    SQLiteWorkflowStore,
    WorkflowEngine,
    WorkflowGraph,
    graph_from_dict,
    validate_graph,
)
from leadflow.workflow.diagnostics import render_validation_result


LOGGER = logging.getLogger(__name__)


class LeadflowCLI:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(highlight=False, markup=False)
        self.settings = load_settings()
        self.store = SQLiteWorkflowStore(db_path=self.settings.sqlite_path)
        self.engine = WorkflowEngine(self.store, settings=self.settings)

    def validate(self, graph_path: Path) -> int:
        graph = self._read_graph(graph_path)
        result = validate_graph(
            graph,
            large_graph_node_count=self.settings.large_graph_warning_threshold,
        )
        self.console.print(render_validation_result(result))
        return 0 if result.valid else 1

    def import_graph(self, graph_path: Path) -> int:
        graph = self._read_graph(graph_path)
        workflow_id = self.store.save_graph(graph)
        self.console.print(f"Saved workflow {workflow_id} ({len(graph.nodes)} nodes, {len(graph.edges)} edges).")
        return 0

    def dry_run(self, graph_path: Path, record_path: Path | None) -> int:
        graph = self._read_graph(graph_path)
        record_id = None
        if record_path is not None:
            payload = self._read_json(record_path)
            record_id = str(payload.get("id") or record_path.stem)
            self.store.save_record(record_id, payload)

        harness = DryRunHarness(engine=self.engine, store=self.store)
        result = asyncio.run(harness.run(graph.workflow_id, record_id=record_id, graph=graph))

        rows = [
            ("test run", result.test_run_id),
            ("record", result.record_id),
            ("success", str(result.success)),
            ("duration", f"{result.duration_ms}ms"),
        ]
        if result.error:
            rows.append(("error", result.error))
        self._print_kv_lines("Dry run", rows)
        if result.trace:
            self._print_list(
                "Actions",
                [f"{item['node_id']}: {item['action']}" for item in result.trace.get("actions_taken", [])],
            )
        return 0 if result.success else 1

    def execute(self, workflow_id: str, record_id: str) -> int:
        result = self.engine.run(workflow_id=workflow_id, record_id=record_id)
        self._print_result(result)
        return 0 if result.success else 1

    def resume_due(self, limit: int) -> int:
        scheduler = ResumeScheduler(store=self.store, engine=self.engine)
        results = asyncio.run(scheduler.trigger_due(limit=limit))
        self._print_list(
            "Resumed executions",
            [f"{item.workflow_id}/{item.record_id}: {item.status} ({item.detail})" for item in results],
        )
        return 1 if any(item.status in {"failed", "error"} for item in results) else 0

    def _print_result(self, result: ExecutionResult) -> None:
        state = result.state
        rows = [
            ("workflow", state.workflow_id),
            ("record", state.record_id),
            ("status", result.status.value),
            ("visited", " -> ".join(state.visited) or "(none)"),
        ]
        if state.resume_at:
            rows.append(("resume at", state.resume_at.isoformat()))
        for error in state.errors:
            rows.append((f"error [{error.node_id}]", error.message))
        self._print_kv_lines("Execution", rows)

    def _print_kv_lines(self, title: str, rows: list[tuple[str, str]]) -> None:
        self.console.print(title)
        for key, value in rows:
            self.console.print(f"- {key}: {value}")
        self.console.print()

    def _print_list(self, title: str, items: list[str]) -> None:
        self.console.print(title)
        if not items:
            self.console.print("- (none)")
        else:
            for item in items:
                self.console.print(f"- {item}")
        self.console.print()

    def _read_graph(self, path: Path) -> WorkflowGraph:
        return graph_from_dict(self._read_json(path))

    def _read_json(self, path: Path) -> dict:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise GraphFormatError(f"Could not read {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise GraphFormatError(f"{path} must contain a JSON object.")
        return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leadflow", description="Lead workflow automation engine")
    commands = parser.add_subparsers(dest="command", required=True)

    validate = commands.add_parser("validate", help="Validate a workflow graph file")
    validate.add_argument("graph", type=Path)

    import_graph = commands.add_parser("import", help="Store a workflow graph file")
    import_graph.add_argument("graph", type=Path)

    dry_run = commands.add_parser("dry-run", help="Run a workflow without side effects")
    dry_run.add_argument("graph", type=Path)
    dry_run.add_argument("--record", type=Path, default=None, help="JSON file with the record to run against")

    execute = commands.add_parser("execute", help="Execute a stored workflow for a stored record")
    execute.add_argument("--workflow-id", required=True)
    execute.add_argument("--record-id", required=True)

    resume = commands.add_parser("resume-due", help="Resume paused executions whose delay has elapsed")
    resume.add_argument("--limit", type=int, default=20)
    return parser


def main(argv: Sequence[str] | None = None, console: Console | None = None) -> int:
    args = build_parser().parse_args(argv)
    app = LeadflowCLI(console=console)
    try:
        if args.command == "validate":
            return app.validate(args.graph)
        if args.command == "import":
            return app.import_graph(args.graph)
        if args.command == "dry-run":
            return app.dry_run(args.graph, args.record)
        if args.command == "execute":
            return app.execute(args.workflow_id, args.record_id)
        return app.resume_due(args.limit)
    except GraphFormatError as exc:
        app.console.print(f"Invalid workflow document: {exc}")
        return 1


def run() -> None:
    configure_logging()
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
