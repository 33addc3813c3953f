from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

import httpx

from leadflow.settings import EngineSettings
from leadflow.workflow import (
    ExecutionStatus,
    SQLiteWorkflowStore,
    WorkflowEngine,
    WorkflowHookRegistry,
    graph_from_dict,
)
from leadflow.workflow.http_client import RetryingCallClient, RetryPolicy


START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def _no_sleep(seconds: float) -> None:
    return None


def _edge(source: str, target: str, label: str | None = None) -> dict:
    payload = {"sourceNodeId": source, "targetNodeId": target}
    if label is not None:
        payload["branchLabel"] = label
    return payload


def _tag(node_id: str, tag: str | None = None) -> dict:
    return {"id": node_id, "type": "action_add_tag", "config": {"tag": tag or node_id}}


class WorkflowEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.store = SQLiteWorkflowStore(db_path=Path(self._tmp.name) / "leadflow.db")
        self.store.save_record("lead-1", {"fullName": "Ada", "score": 25, "tags": []})
        self.clock = _Clock(START)
        self.hooks = WorkflowHookRegistry()
        self.engine = self._engine()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _engine(self, **overrides: object) -> WorkflowEngine:
        options: dict[str, object] = {"settings": EngineSettings(), "hooks": self.hooks, "clock": self.clock}
        options.update(overrides)
        return WorkflowEngine(self.store, **options)  # type: ignore[arg-type]

    def _save(self, nodes: list[dict], edges: list[dict], workflow_id: str = "wf") -> None:
        self.store.save_graph(graph_from_dict({"id": workflow_id, "nodes": nodes, "edges": edges}))

    def _tags(self) -> list[str]:
        return self.store.load_record("lead-1").data["tags"]

    def test_linear_workflow_completes_and_updates_stats(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, _tag("a"), {"id": "e", "type": "end"}],
            [_edge("t", "a"), _edge("a", "e")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1")

        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        self.assertTrue(result.success)
        self.assertEqual(result.state.visited, ["t", "a", "e"])
        self.assertEqual([item.action for item in result.actions_taken], ["trigger_evaluated", "add_tag"])
        self.assertEqual(self._tags(), ["a"])
        stats = self.store.get_workflow_stats("wf")
        self.assertEqual((stats.runs, stats.successes, stats.failures), (1, 1, 0))
        self.assertEqual(result.state.metadata["iterations"], 3)

    def test_condition_branches_deterministically(self) -> None:
        self._save(
            [
                {"id": "t", "type": "trigger"},
                {"id": "c", "type": "condition", "config": {"field": "score", "operator": "gte", "value": 20}},
                _tag("hot"),
                _tag("cold"),
            ],
            [_edge("t", "c"), _edge("c", "hot", "true"), _edge("c", "cold", "false")],
        )
        first = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(first.state.visited, ["t", "c", "hot"])

        self.store.update_record("lead-1", {"score": 5, "tags": []})
        second = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(second.state.visited, ["t", "c", "cold"])

    def test_fan_out_walks_branches_in_edge_order(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, _tag("a"), _tag("a2"), _tag("b")],
            [_edge("t", "a"), _edge("t", "b"), _edge("a", "a2")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(result.state.visited, ["t", "a", "a2", "b"])
        self.assertEqual(self._tags(), ["a", "a2", "b"])

    def test_visit_cap_stops_cyclic_graphs(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, _tag("a"), _tag("b")],
            [_edge("t", "a"), _edge("a", "b"), _edge("b", "a")],
        )
        engine = self._engine(settings=EngineSettings(max_node_visits=5))
        result = engine.run(workflow_id="wf", record_id="lead-1", skip_validation=True)

        self.assertEqual(result.status, ExecutionStatus.FAILED)
        self.assertEqual(len(result.state.visited), 5)
        self.assertEqual(len(result.state.errors), 1)
        self.assertEqual(result.state.errors[0].node_id, "workflow")
        self.assertIn("maximum of 5 node visits", result.error)

    def test_invalid_graph_fails_before_running(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, _tag("a"), _tag("b")],
            [_edge("t", "a"), _edge("a", "b"), _edge("b", "a")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1")

        self.assertEqual(result.status, ExecutionStatus.FAILED)
        self.assertEqual([issue.type for issue in result.validation_errors], ["cycle"])
        self.assertEqual(result.state.visited, [])
        self.assertEqual(self._tags(), [])
        self.assertEqual(self.store.get_workflow_stats("wf").runs, 0)

    def test_missing_workflow_and_record(self) -> None:
        missing = self.engine.run(workflow_id="nope", record_id="lead-1")
        self.assertEqual(missing.status, ExecutionStatus.FAILED)
        self.assertIn("'nope' was not found", missing.error)

        self._save([{"id": "t", "type": "trigger"}], [])
        no_record = self.engine.run(workflow_id="wf", record_id="ghost")
        self.assertIn("Record 'ghost' was not found", no_record.error)

    def test_node_failure_stops_the_run_and_counts_as_failure(self) -> None:
        self._save(
            [
                {"id": "t", "type": "trigger"},
                {"id": "bad", "type": "action_update_field", "config": {"field": "id", "value": "x"}},
                _tag("after"),
            ],
            [_edge("t", "bad"), _edge("bad", "after")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1")

        self.assertEqual(result.status, ExecutionStatus.FAILED)
        self.assertEqual(result.state.errors[0].node_id, "bad")
        self.assertNotIn("after", result.state.visited)
        self.assertEqual(self.store.get_workflow_stats("wf").failures, 1)

    def test_webhook_failure_records_retry_history(self) -> None:
        client = RetryingCallClient(
            default_policy=RetryPolicy(max_retries=1, initial_delay_ms=10),
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            sleep=_no_sleep,
        )
        self._save(
            [
                {"id": "t", "type": "trigger"},
                {"id": "hook", "type": "action_send_webhook", "config": {"url": "https://hooks.example.com/x"}},
            ],
            [_edge("t", "hook")],
        )
        result = self._engine(call_client=client).run(workflow_id="wf", record_id="lead-1")

        self.assertEqual(result.status, ExecutionStatus.FAILED)
        failure = result.actions_taken[-1]
        self.assertEqual(failure.action, "send_webhook_failed")
        self.assertEqual(failure.result["status"], 503)
        self.assertEqual(
            failure.result["retry_history"],
            [{"attempt": 1, "delay_ms": 10, "status": 503}, {"attempt": 2, "delay_ms": 0, "status": 503}],
        )

    def test_pause_then_resume_continues_after_the_delay(self) -> None:
        self._save(
            [
                {"id": "t", "type": "trigger"},
                _tag("before"),
                {"id": "wait", "type": "delay", "config": {"delaySeconds": 3600}},
                _tag("after"),
                {"id": "e", "type": "end"},
            ],
            [_edge("t", "before"), _edge("before", "wait"), _edge("wait", "after"), _edge("after", "e")],
        )
        paused = self.engine.run(workflow_id="wf", record_id="lead-1")

        self.assertEqual(paused.status, ExecutionStatus.PAUSED)
        self.assertTrue(paused.success)
        self.assertEqual(paused.state.pause_node_id, "wait")
        self.assertEqual(paused.state.resume_at, START + timedelta(hours=1))
        self.assertEqual(self._tags(), ["before"])
        stored = self.store.load_paused_state("wf", "lead-1")
        self.assertEqual(stored.pause_node_id, "wait")
        self.assertEqual(self.store.get_workflow_stats("wf").runs, 0)

        self.clock.now = START + timedelta(hours=1, seconds=1)
        resumed = self.engine.run_resume(workflow_id="wf", record_id="lead-1")

        self.assertEqual(resumed.status, ExecutionStatus.COMPLETED)
        self.assertEqual(resumed.state.visited, ["t", "before", "wait", "after", "e"])
        self.assertIn("delay_completed", [item.action for item in resumed.actions_taken])
        self.assertEqual(self._tags(), ["before", "after"])
        self.assertIsNone(self.store.load_paused_state("wf", "lead-1"))
        self.assertEqual(self.store.get_workflow_stats("wf").runs, 1)

        again = self.engine.run_resume(workflow_id="wf", record_id="lead-1")
        self.assertEqual(again.status, ExecutionStatus.FAILED)
        self.assertIn("No paused execution", again.error)

    def test_only_one_resume_wins_the_claim(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, {"id": "wait", "type": "delay", "config": {"delaySeconds": 60}}, _tag("x")],
            [_edge("t", "wait"), _edge("wait", "x")],
        )
        self.engine.run(workflow_id="wf", record_id="lead-1")
        first_copy = self.store.load_paused_state("wf", "lead-1")
        second_copy = self.store.load_paused_state("wf", "lead-1")

        winner = self.engine.run_resume(workflow_id="wf", record_id="lead-1", paused_state=first_copy)
        loser = self.engine.run_resume(workflow_id="wf", record_id="lead-1", paused_state=second_copy)

        self.assertEqual(winner.status, ExecutionStatus.COMPLETED)
        self.assertEqual(loser.status, ExecutionStatus.FAILED)
        self.assertIn("already resumed", loser.error)
        self.assertEqual(self._tags(), ["x"])
        self.assertEqual(loser.state.visited, ["t", "wait"])
        self.assertEqual([error.node_id for error in loser.state.errors], ["workflow"])

    def test_failed_resume_keeps_the_paused_trace(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, _tag("a"), {"id": "wait", "type": "delay", "config": {"delaySeconds": 60}}],
            [_edge("t", "a"), _edge("a", "wait")],
        )
        self.engine.run(workflow_id="wf", record_id="lead-1")
        paused = self.store.load_paused_state("wf", "lead-1")
        paused.pause_node_id = "a"

        result = self.engine.run_resume(workflow_id="wf", record_id="lead-1", paused_state=paused)

        self.assertEqual(result.status, ExecutionStatus.FAILED)
        self.assertIn("is not a delay node", result.error)
        self.assertEqual(result.state.visited, ["t", "a", "wait"])
        self.assertEqual(result.state.completed, ["t", "a"])
        self.assertEqual(len(result.state.errors), 1)
        self.assertEqual(paused.status, ExecutionStatus.PAUSED)
        self.assertIsNotNone(self.store.load_paused_state("wf", "lead-1"))

    def test_pending_sibling_branch_survives_a_pause(self) -> None:
        self._save(
            [
                {"id": "t", "type": "trigger"},
                {"id": "wait", "type": "delay", "config": {"delaySeconds": 60}},
                _tag("x"),
                _tag("y"),
            ],
            [_edge("t", "wait"), _edge("t", "y"), _edge("wait", "x")],
        )
        paused = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(paused.state.pending_branches, ["y"])
        self.assertEqual(self._tags(), [])

        self.clock.now = START + timedelta(minutes=5)
        resumed = self.engine.run_resume(workflow_id="wf", record_id="lead-1")
        self.assertEqual(resumed.state.visited, ["t", "wait", "x", "y"])
        self.assertEqual(self._tags(), ["x", "y"])

    def test_dry_run_pause_is_not_persisted(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger"}, {"id": "wait", "type": "delay", "config": {"delaySeconds": 60}}],
            [_edge("t", "wait")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1", dry_run=True)
        self.assertEqual(result.status, ExecutionStatus.PAUSED)
        self.assertIsNone(self.store.load_paused_state("wf", "lead-1"))

    def test_unmet_trigger_continues_unless_told_to_stop(self) -> None:
        self._save(
            [{"id": "t", "type": "trigger_stage_entry", "config": {"toStageId": "qualified"}}, _tag("a")],
            [_edge("t", "a")],
        )
        carried_on = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(carried_on.state.visited, ["t", "a"])
        self.assertFalse(carried_on.actions_taken[0].result["triggered"])

        stopped = self.engine.run(workflow_id="wf", record_id="lead-1", stop_if_not_triggered=True)
        self.assertEqual(stopped.status, ExecutionStatus.COMPLETED)
        self.assertEqual(stopped.state.visited, ["t"])

    def test_missing_condition_branch_ends_the_run(self) -> None:
        self._save(
            [
                {"id": "t", "type": "trigger"},
                {"id": "c", "type": "condition", "config": {"field": "score", "operator": "gt", "value": 100}},
                _tag("yes"),
            ],
            [_edge("t", "c"), _edge("c", "yes", "true")],
        )
        result = self.engine.run(workflow_id="wf", record_id="lead-1", skip_validation=True)
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        self.assertEqual(result.state.visited, ["t", "c"])

    def test_hooks_observe_nodes_and_failures_do_not_break_runs(self) -> None:
        seen: list[str] = []

        def before_node(context: dict) -> None:
            seen.append(context["node_id"])

        def explode(context: dict) -> None:
            raise RuntimeError("hook bug")

        def after_run(context: dict) -> None:
            seen.append(context["status"])

        self.hooks.register("before_node", before_node)
        self.hooks.register("after_run", explode)
        self.hooks.register("after_run", after_run)
        self._save([{"id": "t", "type": "trigger"}, _tag("a")], [_edge("t", "a")])

        result = self.engine.run(workflow_id="wf", record_id="lead-1")
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        self.assertEqual(seen, ["t", "a", "completed"])
        with self.assertRaises(ValueError):
            self.hooks.register("on_lunch", before_node)

    def test_sync_run_refuses_inside_event_loop(self) -> None:
        async def _inner() -> None:
            with self.assertRaises(RuntimeError):
                self.engine.run(workflow_id="wf", record_id="lead-1")

        asyncio.run(_inner())

    def test_supplied_record_is_not_mutated_in_dry_run(self) -> None:
        self._save([{"id": "t", "type": "trigger"}, _tag("a")], [_edge("t", "a")])
        record = {"fullName": "Grace", "tags": []}
        result = self.engine.run(workflow_id="wf", record_id="lead-x", record=record, dry_run=True)
        self.assertEqual(result.status, ExecutionStatus.COMPLETED)
        self.assertEqual(record, {"fullName": "Grace", "tags": []})
        self.assertTrue(result.actions_taken[-1].result["dry_run"])
        self.assertEqual(self.store.get_workflow_stats("wf").runs, 0)


if __name__ == "__main__":
    unittest.main()
