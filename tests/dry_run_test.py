from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from leadflow.settings import EngineSettings
from leadflow.workflow import DryRunHarness, SQLiteWorkflowStore, WorkflowEngine, graph_from_dict


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

SCORING_WORKFLOW = {
    "id": "wf-score",
    "name": "Score router",
    "nodes": [
        {"id": "t", "type": "trigger"},
        {"id": "c", "type": "condition", "config": {"field": "score", "operator": "gte", "value": 50}},
        {"id": "hot", "type": "action_add_tag", "config": {"tag": "hot"}},
        {"id": "msg", "type": "action_send_message", "config": {"content": "Hi {{record.name}}"}},
        {"id": "hook", "type": "action_send_webhook", "config": {"url": "https://hooks.example.com/lead"}},
        {"id": "cold", "type": "action_add_tag", "config": {"tag": "cold"}},
        {"id": "wait", "type": "delay", "config": {"delaySeconds": 86400}},
        {"id": "e", "type": "end"},
    ],
    "edges": [
        {"sourceNodeId": "t", "targetNodeId": "c"},
        {"sourceNodeId": "c", "targetNodeId": "hot", "branchLabel": "true"},
        {"sourceNodeId": "c", "targetNodeId": "cold", "branchLabel": "false"},
        {"sourceNodeId": "hot", "targetNodeId": "msg"},
        {"sourceNodeId": "msg", "targetNodeId": "hook"},
        {"sourceNodeId": "hook", "targetNodeId": "wait"},
        {"sourceNodeId": "cold", "targetNodeId": "e"},
        {"sourceNodeId": "wait", "targetNodeId": "e"},
    ],
}


class DryRunHarnessTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.store = SQLiteWorkflowStore(db_path=Path(self._tmp.name) / "leadflow.db")
        self.store.save_graph(graph_from_dict(SCORING_WORKFLOW))
        engine = WorkflowEngine(self.store, settings=EngineSettings(), clock=lambda: FIXED_NOW)
        self.harness = DryRunHarness(engine=engine, store=self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_synthetic_record_takes_the_true_branch_without_side_effects(self) -> None:
        result = asyncio.run(self.harness.run("wf-score"))

        self.assertTrue(result.success)
        self.assertEqual(result.record_id, "test-lead")
        self.assertEqual(result.trace["visited"], ["t", "c", "hot", "msg", "hook", "wait"])
        self.assertEqual(result.trace["status"], "paused")
        message = next(item for item in result.trace["actions_taken"] if item["action"] == "send_message")
        self.assertEqual(message["result"]["message"], "Hi Test Lead")
        self.assertTrue(message["result"]["dry_run"])

        self.assertEqual(self.store.list_tasks(), [])
        self.assertIsNone(self.store.load_record("test-lead"))
        self.assertIsNone(self.store.load_paused_state("wf-score", "test-lead"))
        self.assertEqual(self.store.get_workflow_stats("wf-score").runs, 0)

    def test_stored_record_is_used_and_left_unchanged(self) -> None:
        self.store.save_record("lead-7", {"name": "Low", "score": 10, "tags": []})
        result = asyncio.run(self.harness.run("wf-score", record_id="lead-7"))

        self.assertEqual(result.trace["visited"], ["t", "c", "cold", "e"])
        self.assertEqual(self.store.load_record("lead-7").data["tags"], [])

    def test_repeated_dry_runs_produce_the_same_trace(self) -> None:
        first = asyncio.run(self.harness.run("wf-score"))
        second = asyncio.run(self.harness.run("wf-score"))
        self.assertNotEqual(first.test_run_id, second.test_run_id)
        self.assertEqual(first.trace, second.trace)

    def test_test_runs_are_recorded(self) -> None:
        result = asyncio.run(self.harness.run("wf-score"))
        stored = self.harness.get(result.test_run_id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.trace, result.trace)
        self.assertIsNone(stored.record_id)
        self.assertEqual([item.test_run_id for item in self.harness.list("wf-score")], [result.test_run_id])

    def test_invalid_graph_fails_fast(self) -> None:
        broken = graph_from_dict(
            {
                "id": "wf-broken",
                "nodes": [{"id": "t", "type": "trigger"}, {"id": "c", "type": "condition"}],
                "edges": [{"sourceNodeId": "t", "targetNodeId": "c"}],
            }
        )
        result = asyncio.run(self.harness.run("wf-broken", graph=broken))

        self.assertFalse(result.success)
        self.assertIsNone(result.trace)
        self.assertEqual([issue.type for issue in result.validation_errors], ["invalid_condition"])
        self.assertTrue(result.error.startswith("Workflow validation failed"))
        self.assertEqual(self.harness.get(result.test_run_id).status, "failed")

    def test_unknown_workflow_or_record_fails(self) -> None:
        missing = asyncio.run(self.harness.run("nope"))
        self.assertFalse(missing.success)
        self.assertIn("'nope' was not found", missing.error)

        no_record = asyncio.run(self.harness.run("wf-score", record_id="ghost"))
        self.assertFalse(no_record.success)
        self.assertIn("Record 'ghost'", no_record.error)

    def test_failing_node_marks_the_test_run_failed(self) -> None:
        graph = graph_from_dict(
            {
                "id": "wf-bad",
                "nodes": [
                    {"id": "t", "type": "trigger"},
                    {"id": "a", "type": "action_add_tag", "config": {}},
                ],
                "edges": [{"sourceNodeId": "t", "targetNodeId": "a"}],
            }
        )
        result = asyncio.run(self.harness.run("wf-bad", graph=graph))
        self.assertFalse(result.success)
        self.assertEqual(result.trace["errors"][0]["node_id"], "a")
        self.assertEqual(self.harness.get(result.test_run_id).status, "failed")


if __name__ == "__main__":
    unittest.main()
