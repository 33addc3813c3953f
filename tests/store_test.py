from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from leadflow.workflow import (
    ExecutionState,
    ExecutionStatus,
    PersistenceError,
    SQLiteWorkflowStore,
    graph_from_dict,
)


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class SQLiteWorkflowStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.store = SQLiteWorkflowStore(db_path=Path(self._tmp.name) / "leadflow.db")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_graph_round_trip_and_stats(self) -> None:
        graph = graph_from_dict(
            {
                "id": "wf-1",
                "name": "Welcome",
                "nodes": [{"id": "t", "type": "trigger"}, {"id": "e", "type": "end"}],
                "edges": [{"sourceNodeId": "t", "targetNodeId": "e"}],
            }
        )
        self.assertEqual(self.store.save_graph(graph), "wf-1")
        loaded = self.store.load_graph("wf-1")
        self.assertEqual(loaded.to_dict(), graph.to_dict())
        self.assertIsNone(self.store.load_graph("missing"))

        self.store.increment_workflow_stats("wf-1", True)
        self.store.increment_workflow_stats("wf-1", False)
        self.store.increment_workflow_stats("wf-1", True)
        stats = self.store.get_workflow_stats("wf-1")
        self.assertEqual((stats.runs, stats.successes, stats.failures), (3, 2, 1))

    def test_update_record_merges_custom_fields(self) -> None:
        self.store.save_record("lead-1", {"email": "a@b.c", "customFields": {"tier": "silver", "region": "eu"}})
        merged = self.store.update_record("lead-1", {"score": 10, "customFields": {"tier": "gold"}})
        self.assertEqual(merged["customFields"], {"tier": "gold", "region": "eu"})
        self.assertEqual(self.store.load_record("lead-1").data["score"], 10)
        with self.assertRaises(PersistenceError):
            self.store.update_record("ghost", {"score": 1})

    def test_find_records_matches_fields_and_tag_subsets(self) -> None:
        self.store.save_record("a", {"status": "open", "tags": ["vip", "eu"]})
        self.store.save_record("b", {"status": "open", "tags": ["eu"]})
        self.store.save_record("c", {"status": "closed", "tags": ["vip"]})
        self.assertEqual(self.store.find_records({"status": "open"}), ["a", "b"])
        self.assertEqual(self.store.find_records({"tags": ["vip"]}), ["a", "c"])
        self.assertEqual(self.store.find_records({}, limit=1), ["a"])

    def test_audience_membership_is_idempotent(self) -> None:
        self.assertTrue(self.store.add_audience_member("aud", "lead-1"))
        self.assertFalse(self.store.add_audience_member("aud", "lead-1"))
        self.assertEqual(self.store.audience_members("aud"), ["lead-1"])
        self.assertTrue(self.store.remove_audience_member("aud", "lead-1"))
        self.assertFalse(self.store.remove_audience_member("aud", "lead-1"))

    def test_task_queue(self) -> None:
        task_id = self.store.submit("agent_tasks", {"task": "research"})
        tasks = self.store.list_tasks("agent_tasks")
        self.assertEqual(tasks[0]["task_id"], task_id)
        self.assertEqual(tasks[0]["payload"], {"task": "research"})
        self.assertEqual(self.store.list_tasks("other"), [])

    def test_paused_state_versions_and_single_claim(self) -> None:
        state = ExecutionState(
            workflow_id="wf",
            record_id="lead-1",
            status=ExecutionStatus.PAUSED,
            pause_node_id="wait",
            resume_at=NOW + timedelta(hours=1),
            pending_branches=["other"],
            variables={"tier": "gold"},
        )
        self.store.save_paused_state(state)
        self.assertEqual(state.version, 1)
        self.store.save_paused_state(state)
        self.assertEqual(state.version, 2)

        loaded = self.store.load_paused_state("wf", "lead-1")
        self.assertEqual(loaded.version, 2)
        self.assertEqual(loaded.pending_branches, ["other"])
        self.assertEqual(loaded.resume_at, NOW + timedelta(hours=1))

        self.assertFalse(self.store.claim_paused_state("wf", "lead-1", 1))
        self.assertTrue(self.store.claim_paused_state("wf", "lead-1", 2))
        self.assertFalse(self.store.claim_paused_state("wf", "lead-1", 2))
        self.assertIsNone(self.store.load_paused_state("wf", "lead-1"))

    def test_due_paused_states_orders_by_resume_time(self) -> None:
        for record_id, offset in (("late", 30), ("early", 10), ("future", 600)):
            self.store.save_paused_state(
                ExecutionState(
                    workflow_id="wf",
                    record_id=record_id,
                    status=ExecutionStatus.PAUSED,
                    pause_node_id="wait",
                    resume_at=NOW + timedelta(seconds=offset),
                )
            )
        due = self.store.due_paused_states(NOW + timedelta(minutes=1))
        self.assertEqual([state.record_id for state in due], ["early", "late"])

    def test_test_run_lifecycle(self) -> None:
        run_id = self.store.create_test_run("wf", None)
        self.assertTrue(run_id.startswith("test-"))
        self.assertEqual(self.store.get_test_run(run_id).status, "pending")

        self.store.update_test_run(run_id, status="running")
        self.store.update_test_run(run_id, status="completed", trace={"visited": ["t"]}, duration_ms=12)
        stored = self.store.get_test_run(run_id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.trace, {"visited": ["t"]})
        self.assertEqual(stored.duration_ms, 12)
        self.assertIsNotNone(stored.finished_at)
        self.assertEqual([item.test_run_id for item in self.store.list_test_runs("wf")], [run_id])


if __name__ == "__main__":
    unittest.main()
