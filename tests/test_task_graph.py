import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from oka.config import AutonomousRuntimeConfig
from oka.models import CriticOutput, ExecutorOutput, PlannerOutput, PlannerTask, TaskGraph, TaskNode
from oka.task_graph import (
    NOTHING_COMPLETED,
    REPLAN_BUDGET_EXHAUSTED,
    apply_install_result,
    apply_verdict,
    load_task_graph,
    merge_replan,
    next_runnable,
    save_task_graph,
    settle,
    start_run,
    start_task,
    summarize_graph,
)


def _graph(*nodes: TaskNode, replan_count: int = 0) -> TaskGraph:
    return TaskGraph(
        run_id="run-1",
        goal="goal",
        status="executing",
        created_at="t0",
        updated_at="t0",
        nodes=list(nodes),
        replan_count=replan_count,
    )


def _execution(status: str = "done") -> ExecutorOutput:
    return ExecutorOutput(task_id="task-a", status=status, result_summary="did it", artifacts=[])


def _critic(verdict: str, issues: list[str] | None = None) -> CriticOutput:
    return CriticOutput(task_id="task-a", verdict=verdict, issues=issues or [], suggested_fix="")


def _planned(*ids: str, depends_on: dict[str, list[str]] | None = None) -> PlannerOutput:
    deps = depends_on or {}
    return PlannerOutput(
        summary="new plan",
        tasks=[
            PlannerTask(
                id=task_id,
                title=task_id.upper(),
                depends_on=deps.get(task_id, []),
                acceptance_criteria=[],
                risk="low",
                side_effect="read",
            )
            for task_id in ids
        ],
    )


class SelectionTests(unittest.TestCase):
    def test_next_runnable_waits_for_dependencies(self) -> None:
        graph = _graph(
            TaskNode(id="task-b", title="B", depends_on=["task-a"]),
            TaskNode(id="task-a", title="A"),
        )
        self.assertEqual(next_runnable(graph).id, "task-a")
        graph = _graph(
            TaskNode(id="task-b", title="B", depends_on=["task-a"]),
            TaskNode(id="task-a", title="A", status="done"),
        )
        self.assertEqual(next_runnable(graph).id, "task-b")

    def test_blocked_dependency_leaves_nothing_runnable(self) -> None:
        graph = _graph(
            TaskNode(id="task-a", title="A", status="blocked"),
            TaskNode(id="task-b", title="B", depends_on=["task-a"]),
        )
        self.assertIsNone(next_runnable(graph))
        self.assertEqual(settle(graph).status, "blocked")

    def test_settle_done_when_every_node_done(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="done"))
        settled = settle(graph)
        self.assertEqual(settled.status, "done")
        self.assertIsNone(settled.current_task_id)

    def test_start_task_marks_in_progress(self) -> None:
        graph = start_task(_graph(TaskNode(id="task-a", title="A")), "task-a")
        self.assertEqual(graph.node("task-a").status, "in_progress")
        self.assertEqual(graph.current_task_id, "task-a")


class VerdictTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = AutonomousRuntimeConfig(retry_budget_per_node=1, replan_budget_per_run=1)

    def test_pass_with_done_execution_completes(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph, outcome = apply_verdict(graph, "task-a", _execution(), _critic("pass"), self.config)
        self.assertEqual(outcome, "done")
        self.assertEqual(graph.node("task-a").status, "done")
        self.assertEqual(graph.node("task-a").result_summary, "did it")

    def test_pass_without_done_execution_blocks(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph, outcome = apply_verdict(
            graph, "task-a", _execution("failed"), _critic("pass"), self.config
        )
        self.assertEqual(outcome, "blocked")
        node = graph.node("task-a")
        self.assertEqual(node.status, "blocked")
        self.assertIn("status=failed", node.critic_issues[0])

    def test_retry_requeues_until_budget_then_fails(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph, outcome = apply_verdict(
            graph, "task-a", _execution(), _critic("retry", ["again"]), self.config
        )
        self.assertEqual(outcome, "retry")
        self.assertEqual(graph.node("task-a").status, "pending")
        self.assertEqual(graph.node("task-a").retries, 1)

        graph, outcome = apply_verdict(
            graph, "task-a", _execution(), _critic("retry", ["still"]), self.config
        )
        self.assertEqual(outcome, "failed")
        node = graph.node("task-a")
        self.assertEqual(node.status, "failed")
        self.assertEqual(node.retries, 1)
        self.assertEqual(node.critic_issues, ["still"])

    def test_replan_respects_budget(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph, outcome = apply_verdict(graph, "task-a", _execution(), _critic("replan"), self.config)
        self.assertEqual(outcome, "replan")
        self.assertEqual(graph.status, "replanning")
        self.assertEqual(graph.replan_count, 1)

        graph, outcome = apply_verdict(graph, "task-a", _execution(), _critic("replan"), self.config)
        self.assertEqual(outcome, "blocked")
        self.assertEqual(graph.replan_count, 1)
        self.assertEqual(graph.node("task-a").critic_issues, [REPLAN_BUDGET_EXHAUSTED])

    def test_block_verdict_blocks(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph, outcome = apply_verdict(
            graph, "task-a", _execution(), _critic("block", ["unsafe"]), self.config
        )
        self.assertEqual(outcome, "blocked")
        self.assertEqual(graph.node("task-a").critic_issues, ["unsafe"])


class InstallResultTests(unittest.TestCase):
    def test_installed_requeues_without_touching_retries(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress", retries=1))
        graph = apply_install_result(graph, "task-a", "installed", "ok")
        node = graph.node("task-a")
        self.assertEqual(node.status, "pending")
        self.assertEqual(node.retries, 1)
        self.assertEqual(node.install_attempts, 1)

    def test_escalated_blocks(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        graph = apply_install_result(graph, "task-a", "escalated", "Escalated ffmpeg")
        self.assertEqual(graph.node("task-a").status, "blocked")
        self.assertEqual(graph.node("task-a").critic_issues, ["Escalated ffmpeg"])

    def test_failed_leaves_node_for_critic(self) -> None:
        graph = _graph(TaskNode(id="task-a", title="A", status="in_progress"))
        self.assertEqual(apply_install_result(graph, "task-a", "failed", "boom"), graph)


class MergeReplanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.graph = _graph(
            TaskNode(id="task-a", title="A", status="done", result_summary="kept"),
            TaskNode(id="task-b", title="B", status="in_progress", depends_on=["task-a"]),
            TaskNode(id="task-c", title="C", depends_on=["task-b"]),
            TaskNode(id="task-d", title="D"),
            replan_count=1,
        )

    def test_default_replaces_every_non_done_node(self) -> None:
        merged = merge_replan(
            self.graph, "task-b", _planned("task-x", depends_on={"task-x": ["task-a"]})
        )
        self.assertEqual([node.id for node in merged.nodes], ["task-a", "task-x"])
        self.assertEqual(merged.node("task-x").depends_on, ["task-a"])
        self.assertEqual(merged.status, "executing")
        self.assertEqual(merged.summary, "new plan")
        self.assertEqual(merged.replan_count, 1)

    def test_preserve_keeps_unaffected_pending_nodes(self) -> None:
        merged = merge_replan(
            self.graph, "task-b", _planned("task-x"), preserve_unaffected_pending=True
        )
        self.assertEqual([node.id for node in merged.nodes], ["task-a", "task-d", "task-x"])

    def test_preserve_drops_pending_nodes_behind_a_blocked_prerequisite(self) -> None:
        graph = _graph(
            TaskNode(id="task-a", title="A", status="blocked", critic_issues=["Escalated ffmpeg"]),
            TaskNode(id="task-b", title="B", depends_on=["task-a"]),
            TaskNode(id="task-e", title="E", depends_on=["task-b"]),
            TaskNode(id="task-c", title="C", status="in_progress"),
            TaskNode(id="task-d", title="D"),
        )
        merged = merge_replan(graph, "task-c", _planned("task-c2"), preserve_unaffected_pending=True)
        self.assertEqual([node.id for node in merged.nodes], ["task-d", "task-c2"])
        self.assertEqual(next_runnable(merged).id, "task-d")

    def test_done_nodes_are_never_overwritten(self) -> None:
        merged = merge_replan(self.graph, "task-b", _planned("task-a", "task-y"))
        self.assertEqual(merged.node("task-a").status, "done")
        self.assertEqual(merged.node("task-a").result_summary, "kept")
        self.assertIsNotNone(merged.node("task-y"))

    def test_dangling_and_cyclic_edges_are_pruned(self) -> None:
        plan = _planned(
            "task-x",
            "task-y",
            depends_on={"task-x": ["task-y", "task-gone"], "task-y": ["task-x"]},
        )
        merged = merge_replan(self.graph, "task-b", plan, preserve_unaffected_pending=False)
        deps = {node.id: node.depends_on for node in merged.nodes}
        self.assertEqual(deps["task-x"], ["task-y"])
        self.assertEqual(deps["task-y"], [])


class SummaryAndPersistenceTests(unittest.TestCase):
    def test_summary_sections(self) -> None:
        graph = _graph(
            TaskNode(id="task-a", title="A", status="done", result_summary="made A"),
            TaskNode(id="task-b", title="B", status="blocked", critic_issues=["needs ffmpeg"]),
            TaskNode(id="task-c", title="C", status="failed"),
        )
        summary = summarize_graph(graph)
        self.assertEqual(
            summary,
            "Completed:\n- A: made A\n\nBlocked:\n- B: needs ffmpeg\n\nFailed:\n- C: failed",
        )

    def test_summary_when_nothing_happened(self) -> None:
        self.assertEqual(summarize_graph(_graph(TaskNode(id="task-a", title="A"))), NOTHING_COMPLETED)

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "active_task_graph.json"
            graph = start_run("run-9", "goal")
            saved = save_task_graph(path, graph)
            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["run_id"], "run-9")
            self.assertEqual(payload["status"], "planning")
            self.assertEqual(load_task_graph(path), saved)

    def test_corrupt_snapshot_loads_empty_graph(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "active_task_graph.json"
            path.write_text("{not json", encoding="utf-8")
            graph = load_task_graph(path)
            self.assertIsNone(graph.run_id)
            self.assertEqual(graph.nodes, [])

    def test_snapshot_with_non_string_enums_loads_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "active_task_graph.json"
            payload = {
                "run_id": "run-9",
                "status": ["done"],
                "nodes": [{"id": "task-a", "title": "A", "status": {"x": 1}, "risk": ["high"]}],
            }
            path.write_text(json.dumps(payload), encoding="utf-8")
            graph = load_task_graph(path)
            self.assertEqual(graph.status, "done")
            self.assertEqual(graph.nodes[0].status, "pending")
            self.assertEqual(graph.nodes[0].risk, "low")


if __name__ == "__main__":
    unittest.main()
