from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable

from oka.config import AutonomousRuntimeConfig, Paths, load_runtime_config
from oka.dependencies import DependencyInstallResult, attempt_user_space_install
from oka.llm import LLMClient
from oka.models import (
    Actor,
    ContextPack,
    DependencyHint,
    EventStatus,
    ExecutorOutput,
    RunLedgerEvent,
    SideEffect,
    TaskGraph,
    TaskNode,
    dependency_to_dict,
)
from oka.retrieval import build_context_pack
from oka.run_ledger import append_ledger_event
from oka.task_graph import (
    apply_install_result,
    apply_plan,
    apply_verdict,
    begin_critique,
    force_blocked,
    install_budget_exhausted,
    merge_replan,
    next_runnable,
    save_task_graph,
    settle,
    start_run,
    start_task,
    summarize_graph,
    update_node,
)
from oka.tasking import (
    build_critic_prompt,
    build_executor_prompt,
    build_planner_prompt,
    parse_critic_output,
    parse_executor_output,
    parse_planner_output,
)

Installer = Callable[[Paths, TaskNode, DependencyHint], DependencyInstallResult]

TERMINAL_STATUSES = frozenset({"done", "blocked"})

_EXECUTION_EVENT_STATUS: dict[str, EventStatus] = {
    "done": "ok",
    "blocked": "warning",
    "failed": "error",
}
_VERDICT_EVENT_STATUS: dict[str, EventStatus] = {
    "pass": "ok",
    "retry": "warning",
    "replan": "warning",
    "block": "error",
}
_INSTALL_EVENT_STATUS: dict[str, EventStatus] = {
    "installed": "ok",
    "escalated": "warning",
    "failed": "error",
}


@dataclass(frozen=True)
class AutonomousRunResult:
    response: str
    graph: TaskGraph


def iteration_budget(node_count: int, config: AutonomousRuntimeConfig) -> int:
    per_node = config.retry_budget_per_node + config.replan_budget_per_run + 2
    return max(4, node_count * per_node)


class TaskRunner:
    """Drives one goal through plan, execute, critique until done or blocked."""

    def __init__(
        self,
        paths: Paths,
        llm: LLMClient,
        config: AutonomousRuntimeConfig | None = None,
        status_fn: Callable[[str], None] | None = None,
        installer: Installer | None = None,
    ) -> None:
        self.paths = paths
        self.llm = llm
        self.config = config or load_runtime_config(paths.runtime_config_path)
        self.status_fn = status_fn
        self.installer = installer or attempt_user_space_install

    def run(self, goal: str) -> AutonomousRunResult:
        run_id = str(uuid.uuid4())
        graph = self._save(start_run(run_id, goal))
        self._log("run.started", run_id, actor="governor", message=goal[:500])

        context_pack = build_context_pack(self.paths, goal, self.config, graph)
        planner_raw = self._complete(build_planner_prompt(goal, context_pack, self.config), "planner")
        plan = parse_planner_output(planner_raw, goal, self.config)
        graph = self._save(apply_plan(graph, plan))
        self._status(f"Plan: {len(graph.nodes)} tasks ({', '.join(n.id for n in graph.nodes)})")
        self._log(
            "plan.created",
            run_id,
            actor="planner",
            message=plan.summary,
            data={"task_count": len(graph.nodes), "task_ids": [node.id for node in graph.nodes]},
        )

        max_iterations = iteration_budget(len(graph.nodes), self.config)
        for _ in range(max_iterations):
            node = next_runnable(graph)
            if node is None:
                graph = self._save(settle(graph))
                break
            graph = self._run_node(graph, node)

        if graph.status not in TERMINAL_STATUSES:
            if next_runnable(graph) is None:
                graph = self._save(settle(graph))
            else:
                graph = self._save(force_blocked(graph))
                self._log(
                    "run.iteration_budget_exhausted",
                    run_id,
                    actor="governor",
                    status="warning",
                    message="Iteration budget exhausted before terminal state.",
                    data={"max_iterations": max_iterations},
                )

        self._log(
            "run.finished",
            run_id,
            actor="governor",
            status="ok" if graph.status == "done" else "warning",
            message=f"Run finished with status={graph.status}",
        )
        self._status(f"Run {run_id} finished: {graph.status}")
        return AutonomousRunResult(response=summarize_graph(graph), graph=graph)

    def _run_node(self, graph: TaskGraph, node: TaskNode) -> TaskGraph:
        run_id = graph.run_id
        goal = graph.goal
        graph = self._save(start_task(graph, node.id))
        node = graph.node(node.id) or node
        self._status(f"Executing {node.id}: {node.title}")
        self._log(
            "task.started",
            run_id,
            task_id=node.id,
            actor="executor",
            side_effect=node.side_effect,
            message=node.title,
        )

        context_pack = build_context_pack(self.paths, goal, self.config, graph)
        executor_raw = self._complete(
            build_executor_prompt(goal, node, context_pack, self.config, self.paths), "executor"
        )
        execution = parse_executor_output(executor_raw, node.id)
        dependency = execution.missing_dependency
        self._log(
            "task.executed",
            run_id,
            task_id=node.id,
            actor="executor",
            status=_EXECUTION_EVENT_STATUS[execution.status],
            side_effect=node.side_effect,
            message=execution.result_summary,
            data={
                "artifacts": execution.artifacts,
                "missing_dependency": dependency_to_dict(dependency) if dependency else None,
            },
        )

        if dependency is not None:
            handled = self._handle_missing_dependency(graph, node, dependency)
            if handled is not None:
                return handled

        return self._critique(graph, node, execution, context_pack)

    def _handle_missing_dependency(
        self, graph: TaskGraph, node: TaskNode, dependency: DependencyHint
    ) -> TaskGraph | None:
        if install_budget_exhausted(node, self.config):
            issue = (
                f"Dependency {dependency.name} still missing after "
                f"{node.install_attempts} install attempts."
            )
            self._log(
                "dependency.install",
                graph.run_id,
                task_id=node.id,
                actor="governor",
                status="error",
                side_effect="read",
                message=issue,
            )
            return self._save(update_node(graph, node.id, status="blocked", critic_issues=[issue]))

        self._status(f"Missing dependency for {node.id}: {dependency.name}")
        result = self.installer(self.paths, node, dependency)
        self._log(
            "dependency.install",
            graph.run_id,
            task_id=node.id,
            actor="governor",
            status=_INSTALL_EVENT_STATUS[result.status],
            side_effect="write_local",
            message=result.details,
            data={"dependency": dependency.name, "outcome": result.status},
        )
        if result.status == "failed":
            return None
        return self._save(apply_install_result(graph, node.id, result.status, result.details))

    def _critique(
        self,
        graph: TaskGraph,
        node: TaskNode,
        execution: ExecutorOutput,
        context_pack: ContextPack,
    ) -> TaskGraph:
        graph = self._save(begin_critique(graph))
        critic_raw = self._complete(
            build_critic_prompt(graph.goal, node, execution, context_pack), "critic"
        )
        critic = parse_critic_output(critic_raw, node.id)
        self._log(
            "task.criticized",
            graph.run_id,
            task_id=node.id,
            actor="critic",
            status=_VERDICT_EVENT_STATUS[critic.verdict],
            side_effect="read",
            message=critic.verdict,
            data={"issues": critic.issues, "suggested_fix": critic.suggested_fix},
        )

        graph, outcome = apply_verdict(graph, node.id, execution, critic, self.config)
        self._status(f"{node.id}: verdict={critic.verdict} -> {outcome}")
        if outcome != "replan":
            return self._save(graph)

        graph = self._save(graph)
        reason = "; ".join(critic.issues)
        replan_goal = f"{graph.goal}\nReplan reason for {node.id}: {reason}"
        replan_pack = build_context_pack(self.paths, graph.goal, self.config, graph)
        replan_raw = self._complete(
            build_planner_prompt(replan_goal, replan_pack, self.config), "planner"
        )
        plan = parse_planner_output(replan_raw, graph.goal, self.config)
        graph = merge_replan(
            graph,
            node.id,
            plan,
            preserve_unaffected_pending=self.config.policy.preserve_unaffected_pending,
        )
        self._log(
            "plan.replanned",
            graph.run_id,
            task_id=node.id,
            actor="planner",
            status="warning",
            side_effect="read",
            message=critic.suggested_fix or "Replanned after critic request.",
            data={
                "task_count": len(graph.nodes),
                "failed_task_id": node.id,
                "failed_task_issues": critic.issues,
                "replan_count": graph.replan_count,
            },
        )
        return self._save(graph)

    def _complete(self, prompt: str, role: str) -> str | None:
        try:
            return self.llm.generate(prompt).content
        except Exception as exc:  # noqa: BLE001
            self._status(f"{role} completion failed: {exc}")
            return None

    def _save(self, graph: TaskGraph) -> TaskGraph:
        return save_task_graph(self.paths.task_graph_path, graph)

    def _log(
        self,
        event: str,
        run_id: str | None,
        *,
        task_id: str | None = None,
        actor: Actor = "system",
        status: EventStatus = "ok",
        side_effect: SideEffect | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        append_ledger_event(
            self.paths.run_ledger_path,
            RunLedgerEvent(
                event=event,
                run_id=run_id,
                task_id=task_id,
                actor=actor,
                status=status,
                side_effect=side_effect,
                message=message,
                data=data,
            ),
        )

    def _status(self, message: str) -> None:
        if self.status_fn:
            self.status_fn(message)


def run_autonomous(
    goal: str,
    paths: Paths,
    llm: LLMClient,
    status_fn: Callable[[str], None] | None = None,
) -> AutonomousRunResult:
    """Run ``goal`` to a terminal state and return the summary with the final graph."""
    config = load_runtime_config(paths.runtime_config_path)
    return TaskRunner(paths, llm, config=config, status_fn=status_fn).run(goal)
