"""Task graph state transitions.

Every function here takes a :class:`TaskGraph` and returns a new one; none of
them touch the filesystem except :func:`load_task_graph` and
:func:`save_task_graph`, which the runner calls after each transition.
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Literal

from oka.config import AutonomousRuntimeConfig
from oka.models import (
    CriticOutput,
    ExecutorOutput,
    PlannerOutput,
    TaskGraph,
    TaskNode,
    graph_from_dict,
    graph_to_dict,
    utcnow_iso,
)

VerdictOutcome = Literal["done", "retry", "failed", "replan", "blocked"]
InstallStatus = Literal["installed", "failed", "escalated"]

REPLAN_BUDGET_EXHAUSTED = "Replan budget exhausted."
NOTHING_COMPLETED = "No executable tasks were completed."


def empty_graph() -> TaskGraph:
    now = utcnow_iso()
    return TaskGraph(run_id=None, goal="", status="done", created_at=now, updated_at=now)


def load_task_graph(path: Path) -> TaskGraph:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return empty_graph()
    if not isinstance(payload, dict) or not isinstance(payload.get("nodes"), list):
        return empty_graph()
    try:
        return graph_from_dict(payload)
    except (KeyError, TypeError, ValueError):
        return empty_graph()


def save_task_graph(path: Path, graph: TaskGraph) -> TaskGraph:
    stamped = replace(graph, updated_at=utcnow_iso())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(graph_to_dict(stamped), indent=2) + "\n", encoding="utf-8")
    return stamped


def start_run(run_id: str, goal: str) -> TaskGraph:
    now = utcnow_iso()
    return TaskGraph(run_id=run_id, goal=goal, status="planning", created_at=now, updated_at=now)


def nodes_from_plan(plan: PlannerOutput) -> list[TaskNode]:
    return [
        TaskNode(
            id=task.id,
            title=task.title,
            depends_on=list(task.depends_on),
            acceptance_criteria=list(task.acceptance_criteria),
            risk=task.risk,
            side_effect=task.side_effect,
        )
        for task in plan.tasks
    ]


def apply_plan(graph: TaskGraph, plan: PlannerOutput) -> TaskGraph:
    return replace(graph, summary=plan.summary, nodes=nodes_from_plan(plan), status="executing")


def next_runnable(graph: TaskGraph) -> TaskNode | None:
    """First pending node, in declaration order, whose dependencies are all done."""
    statuses = {node.id: node.status for node in graph.nodes}
    for node in graph.nodes:
        if node.status != "pending":
            continue
        if all(statuses.get(dep) == "done" for dep in node.depends_on):
            return node
    return None


def settle(graph: TaskGraph) -> TaskGraph:
    """Compute the terminal status once no node is runnable."""
    open_work = any(node.status in {"pending", "in_progress"} for node in graph.nodes)
    troubled = any(node.status in {"blocked", "failed"} for node in graph.nodes)
    status = "blocked" if open_work or troubled else "done"
    return replace(graph, status=status, current_task_id=None)


def force_blocked(graph: TaskGraph) -> TaskGraph:
    return replace(graph, status="blocked", current_task_id=None)


def update_node(graph: TaskGraph, task_id: str, **changes: Any) -> TaskGraph:
    nodes = [replace(node, **changes) if node.id == task_id else node for node in graph.nodes]
    return replace(graph, nodes=nodes)


def start_task(graph: TaskGraph, task_id: str) -> TaskGraph:
    graph = update_node(graph, task_id, status="in_progress")
    return replace(graph, status="executing", current_task_id=task_id)


def begin_critique(graph: TaskGraph) -> TaskGraph:
    return replace(graph, status="criticizing")


def install_budget_exhausted(node: TaskNode, config: AutonomousRuntimeConfig) -> bool:
    return node.install_attempts > config.retry_budget_per_node


def apply_install_result(
    graph: TaskGraph, task_id: str, status: InstallStatus, details: str
) -> TaskGraph:
    """Apply a dependency install outcome to the owning node.

    ``installed`` re-queues the node and counts the attempt in
    ``install_attempts`` rather than ``retries``, so installs never spend the
    critic retry budget. :func:`install_budget_exhausted` caps them instead.
    ``escalated`` blocks the node and ``failed`` leaves it in progress so the
    critic still judges the execution.
    """
    node = graph.node(task_id)
    if node is None:
        return graph
    if status == "installed":
        return update_node(
            graph,
            task_id,
            status="pending",
            install_attempts=node.install_attempts + 1,
            critic_issues=[],
        )
    if status == "escalated":
        return update_node(graph, task_id, status="blocked", critic_issues=[details])
    return graph


def apply_verdict(
    graph: TaskGraph,
    task_id: str,
    execution: ExecutorOutput,
    critic: CriticOutput,
    config: AutonomousRuntimeConfig,
) -> tuple[TaskGraph, VerdictOutcome]:
    node = graph.node(task_id)
    if node is None:
        return graph, "blocked"
    if critic.verdict == "pass" and execution.status == "done":
        updated = update_node(
            graph,
            task_id,
            status="done",
            result_summary=execution.result_summary,
            critic_issues=[],
        )
        return updated, "done"
    if critic.verdict == "retry":
        if node.retries < config.retry_budget_per_node:
            updated = update_node(
                graph,
                task_id,
                status="pending",
                retries=node.retries + 1,
                critic_issues=list(critic.issues),
            )
            return updated, "retry"
        updated = update_node(graph, task_id, status="failed", critic_issues=list(critic.issues))
        return updated, "failed"
    if critic.verdict == "replan":
        if graph.replan_count < config.replan_budget_per_run:
            updated = update_node(graph, task_id, critic_issues=list(critic.issues))
            return replace(updated, status="replanning", replan_count=graph.replan_count + 1), "replan"
        issues = list(critic.issues) or [REPLAN_BUDGET_EXHAUSTED]
        return update_node(graph, task_id, status="blocked", critic_issues=issues), "blocked"
    issues = list(critic.issues)
    if not issues and critic.verdict == "pass":
        issues = [f"Critic passed but executor reported status={execution.status}."]
    return update_node(graph, task_id, status="blocked", critic_issues=issues), "blocked"


def merge_replan(
    graph: TaskGraph,
    trigger_id: str,
    plan: PlannerOutput,
    preserve_unaffected_pending: bool = False,
) -> TaskGraph:
    """Fold a replacement plan into the graph.

    Done nodes are always kept untouched and every other node is replaced by
    the new plan. With ``preserve_unaffected_pending`` a pending node also
    survives when nothing it transitively depends on is being dropped, so an
    edge to an unfinished prerequisite is never lost.
    """
    kept = [node for node in graph.nodes if node.status == "done"]
    if preserve_unaffected_pending:
        dropped = {
            node.id
            for node in graph.nodes
            if node.id == trigger_id or node.status not in {"done", "pending"}
        }
        affected = dropped | _dependents(graph.nodes, dropped)
        kept = [
            node
            for node in graph.nodes
            if node.status == "done" or (node.status == "pending" and node.id not in affected)
        ]
    kept_ids = {node.id for node in kept}
    fresh = [node for node in nodes_from_plan(plan) if node.id not in kept_ids]
    nodes = _prune_edges(kept + fresh)
    return replace(
        graph,
        nodes=nodes,
        summary=plan.summary,
        status="executing",
        current_task_id=None,
    )


def _dependents(nodes: Iterable[TaskNode], roots: set[str]) -> set[str]:
    nodes = list(nodes)
    found: set[str] = set()
    frontier = set(roots)
    while frontier:
        layer = {
            node.id
            for node in nodes
            if node.id not in found and any(dep in frontier for dep in node.depends_on)
        }
        found |= layer
        frontier = layer
    return found


def _prune_edges(nodes: list[TaskNode]) -> list[TaskNode]:
    present = {node.id for node in nodes}
    edges: dict[str, list[str]] = {}
    pruned: list[TaskNode] = []
    for node in nodes:
        deps: list[str] = []
        for dep in node.depends_on:
            if dep not in present or dep == node.id or dep in deps:
                continue
            if reaches(edges, dep, node.id):
                continue
            deps.append(dep)
        edges[node.id] = deps
        pruned.append(node if deps == node.depends_on else replace(node, depends_on=deps))
    return pruned


def reaches(edges: dict[str, list[str]], start: str, target: str) -> bool:
    """Return True when ``target`` is reachable from ``start`` via depends_on edges."""
    stack = [start]
    visited: set[str] = set()
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(edges.get(current, []))
    return False


def summarize_graph(graph: TaskGraph) -> str:
    done = [node for node in graph.nodes if node.status == "done"]
    blocked = [node for node in graph.nodes if node.status == "blocked"]
    failed = [node for node in graph.nodes if node.status == "failed"]
    sections: list[str] = []
    if done:
        lines = [f"- {node.title}: {node.result_summary or 'completed'}" for node in done]
        sections.append("\n".join(["Completed:", *lines]))
    if blocked:
        lines = [f"- {node.title}: {_first_issue(node, 'blocked')}" for node in blocked]
        sections.append("\n".join(["Blocked:", *lines]))
    if failed:
        lines = [f"- {node.title}: {_first_issue(node, 'failed')}" for node in failed]
        sections.append("\n".join(["Failed:", *lines]))
    if not sections:
        return NOTHING_COMPLETED
    return "\n\n".join(sections)


def _first_issue(node: TaskNode, default: str) -> str:
    if node.critic_issues:
        return node.critic_issues[0]
    return default
