from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

NodeStatus = Literal["pending", "in_progress", "done", "blocked", "failed"]
GraphStatus = Literal["planning", "executing", "criticizing", "replanning", "blocked", "done"]
Risk = Literal["low", "medium", "high"]
SideEffect = Literal["read", "write_local", "external_mutation"]
ExecutorStatus = Literal["done", "blocked", "failed"]
Verdict = Literal["pass", "retry", "replan", "block"]
BackgroundStatus = Literal["pending", "running", "done", "failed"]
Actor = Literal["planner", "executor", "critic", "governor", "system"]
EventStatus = Literal["ok", "warning", "error"]

NODE_STATUSES = frozenset({"pending", "in_progress", "done", "blocked", "failed"})
GRAPH_STATUSES = frozenset({"planning", "executing", "criticizing", "replanning", "blocked", "done"})
RISKS = frozenset({"low", "medium", "high"})
SIDE_EFFECTS = frozenset({"read", "write_local", "external_mutation"})
EXECUTOR_STATUSES = frozenset({"done", "blocked", "failed"})
VERDICTS = frozenset({"pass", "retry", "replan", "block"})
BACKGROUND_STATUSES = frozenset({"pending", "running", "done", "failed"})

GRAPH_VERSION = "v3"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def choice(value: Any, allowed: frozenset[str], default: str) -> Any:
    """Return ``value`` when it is one of ``allowed``, else ``default``."""
    if isinstance(value, str) and value in allowed:
        return value
    return default



@dataclass(frozen=True)
class TaskNode:
    id: str
    title: str
    status: NodeStatus = "pending"
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    retries: int = 0
    risk: Risk = "low"
    side_effect: SideEffect = "read"
    result_summary: str | None = None
    critic_issues: list[str] | None = None
    install_attempts: int = 0


@dataclass(frozen=True)
class TaskGraph:
    run_id: str | None
    goal: str
    status: GraphStatus
    created_at: str
    updated_at: str
    summary: str = ""
    nodes: list[TaskNode] = field(default_factory=list)
    current_task_id: str | None = None
    replan_count: int = 0
    version: str = GRAPH_VERSION

    def node(self, task_id: str) -> TaskNode | None:
        for node in self.nodes:
            if node.id == task_id:
                return node
        return None


@dataclass(frozen=True)
class ContextPack:
    active_goals: list[str]
    relevant_facts: list[str]
    related_episodes: list[str]
    applicable_procedures: list[str]
    open_blockers: list[str]


@dataclass(frozen=True)
class PlannerTask:
    id: str
    title: str
    depends_on: list[str]
    acceptance_criteria: list[str]
    risk: Risk
    side_effect: SideEffect


@dataclass(frozen=True)
class PlannerOutput:
    summary: str
    tasks: list[PlannerTask]


@dataclass(frozen=True)
class DependencyHint:
    name: str
    install_command: str | None = None
    requires_root: bool = False
    evidence: str | None = None


@dataclass(frozen=True)
class ExecutorOutput:
    task_id: str
    status: ExecutorStatus
    result_summary: str
    artifacts: list[str]
    needs_replan: bool = False
    missing_dependency: DependencyHint | None = None


@dataclass(frozen=True)
class CriticOutput:
    task_id: str
    verdict: Verdict
    issues: list[str]
    suggested_fix: str


@dataclass(frozen=True)
class BackgroundTask:
    id: str
    status: BackgroundStatus
    request_text: str
    chat_id: str
    created_at: str
    updated_at: str
    attempts: int = 0
    max_attempts: int = 2
    last_error: str | None = None
    route_reason: str | None = None
    result_summary: str | None = None
    run_id: str | None = None


@dataclass(frozen=True)
class RunLedgerEvent:
    event: str
    actor: Actor = "system"
    status: EventStatus = "ok"
    run_id: str | None = None
    task_id: str | None = None
    side_effect: SideEffect | None = None
    message: str | None = None
    data: dict[str, Any] | None = None
    ts: str | None = None


def node_to_dict(node: TaskNode) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": node.id,
        "title": node.title,
        "status": node.status,
        "depends_on": list(node.depends_on),
        "acceptance_criteria": list(node.acceptance_criteria),
        "retries": node.retries,
        "risk": node.risk,
        "side_effect": node.side_effect,
        "install_attempts": node.install_attempts,
    }
    if node.result_summary is not None:
        payload["result_summary"] = node.result_summary
    if node.critic_issues is not None:
        payload["critic_issues"] = list(node.critic_issues)
    return payload


def node_from_dict(payload: dict[str, Any]) -> TaskNode:
    status = payload.get("status")
    risk = payload.get("risk")
    side_effect = payload.get("side_effect")
    issues = payload.get("critic_issues")
    return TaskNode(
        id=str(payload["id"]),
        title=str(payload.get("title", "")),
        status=choice(status, NODE_STATUSES, "pending"),
        depends_on=[str(dep) for dep in payload.get("depends_on") or []],
        acceptance_criteria=[str(item) for item in payload.get("acceptance_criteria") or []],
        retries=int(payload.get("retries", 0)),
        risk=choice(risk, RISKS, "low"),
        side_effect=choice(side_effect, SIDE_EFFECTS, "read"),
        result_summary=payload.get("result_summary"),
        critic_issues=[str(item) for item in issues] if isinstance(issues, list) else None,
        install_attempts=int(payload.get("install_attempts", 0)),
    )


def graph_to_dict(graph: TaskGraph) -> dict[str, Any]:
    return {
        "version": graph.version,
        "run_id": graph.run_id,
        "goal": graph.goal,
        "status": graph.status,
        "summary": graph.summary,
        "nodes": [node_to_dict(node) for node in graph.nodes],
        "current_task_id": graph.current_task_id,
        "replan_count": graph.replan_count,
        "created_at": graph.created_at,
        "updated_at": graph.updated_at,
    }


def graph_from_dict(payload: dict[str, Any]) -> TaskGraph:
    status = payload.get("status")
    return TaskGraph(
        version=str(payload.get("version", GRAPH_VERSION)),
        run_id=payload.get("run_id"),
        goal=str(payload.get("goal", "")),
        status=choice(status, GRAPH_STATUSES, "done"),
        summary=str(payload.get("summary", "")),
        nodes=[node_from_dict(item) for item in payload.get("nodes", []) if isinstance(item, dict)],
        current_task_id=payload.get("current_task_id"),
        replan_count=int(payload.get("replan_count", 0)),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
    )


def context_pack_to_dict(pack: ContextPack) -> dict[str, list[str]]:
    return {
        "active_goals": list(pack.active_goals),
        "relevant_facts": list(pack.relevant_facts),
        "related_episodes": list(pack.related_episodes),
        "applicable_procedures": list(pack.applicable_procedures),
        "open_blockers": list(pack.open_blockers),
    }


def executor_to_dict(output: ExecutorOutput) -> dict[str, Any]:
    dependency = output.missing_dependency
    return {
        "task_id": output.task_id,
        "status": output.status,
        "result_summary": output.result_summary,
        "artifacts": list(output.artifacts),
        "needs_replan": output.needs_replan,
        "missing_dependency": dependency_to_dict(dependency) if dependency else None,
    }


def dependency_to_dict(hint: DependencyHint) -> dict[str, Any]:
    return {
        "name": hint.name,
        "install_command": hint.install_command,
        "requires_root": hint.requires_root,
        "evidence": hint.evidence,
    }


def background_task_to_dict(task: BackgroundTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "status": task.status,
        "request_text": task.request_text,
        "chat_id": task.chat_id,
        "attempts": task.attempts,
        "max_attempts": task.max_attempts,
        "last_error": task.last_error,
        "route_reason": task.route_reason,
        "result_summary": task.result_summary,
        "run_id": task.run_id,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def background_task_from_dict(payload: dict[str, Any]) -> BackgroundTask:
    status = payload.get("status")
    return BackgroundTask(
        id=str(payload["id"]),
        status=choice(status, BACKGROUND_STATUSES, "pending"),
        request_text=str(payload.get("request_text", "")),
        chat_id=str(payload.get("chat_id", "")),
        attempts=int(payload.get("attempts", 0)),
        max_attempts=int(payload.get("max_attempts", 2)),
        last_error=payload.get("last_error"),
        route_reason=payload.get("route_reason"),
        result_summary=payload.get("result_summary"),
        run_id=payload.get("run_id"),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
    )
