from __future__ import annotations

import json
import re
from typing import Any

from oka.config import AutonomousRuntimeConfig, Paths
from oka.models import (
    EXECUTOR_STATUSES,
    RISKS,
    SIDE_EFFECTS,
    VERDICTS,
    ContextPack,
    CriticOutput,
    DependencyHint,
    ExecutorOutput,
    PlannerOutput,
    PlannerTask,
    TaskNode,
    choice,
    context_pack_to_dict,
    executor_to_dict,
    node_to_dict,
)
from oka.task_graph import reaches

FALLBACK_TASK_ID = "task-1"
TASK_ID_PREFIX = "task-"
MAX_DEPENDENCIES = 6
MAX_ACCEPTANCE_CRITERIA = 6
MAX_ARTIFACTS = 8
MAX_ISSUES = 8

NO_DEPENDENCY_SENTINELS = frozenset(
    {
        "none",
        "no",
        "n/a",
        "na",
        "null",
        "nil",
        "false",
        "not_applicable",
        "not-applicable",
        "no_dependency",
        "no-dependency",
        "no missing dependency",
    }
)

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """Parse a JSON object from model output.

    Falls back to the span between the first ``{`` and the last ``}`` so that
    fenced or chatty replies still parse. Anything that is not an object
    yields ``None``.
    """
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return payload
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        payload = json.loads(text[first : last + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def sanitize_task_id(raw: str, index: int) -> str:
    normalized = _NON_SLUG.sub("-", raw.strip().lower()).strip("-")
    if not normalized:
        return f"{TASK_ID_PREFIX}{index + 1}"
    if not normalized.startswith(TASK_ID_PREFIX):
        return f"{TASK_ID_PREFIX}{normalized}"
    return normalized


def clamp_strings(values: Any, max_items: int) -> list[str]:
    if not isinstance(values, list):
        return []
    cleaned = [value.strip() for value in values if isinstance(value, str)]
    return [value for value in cleaned if value][:max_items]


def normalize_dependency_name(name: Any) -> str | None:
    if not isinstance(name, str):
        return None
    trimmed = name.strip()
    if not trimmed:
        return None
    if trimmed.lower() in NO_DEPENDENCY_SENTINELS:
        return None
    return trimmed


def fallback_plan(goal: str, summary: str) -> PlannerOutput:
    return PlannerOutput(
        summary=summary,
        tasks=[
            PlannerTask(
                id=FALLBACK_TASK_ID,
                title=goal,
                depends_on=[],
                acceptance_criteria=["Provide a concrete answer to the user request."],
                risk="low",
                side_effect="read",
            )
        ],
    )


def validate_planner_output(
    raw: dict[str, Any] | None, goal: str, config: AutonomousRuntimeConfig
) -> PlannerOutput:
    if not isinstance(raw, dict):
        return fallback_plan(goal, "Fallback single-task plan due to invalid planner output.")

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raw_tasks = []

    seen_ids: set[str] = set()
    alias: dict[str, str] = {}
    drafts: list[tuple[PlannerTask, list[str]]] = []
    for index, entry in enumerate(raw_tasks):
        if not isinstance(entry, dict):
            continue
        raw_id = entry.get("id")
        raw_id = raw_id.strip() if isinstance(raw_id, str) else f"{TASK_ID_PREFIX}{index + 1}"
        task_id = sanitize_task_id(raw_id, index)
        if task_id in seen_ids:
            continue
        seen_ids.add(task_id)
        title = entry.get("title")
        title = title.strip() if isinstance(title, str) else ""
        if not title:
            continue
        alias.setdefault(raw_id, task_id)
        alias[task_id] = task_id
        risk = entry.get("risk")
        side_effect = entry.get("side_effect")
        drafts.append(
            (
                PlannerTask(
                    id=task_id,
                    title=title,
                    depends_on=[],
                    acceptance_criteria=clamp_strings(
                        entry.get("acceptance_criteria"), MAX_ACCEPTANCE_CRITERIA
                    ),
                    risk=choice(risk, RISKS, "low"),
                    side_effect=choice(side_effect, SIDE_EFFECTS, "read"),
                ),
                clamp_strings(entry.get("depends_on"), MAX_DEPENDENCIES),
            )
        )

    drafts = drafts[: config.max_tasks_per_plan]
    if not drafts:
        return fallback_plan(
            goal, "Fallback single-task plan because planner returned no valid tasks."
        )

    retained = {task.id for task, _ in drafts}
    edges: dict[str, list[str]] = {}
    for task, raw_deps in drafts:
        resolved: list[str] = []
        for dep in raw_deps:
            dep_id = alias.get(dep) or alias.get(sanitize_task_id(dep, 0))
            if not dep_id or dep_id not in retained or dep_id == task.id or dep_id in resolved:
                continue
            if reaches(edges, dep_id, task.id):
                continue
            resolved.append(dep_id)
        edges[task.id] = resolved

    tasks = [
        PlannerTask(
            id=task.id,
            title=task.title,
            depends_on=edges[task.id],
            acceptance_criteria=task.acceptance_criteria,
            risk=task.risk,
            side_effect=task.side_effect,
        )
        for task, _ in drafts
    ]
    summary = raw.get("summary")
    summary = summary.strip() if isinstance(summary, str) and summary.strip() else ""
    return PlannerOutput(summary=summary or "Task plan generated.", tasks=tasks)


def validate_executor_output(raw: dict[str, Any] | None, task_id: str) -> ExecutorOutput:
    if not isinstance(raw, dict):
        return ExecutorOutput(
            task_id=task_id,
            status="failed",
            result_summary="Executor response was invalid JSON.",
            artifacts=[],
        )
    status = raw.get("status")
    summary = raw.get("result_summary")
    return ExecutorOutput(
        task_id=_reported_task_id(raw, task_id),
        status=choice(status, EXECUTOR_STATUSES, "failed"),
        result_summary=summary.strip()
        if isinstance(summary, str) and summary.strip()
        else "Executor finished without summary.",
        artifacts=clamp_strings(raw.get("artifacts"), MAX_ARTIFACTS),
        needs_replan=bool(raw.get("needs_replan")),
        missing_dependency=_dependency_hint(raw.get("missing_dependency")),
    )


def _dependency_hint(raw: Any) -> DependencyHint | None:
    if not isinstance(raw, dict):
        return None
    name = normalize_dependency_name(raw.get("name"))
    if name is None:
        return None
    command = raw.get("install_command")
    evidence = raw.get("evidence")
    return DependencyHint(
        name=name,
        install_command=command.strip() if isinstance(command, str) and command.strip() else None,
        requires_root=bool(raw.get("requires_root")),
        evidence=evidence.strip() if isinstance(evidence, str) and evidence.strip() else None,
    )


def validate_critic_output(raw: dict[str, Any] | None, task_id: str) -> CriticOutput:
    if not isinstance(raw, dict):
        return CriticOutput(
            task_id=task_id,
            verdict="retry",
            issues=["Critic response was invalid JSON."],
            suggested_fix="Return strict JSON with a verdict.",
        )
    verdict = raw.get("verdict")
    suggested_fix = raw.get("suggested_fix")
    return CriticOutput(
        task_id=_reported_task_id(raw, task_id),
        verdict=choice(verdict, VERDICTS, "retry"),
        issues=clamp_strings(raw.get("issues"), MAX_ISSUES),
        suggested_fix=suggested_fix.strip() if isinstance(suggested_fix, str) else "",
    )


def _reported_task_id(raw: dict[str, Any], default: str) -> str:
    value = raw.get("task_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def parse_planner_output(
    text: str | None, goal: str, config: AutonomousRuntimeConfig
) -> PlannerOutput:
    return validate_planner_output(parse_json_object(text), goal, config)


def parse_executor_output(text: str | None, task_id: str) -> ExecutorOutput:
    return validate_executor_output(parse_json_object(text), task_id)


def parse_critic_output(text: str | None, task_id: str) -> CriticOutput:
    return validate_critic_output(parse_json_object(text), task_id)


def build_planner_prompt(
    goal: str, context_pack: ContextPack, config: AutonomousRuntimeConfig
) -> str:
    return "\n".join(
        [
            "Role: Planner.",
            "Create a small dependency-aware task graph for the goal.",
            "Output strict JSON only. No markdown, no prose.",
            f"Hard limits: max {config.max_tasks_per_plan} tasks.",
            "Schema:",
            "{",
            '  "summary": "string",',
            '  "tasks": [',
            "    {",
            '      "id": "task-id",',
            '      "title": "string",',
            '      "depends_on": ["task-id"],',
            '      "acceptance_criteria": ["string"],',
            '      "risk": "low|medium|high",',
            '      "side_effect": "read|write_local|external_mutation"',
            "    }",
            "  ]",
            "}",
            f"Goal: {goal}",
            f"ContextPack: {json.dumps(context_pack_to_dict(context_pack), indent=2)}",
        ]
    )


def build_executor_prompt(
    goal: str,
    task: TaskNode,
    context_pack: ContextPack,
    config: AutonomousRuntimeConfig,
    paths: Paths,
) -> str:
    allow = "true" if config.policy.allow_external_mutation else "false"
    return "\n".join(
        [
            "Role: Executor.",
            "Execute only the given task and return strict JSON only.",
            "You can write local files inside workspace paths when needed.",
            "If a dependency is missing, return missing_dependency object with install_command.",
            "If no dependency is missing, set missing_dependency to null.",
            "User-space install targets:",
            f"- {paths.tools_bin_dir}",
            f"- {paths.tools_python_dir}",
            f"- {paths.tools_node_dir}",
            "Schema:",
            "{",
            f'  "task_id": "{task.id}",',
            '  "status": "done|blocked|failed",',
            '  "result_summary": "string",',
            '  "artifacts": ["path"],',
            '  "needs_replan": false,',
            '  "missing_dependency": null | {',
            '    "name": "string",',
            '    "install_command": "string",',
            '    "requires_root": false,',
            '    "evidence": "string"',
            "  }",
            "}",
            f"Policy allow_external_mutation={allow}",
            f"Goal: {goal}",
            f"Task: {json.dumps(node_to_dict(task), indent=2)}",
            f"ContextPack: {json.dumps(context_pack_to_dict(context_pack), indent=2)}",
        ]
    )


def build_critic_prompt(
    goal: str, task: TaskNode, execution: ExecutorOutput, context_pack: ContextPack
) -> str:
    return "\n".join(
        [
            "Role: Critic.",
            "Validate executor output against acceptance criteria and safety constraints.",
            "Return strict JSON only.",
            "Schema:",
            "{",
            f'  "task_id": "{task.id}",',
            '  "verdict": "pass|retry|replan|block",',
            '  "issues": ["string"],',
            '  "suggested_fix": "string"',
            "}",
            f"Goal: {goal}",
            f"Task: {json.dumps(node_to_dict(task), indent=2)}",
            f"Execution: {json.dumps(executor_to_dict(execution), indent=2)}",
            f"ContextPack: {json.dumps(context_pack_to_dict(context_pack), indent=2)}",
        ]
    )
