from __future__ import annotations

import re
from pathlib import Path

from oka.config import AutonomousRuntimeConfig, Paths
from oka.models import ContextPack, TaskGraph
from oka.run_ledger import read_ledger_lines
from oka.task_graph import load_task_graph

MAX_ACTIVE_GOALS = 6
MAX_OPEN_BLOCKERS = 5
MAX_GOAL_KEYWORDS = 12
MIN_KEYWORD_LENGTH = 4

_OPEN_TODO = re.compile(r"^[-*]\s+\[\s\]\s+")
_PROCEDURE_HEADING = re.compile(r"^##\s+")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


def build_context_pack(
    paths: Paths,
    goal: str,
    config: AutonomousRuntimeConfig,
    graph: TaskGraph | None = None,
) -> ContextPack:
    """Assemble the bounded memory slice shown to a planner/executor/critic call.

    Reads the checklist, learnings, procedures and ledger stores without
    writing anything. Blockers come from ``graph`` when given, otherwise from
    the persisted snapshot, so the model sees the freshest blocked nodes.
    """
    limits = config.context_pack
    current = graph if graph is not None else load_task_graph(paths.task_graph_path)
    return ContextPack(
        active_goals=active_goals(_read_lines(paths.todos_path)),
        relevant_facts=relevant_facts(
            _read_lines(paths.learnings_path), limits.max_relevant_facts
        ),
        related_episodes=related_episodes(
            read_ledger_lines(paths.run_ledger_path), goal, limits.max_related_episodes
        ),
        applicable_procedures=applicable_procedures(
            _read_lines(paths.procedures_path), limits.max_procedures
        ),
        open_blockers=open_blockers(current),
    )


def active_goals(lines: list[str]) -> list[str]:
    goals = [_OPEN_TODO.sub("", line).strip() for line in lines if _OPEN_TODO.match(line)]
    return [goal for goal in goals if goal][:MAX_ACTIVE_GOALS]


def relevant_facts(lines: list[str], limit: int) -> list[str]:
    return [line for line in lines if line.startswith("- ")][:limit]


def applicable_procedures(lines: list[str], limit: int) -> list[str]:
    titles = [
        _PROCEDURE_HEADING.sub("", line).strip()
        for line in lines
        if _PROCEDURE_HEADING.match(line)
    ]
    return titles[:limit]


def open_blockers(graph: TaskGraph) -> list[str]:
    blocked = [f"{node.id}: {node.title}" for node in graph.nodes if node.status == "blocked"]
    return blocked[:MAX_OPEN_BLOCKERS]


def goal_keywords(goal: str) -> list[str]:
    words = [word for word in _WORD_SPLIT.split(goal.lower()) if len(word) >= MIN_KEYWORD_LENGTH]
    return words[:MAX_GOAL_KEYWORDS]


def score_episode(line: str, keywords: list[str]) -> int:
    lowered = line.lower()
    return sum(1 for keyword in keywords if keyword in lowered)


def related_episodes(ledger_lines: list[str], goal: str, limit: int) -> list[str]:
    keywords = goal_keywords(goal)
    if not keywords:
        return []
    scored = [(score_episode(line, keywords), line) for line in ledger_lines]
    # sorted() is stable, so equal scores keep ledger order.
    ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: -item[0])
    return [line for _, line in ranked[:limit]]


def _read_lines(path: Path) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return []
    return [line.strip() for line in content.splitlines() if line.strip()]
