from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from oka.config import Paths
from oka.models import RunLedgerEvent
from oka.run_ledger import append_ledger_event

DEFAULT_RETENTION_DAYS = 30
MIN_RETENTION_DAYS = 7
DATED_MEMORY_FILE = re.compile(r"^\d{4}-\d{2}-\d{2}\.md$")
_SECTION_SPLIT = re.compile(r"^##\s+", re.MULTILINE)
_SUCCESS_LINE = re.compile(r"success count:", re.IGNORECASE)
_VALIDATED_LINE = re.compile(r"last validated:", re.IGNORECASE)
_FIRST_NUMBER = re.compile(r"(\d+)")


@dataclass(frozen=True)
class ProcedureScore:
    title: str
    score: int
    success_count: int
    has_validation: bool


@dataclass(frozen=True)
class MaintenanceReport:
    archived_memory_files: int
    procedures_scored: int
    procedure_scores_file: Path


def retention_days_from_env() -> int:
    raw = os.environ.get("AUTONOMOUS_MEMORY_RETENTION_DAYS", "")
    try:
        days = int(raw)
    except ValueError:
        days = 0
    return max(MIN_RETENTION_DAYS, days or DEFAULT_RETENTION_DAYS)


def should_enable_maintenance_loop() -> bool:
    return os.environ.get("AUTONOMOUS_MAINTENANCE_LOOP", "false").strip().lower() == "true"


def parse_procedure_scores(markdown: str) -> list[ProcedureScore]:
    """Score every ``## `` section: two points per success, one if ever validated."""
    scores: list[ProcedureScore] = []
    for section in _SECTION_SPLIT.split(markdown)[1:]:
        lines = section.split("\n")
        title = lines[0].strip() or "Unnamed Procedure"
        success_line = next((line for line in lines if _SUCCESS_LINE.search(line)), "")
        match = _FIRST_NUMBER.search(success_line)
        success_count = int(match.group(1)) if match else 0
        has_validation = any(_VALIDATED_LINE.search(line) for line in lines)
        scores.append(
            ProcedureScore(
                title=title,
                score=success_count * 2 + (1 if has_validation else 0),
                success_count=success_count,
                has_validation=has_validation,
            )
        )
    return scores


def procedure_score_to_dict(score: ProcedureScore) -> dict[str, Any]:
    return {
        "title": score.title,
        "score": score.score,
        "success_count": score.success_count,
        "has_validation": score.has_validation,
    }


def archive_old_memory(paths: Paths, retention_days: int, now: float | None = None) -> int:
    """Move dated memory notes older than the window into ``memory/archive``."""
    archive_dir = paths.memory_dir / "archive"
    archive_dir.mkdir(parents=True, exist_ok=True)
    current = time.time() if now is None else now
    max_age_s = retention_days * 24 * 60 * 60
    try:
        entries = sorted(paths.memory_dir.iterdir())
    except OSError:
        return 0
    archived = 0
    for source in entries:
        if not DATED_MEMORY_FILE.match(source.name) or not source.is_file():
            continue
        try:
            mtime = source.stat().st_mtime
        except OSError:
            continue
        if current - mtime <= max_age_s:
            continue
        try:
            source.rename(archive_dir / source.name)
        except OSError:
            continue
        archived += 1
    return archived


def run_maintenance_cycle(paths: Paths, retention_days: int | None = None) -> MaintenanceReport:
    days = retention_days if retention_days is not None else retention_days_from_env()
    days = max(MIN_RETENTION_DAYS, days)
    archived = archive_old_memory(paths, days)
    try:
        markdown = paths.procedures_path.read_text(encoding="utf-8")
    except OSError:
        markdown = ""
    scores = parse_procedure_scores(markdown)
    scores_path = paths.procedure_scores_path
    scores_path.parent.mkdir(parents=True, exist_ok=True)
    scores_path.write_text(
        json.dumps([procedure_score_to_dict(score) for score in scores], indent=2) + "\n",
        encoding="utf-8",
    )
    append_ledger_event(
        paths.run_ledger_path,
        RunLedgerEvent(
            event="maintenance.completed",
            actor="system",
            status="ok",
            side_effect="write_local",
            message="Maintenance cycle completed.",
            data={
                "archived_memory_files": archived,
                "procedure_scores_file": str(scores_path),
                "procedures_scored": len(scores),
            },
        ),
    )
    return MaintenanceReport(
        archived_memory_files=archived,
        procedures_scored=len(scores),
        procedure_scores_file=scores_path,
    )
