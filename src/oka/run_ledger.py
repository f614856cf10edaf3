from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from oka.models import RunLedgerEvent, utcnow_iso


def append_ledger_event(ledger_path: Path, event: RunLedgerEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"ts": event.ts or utcnow_iso(), "event": event.event}
    if event.run_id is not None:
        payload["run_id"] = event.run_id
    if event.task_id is not None:
        payload["task_id"] = event.task_id
    payload["actor"] = event.actor
    payload["status"] = event.status
    if event.side_effect is not None:
        payload["side_effect"] = event.side_effect
    if event.message is not None:
        payload["message"] = event.message
    if event.data is not None:
        payload["data"] = event.data
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    with ledger_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload) + "\n")
    return payload


def read_ledger_lines(ledger_path: Path) -> list[str]:
    if not ledger_path.exists():
        return []
    lines = ledger_path.read_text(encoding="utf-8", errors="replace").splitlines()
    return [line.strip() for line in lines if line.strip()]


def read_recent_events(ledger_path: Path, limit: int = 50) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for line in read_ledger_lines(ledger_path)[-limit:]:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            entries.append(payload)
    return entries


def events_for_run(ledger_path: Path, run_id: str) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for line in read_ledger_lines(ledger_path):
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and payload.get("run_id") == run_id:
            entries.append(payload)
    return entries
