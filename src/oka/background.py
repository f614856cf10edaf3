from __future__ import annotations

import json
import re
import threading
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from oka.config import Paths
from oka.locks import WorkerLease
from oka.models import (
    BackgroundTask,
    EventStatus,
    RunLedgerEvent,
    background_task_from_dict,
    background_task_to_dict,
    utcnow_iso,
)
from oka.run_ledger import append_ledger_event
from oka.task_runner import AutonomousRunResult

RunFn = Callable[[str], AutonomousRunResult]
NotifyFn = Callable[[str, str], None]

CLAIMABLE_STATUSES = frozenset({"pending", "failed"})
LONG_REQUEST_CHARS = 280

_EXPLICIT_BACKGROUND = re.compile(
    r"\b(in the background|background task|async(hronously)?|when you (get|have) (a )?(chance|time)"
    r"|no rush|take your time|report back)\b",
    re.IGNORECASE,
)
_STEP_MARKERS = re.compile(
    r"(^\s*(\d+[.)]|[-*])\s+)|\b(and then|after that|afterwards|finally|step \d+)\b",
    re.IGNORECASE | re.MULTILINE,
)
_HEAVY_VERBS = re.compile(
    r"\b(research|investigate|build|implement|set up|setup|install|deploy|migrate|refactor"
    r"|compile|scrape|benchmark|analy[sz]e)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RouteDecision:
    background: bool
    reason: str


def route_request(text: str) -> RouteDecision:
    """Decide whether a request runs inline or goes to the background queue."""
    stripped = text.strip()
    if not stripped:
        return RouteDecision(background=False, reason="empty_request")
    if _EXPLICIT_BACKGROUND.search(stripped):
        return RouteDecision(background=True, reason="explicit_background_request")
    if len(_STEP_MARKERS.findall(stripped)) >= 2:
        return RouteDecision(background=True, reason="multi_step_request")
    if len(stripped) > LONG_REQUEST_CHARS:
        return RouteDecision(background=True, reason="long_request")
    if len(_HEAVY_VERBS.findall(stripped)) >= 2:
        return RouteDecision(background=True, reason="multi_step_request")
    return RouteDecision(background=False, reason="short_request")


def load_background_tasks(path: Path) -> list[BackgroundTask]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return []
    if not isinstance(payload, list):
        return []
    tasks: list[BackgroundTask] = []
    for entry in payload:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        try:
            tasks.append(background_task_from_dict(entry))
        except (TypeError, ValueError):
            continue
    return tasks


def save_background_tasks(path: Path, tasks: list[BackgroundTask]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [background_task_to_dict(task) for task in tasks]
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def enqueue_background_task(
    paths: Paths,
    request_text: str,
    chat_id: str,
    route_reason: str | None = None,
    max_attempts: int = 2,
) -> BackgroundTask:
    now = utcnow_iso()
    task = BackgroundTask(
        id=str(uuid.uuid4()),
        status="pending",
        request_text=request_text,
        chat_id=chat_id,
        created_at=now,
        updated_at=now,
        max_attempts=max(1, max_attempts),
        route_reason=route_reason,
    )
    tasks = load_background_tasks(paths.background_tasks_path)
    tasks.append(task)
    save_background_tasks(paths.background_tasks_path, tasks)
    _log(paths, "background.enqueued", task, message=route_reason)
    return task


def next_claimable(tasks: list[BackgroundTask]) -> BackgroundTask | None:
    for task in tasks:
        if task.status in CLAIMABLE_STATUSES and task.attempts < task.max_attempts:
            return task
    return None


def _log(
    paths: Paths,
    event: str,
    task: BackgroundTask,
    *,
    status: EventStatus = "ok",
    message: str | None = None,
) -> None:
    append_ledger_event(
        paths.run_ledger_path,
        RunLedgerEvent(
            event=event,
            actor="system",
            status=status,
            run_id=task.run_id,
            side_effect="write_local",
            message=message,
            data={
                "background_task_id": task.id,
                "chat_id": task.chat_id,
                "attempts": task.attempts,
                "max_attempts": task.max_attempts,
            },
        ),
    )


class BackgroundWorker:
    """Drains the background queue one task per tick.

    Overlapping ticks in this process are dropped; ticks from other processes
    sharing the workspace are kept out by the on-disk lease.
    """

    def __init__(
        self,
        paths: Paths,
        run_fn: RunFn,
        notify: NotifyFn | None = None,
        status_fn: Callable[[str], None] | None = None,
        lease_stale_after_s: float | None = 3600.0,
    ) -> None:
        self.paths = paths
        self.run_fn = run_fn
        self.notify = notify
        self.status_fn = status_fn
        self.lease_stale_after_s = lease_stale_after_s
        self._processing = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._processing.locked()

    def tick(self) -> BackgroundTask | None:
        if not self._processing.acquire(blocking=False):
            self._status("Background worker busy; skipping tick.")
            return None
        try:
            lease = WorkerLease(self.paths.worker_lock_path, stale_after_s=self.lease_stale_after_s)
            if not lease.acquire():
                self._status("Background lease held by another worker; skipping tick.")
                return None
            with lease:
                self._recover_interrupted()
                return self._process_next()
        finally:
            self._processing.release()

    def _process_next(self) -> BackgroundTask | None:
        task = next_claimable(load_background_tasks(self.paths.background_tasks_path))
        if task is None:
            return None
        claimed = replace(
            task, status="running", attempts=task.attempts + 1, updated_at=utcnow_iso()
        )
        self._store(claimed)
        _log(self.paths, "background.started", claimed, message=claimed.request_text[:500])
        self._status(f"Background task {claimed.id}: attempt {claimed.attempts}/{claimed.max_attempts}")

        try:
            result = self.run_fn(claimed.request_text)
        except Exception as exc:  # noqa: BLE001
            return self._fail(claimed, str(exc) or exc.__class__.__name__)

        done = replace(
            claimed,
            status="done",
            last_error=None,
            result_summary=result.response,
            run_id=result.graph.run_id,
            updated_at=utcnow_iso(),
        )
        self._store(done)
        _log(self.paths, "background.completed", done, message=f"Run ended {result.graph.status}")
        self._deliver(done.chat_id, result.response)
        return done

    def _fail(self, task: BackgroundTask, error: str) -> BackgroundTask:
        failed = replace(task, status="failed", last_error=error, updated_at=utcnow_iso())
        self._store(failed)
        _log(self.paths, "background.failed", failed, status="error", message=error)
        self._status(f"Background task {failed.id} failed: {error}")
        if failed.attempts >= failed.max_attempts:
            self._deliver(
                failed.chat_id,
                f"Background task failed after {failed.attempts} attempts: {error}",
            )
        return failed

    def _recover_interrupted(self) -> None:
        # Holding the lease means nobody else is running these.
        for task in load_background_tasks(self.paths.background_tasks_path):
            if task.status == "running":
                self._fail(task, "Worker stopped before the task finished.")

    def _store(self, task: BackgroundTask) -> None:
        tasks = load_background_tasks(self.paths.background_tasks_path)
        updated = [task if existing.id == task.id else existing for existing in tasks]
        if not any(existing.id == task.id for existing in tasks):
            updated.append(task)
        save_background_tasks(self.paths.background_tasks_path, updated)

    def _deliver(self, chat_id: str, text: str) -> None:
        if not self.notify:
            return
        try:
            self.notify(chat_id, text)
        except Exception as exc:  # noqa: BLE001
            self._status(f"Notification to {chat_id} failed: {exc}")

    def _status(self, message: str) -> None:
        if self.status_fn:
            self.status_fn(message)
