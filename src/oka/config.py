from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal


@dataclass(frozen=True)
class Paths:
    base_dir: Path

    @property
    def workspace_dir(self) -> Path:
        return self.base_dir

    @property
    def memory_dir(self) -> Path:
        return self.base_dir / "memory"

    @property
    def brain_dir(self) -> Path:
        return self.base_dir / "brain"

    @property
    def tools_bin_dir(self) -> Path:
        return self.base_dir / "tools" / "bin"

    @property
    def tools_python_dir(self) -> Path:
        return self.base_dir / "tools" / "python"

    @property
    def tools_node_dir(self) -> Path:
        return self.base_dir / "tools" / "node"

    @property
    def run_ledger_path(self) -> Path:
        return self.base_dir / "run_ledger.jsonl"

    @property
    def task_graph_path(self) -> Path:
        return self.base_dir / "active_task_graph.json"

    @property
    def background_tasks_path(self) -> Path:
        return self.base_dir / "background_tasks.json"

    @property
    def worker_lock_path(self) -> Path:
        return self.base_dir / "background_worker.lock"

    @property
    def runtime_config_path(self) -> Path:
        return self.base_dir / "autonomous.config.json"

    @property
    def install_requirements_path(self) -> Path:
        return self.base_dir / "INSTALL_REQUIREMENTS.md"

    @property
    def todos_path(self) -> Path:
        return self.brain_dir / "TODOS.md"

    @property
    def learnings_path(self) -> Path:
        return self.brain_dir / "LEARNINGS.md"

    @property
    def procedures_path(self) -> Path:
        return self.brain_dir / "PROCEDURES.md"

    @property
    def procedure_scores_path(self) -> Path:
        return self.brain_dir / "PROCEDURE_SCORES.json"

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"


@dataclass(frozen=True)
class ContextPackLimits:
    max_relevant_facts: int = 6
    max_related_episodes: int = 8
    max_procedures: int = 3


@dataclass(frozen=True)
class PolicyConfig:
    allow_external_mutation: bool = False
    preserve_unaffected_pending: bool = False


@dataclass(frozen=True)
class AutonomousRuntimeConfig:
    version: str = "3"
    max_tasks_per_plan: int = 5
    retry_budget_per_node: int = 1
    replan_budget_per_run: int = 1
    context_pack: ContextPackLimits = field(default_factory=ContextPackLimits)
    policy: PolicyConfig = field(default_factory=PolicyConfig)


LLMProvider = Literal["openai", "ollama"]


@dataclass(frozen=True)
class LLMSettings:
    provider: LLMProvider
    model: str
    base_url: str
    api_key: str | None = None


@dataclass(frozen=True)
class WorkerSettings:
    tick_seconds: float = 15.0
    max_attempts: int = 2
    lease_stale_after_s: float = 3600.0
    maintenance_interval_s: float = 6 * 3600.0


@dataclass(frozen=True)
class AppConfig:
    llm: LLMSettings
    worker: WorkerSettings = field(default_factory=WorkerSettings)


def load_paths(base_dir: Path | None = None) -> Paths:
    if base_dir is not None:
        return Paths(base_dir=base_dir)
    env_dir = os.environ.get("OKA_WORKSPACE_DIR")
    resolved = Path(env_dir).expanduser() if env_dir else (Path.home() / ".oka")
    return Paths(base_dir=resolved)


def load_runtime_config(path: Path) -> AutonomousRuntimeConfig:
    """Load ``autonomous.config.json`` as partial overrides over the defaults.

    A missing or unreadable file yields the defaults unchanged.
    """
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return AutonomousRuntimeConfig()
    if not isinstance(payload, dict):
        return AutonomousRuntimeConfig()
    defaults = AutonomousRuntimeConfig()
    context_raw = payload.get("context_pack")
    context = context_raw if isinstance(context_raw, dict) else {}
    policy_raw = payload.get("policy")
    policy = policy_raw if isinstance(policy_raw, dict) else {}
    try:
        return AutonomousRuntimeConfig(
            version=str(payload.get("version", defaults.version)),
            max_tasks_per_plan=_positive_int(
                payload.get("max_tasks_per_plan"), defaults.max_tasks_per_plan
            ),
            retry_budget_per_node=_non_negative_int(
                payload.get("retry_budget_per_node"), defaults.retry_budget_per_node
            ),
            replan_budget_per_run=_non_negative_int(
                payload.get("replan_budget_per_run"), defaults.replan_budget_per_run
            ),
            context_pack=ContextPackLimits(
                max_relevant_facts=_non_negative_int(
                    context.get("max_relevant_facts"),
                    defaults.context_pack.max_relevant_facts,
                ),
                max_related_episodes=_non_negative_int(
                    context.get("max_related_episodes"),
                    defaults.context_pack.max_related_episodes,
                ),
                max_procedures=_non_negative_int(
                    context.get("max_procedures"), defaults.context_pack.max_procedures
                ),
            ),
            policy=PolicyConfig(
                allow_external_mutation=_flag(
                    policy.get("allow_external_mutation"),
                    defaults.policy.allow_external_mutation,
                ),
                preserve_unaffected_pending=_flag(
                    policy.get("preserve_unaffected_pending"),
                    defaults.policy.preserve_unaffected_pending,
                ),
            ),
        )
    except (TypeError, ValueError):
        return AutonomousRuntimeConfig()


def runtime_config_to_dict(config: AutonomousRuntimeConfig) -> dict[str, Any]:
    return {
        "version": config.version,
        "max_tasks_per_plan": config.max_tasks_per_plan,
        "retry_budget_per_node": config.retry_budget_per_node,
        "replan_budget_per_run": config.replan_budget_per_run,
        "context_pack": {
            "max_relevant_facts": config.context_pack.max_relevant_facts,
            "max_related_episodes": config.context_pack.max_related_episodes,
            "max_procedures": config.context_pack.max_procedures,
        },
        "policy": {
            "allow_external_mutation": config.policy.allow_external_mutation,
            "preserve_unaffected_pending": config.policy.preserve_unaffected_pending,
        },
    }


def load_config(path: Path) -> AppConfig:
    payload = json.loads(path.read_text())
    llm = payload.get("llm", {})
    worker = payload.get("worker", {})
    return AppConfig(
        llm=LLMSettings(
            provider=llm["provider"],
            model=llm["model"],
            base_url=llm["base_url"],
            api_key=llm.get("api_key"),
        ),
        worker=WorkerSettings(
            tick_seconds=float(worker.get("tick_seconds", 15.0)),
            max_attempts=int(worker.get("max_attempts", 2)),
            lease_stale_after_s=float(worker.get("lease_stale_after_s", 3600.0)),
            maintenance_interval_s=float(worker.get("maintenance_interval_s", 6 * 3600.0)),
        ),
    )


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "llm": {
            "provider": config.llm.provider,
            "model": config.llm.model,
            "base_url": config.llm.base_url,
            "api_key": config.llm.api_key,
        },
        "worker": {
            "tick_seconds": config.worker.tick_seconds,
            "max_attempts": config.worker.max_attempts,
            "lease_stale_after_s": config.worker.lease_stale_after_s,
            "maintenance_interval_s": config.worker.maintenance_interval_s,
        },
    }
    path.write_text(json.dumps(payload, indent=2))


def build_workspace_path_env(paths: Paths, base_path: str | None = None) -> str:
    """Prefix PATH with the workspace-local tool directories."""
    base = os.environ.get("PATH", "") if base_path is None else base_path
    entries = [
        str(paths.tools_bin_dir),
        str(paths.tools_python_dir / "bin"),
        str(paths.tools_node_dir / "bin"),
        base,
    ]
    return os.pathsep.join(entry for entry in entries if entry)


def _positive_int(value: Any, default: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return parsed if parsed > 0 else default


def _non_negative_int(value: Any, default: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return parsed if parsed >= 0 else default


def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default
