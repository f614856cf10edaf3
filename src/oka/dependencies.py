from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from typing import Literal

from oka.config import Paths, build_workspace_path_env
from oka.models import DependencyHint, TaskNode, utcnow_iso

InstallOutcome = Literal["installed", "failed", "escalated"]

PRIVILEGED_INSTALL = re.compile(
    r"\b(sudo|apt(-get)?|yum|dnf|pacman|apk|brew|choco|winget)\b", re.IGNORECASE
)
OUTPUT_TAIL_CHARS = 4000


@dataclass(frozen=True)
class DependencyInstallResult:
    status: InstallOutcome
    details: str


def requires_privileged_install(command: str) -> bool:
    return bool(PRIVILEGED_INSTALL.search(command))


def build_install_env(paths: Paths) -> dict[str, str]:
    """Environment that points user-space package managers at workspace prefixes."""
    env = dict(os.environ)
    env["PATH"] = build_workspace_path_env(paths)
    env["PIP_PREFIX"] = str(paths.tools_python_dir)
    env["PYTHONUSERBASE"] = str(paths.tools_python_dir)
    env["npm_config_prefix"] = str(paths.tools_node_dir)
    return env


def format_install_requirement(task: TaskNode, dependency: DependencyHint, opened_at: str) -> str:
    if dependency.install_command:
        snippet = f"# Suggested\n# {dependency.install_command}"
    else:
        snippet = "# Suggested\n# Add required OS package to your image."
    evidence = (dependency.evidence or "missing dependency").replace("\n", " ")
    return "\n".join(
        [
            "",
            f"### Dependency: {dependency.name or 'unknown'}",
            "- status: open",
            f"- blocking_task: {task.id} ({task.title})",
            f"- failure_evidence: {evidence}",
            "- suggested_dockerfile_snippet:",
            "```dockerfile",
            snippet,
            "```",
            f"- opened_at: {opened_at}",
            "- resolved_at:",
            "",
        ]
    )


def append_install_requirement(paths: Paths, task: TaskNode, dependency: DependencyHint) -> None:
    path = paths.install_requirements_path
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(format_install_requirement(task, dependency, utcnow_iso()))


def attempt_user_space_install(
    paths: Paths, task: TaskNode, dependency: DependencyHint
) -> DependencyInstallResult:
    """Install a missing tool into the workspace, or escalate it for a human.

    Commands that need root (flagged by the executor or matching a system
    package manager) are never run; they become an open entry in
    INSTALL_REQUIREMENTS.md instead.
    """
    command = dependency.install_command or ""
    if not command or dependency.requires_root or requires_privileged_install(command):
        append_install_requirement(paths, task, dependency)
        return DependencyInstallResult(
            status="escalated",
            details=f"Escalated {dependency.name} to {paths.install_requirements_path}",
        )

    paths.workspace_dir.mkdir(parents=True, exist_ok=True)
    try:
        completed = subprocess.run(
            ["sh", "-lc", command],
            cwd=paths.workspace_dir,
            env=build_install_env(paths),
            capture_output=True,
            text=True,
        )
    except Exception as exc:  # noqa: BLE001
        return DependencyInstallResult(
            status="failed", details=f"Install failed ({dependency.name}): {exc}"
        )
    if completed.returncode == 0:
        return DependencyInstallResult(
            status="installed",
            details=f"{dependency.name} installed with command: {command}",
        )
    output = completed.stderr or completed.stdout or f"exit {completed.returncode}"
    return DependencyInstallResult(
        status="failed",
        details=f"Install failed ({dependency.name}): {output[-OUTPUT_TAIL_CHARS:]}",
    )
