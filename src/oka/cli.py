from __future__ import annotations

import json
import subprocess
from collections import Counter
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from oka.background import (
    BackgroundWorker,
    enqueue_background_task,
    load_background_tasks,
    route_request,
)
from oka.config import (
    AppConfig,
    LLMSettings,
    Paths,
    WorkerSettings,
    load_config,
    load_paths,
    load_runtime_config,
    runtime_config_to_dict,
    save_config,
)
from oka.llm import CompletionError, LLMClient, build_llm_client
from oka.maintenance import run_maintenance_cycle, should_enable_maintenance_loop
from oka.run_ledger import events_for_run, read_recent_events
from oka.scheduler import Scheduler
from oka.task_graph import load_task_graph
from oka.task_runner import AutonomousRunResult, run_autonomous

app = typer.Typer(help="oka autonomous task runner")

_STATUS_STYLE = {
    "done": "green",
    "blocked": "yellow",
    "failed": "red",
    "in_progress": "cyan",
    "pending": "dim",
}


def _load_or_raise_config(paths: Paths) -> AppConfig:
    if not paths.config_path.exists():
        typer.echo("Config not found. Run `oka setup` to configure the LLM.")
        raise typer.Exit(code=1)
    return load_config(paths.config_path)


def _build_llm(settings: LLMSettings) -> LLMClient:
    try:
        return build_llm_client(settings)
    except CompletionError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _list_ollama_models() -> list[str]:
    try:
        result = subprocess.run(["ollama", "list"], check=True, capture_output=True, text=True)
    except (FileNotFoundError, subprocess.CalledProcessError):
        return []
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if lines and "name" in lines[0].lower():
        lines = lines[1:]
    return [line.split()[0] for line in lines]


def _prompt_ollama_model(default: str) -> str:
    models = _list_ollama_models()
    if not models:
        return typer.prompt("LLM model", default=default)
    typer.echo("Available Ollama models:")
    for idx, name in enumerate(models, start=1):
        typer.echo(f"  {idx}. {name}")
    choice = typer.prompt("LLM model (name or number)", default=default)
    if choice.isdigit() and 1 <= int(choice) <= len(models):
        return models[int(choice) - 1]
    return choice


@app.command()
def run(goal: str = typer.Argument(..., help="Goal to plan and execute.")) -> None:
    """Plan and execute a goal until it is done or blocked."""
    paths = load_paths()
    config = _load_or_raise_config(paths)
    llm = _build_llm(config.llm)
    console = Console()

    with console.status("[bold yellow]Working...[/bold yellow]") as spinner:

        def _status(message: str) -> None:
            spinner.update(f"[bold yellow]{escape(message)}[/bold yellow]")
            console.print(f"[dim]{escape(message)}[/dim]")

        result = run_autonomous(goal, paths, llm, status_fn=_status)

    style = "green" if result.graph.status == "done" else "yellow"
    console.print(f"[bold {style}]Run {result.graph.status}[/bold {style}]")
    console.print(escape(result.response))


@app.command()
def enqueue(
    text: str = typer.Argument(..., help="Request to run in the background."),
    chat_id: str = typer.Option("cli", "--chat-id", help="Requester identity for replies."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1),
) -> None:
    """Queue a request for the background worker."""
    paths = load_paths()
    decision = route_request(text)
    attempts = max_attempts
    if attempts is None:
        attempts = (
            load_config(paths.config_path).worker.max_attempts
            if paths.config_path.exists()
            else WorkerSettings().max_attempts
        )
    task = enqueue_background_task(
        paths, text, chat_id, route_reason=decision.reason, max_attempts=attempts
    )
    if not decision.background:
        typer.echo(f"Note: this request looks small enough to run inline ({decision.reason}).")
    typer.echo(f"Queued background task {task.id}")


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Process at most one task and exit."),
) -> None:
    """Drain the background queue, optionally running maintenance on a timer."""
    paths = load_paths()
    config = _load_or_raise_config(paths)
    llm = _build_llm(config.llm)
    console = Console()

    def _status(message: str) -> None:
        console.print(f"[dim]{escape(message)}[/dim]")

    def _run(goal: str) -> AutonomousRunResult:
        return run_autonomous(goal, paths, llm, status_fn=_status)

    def _notify(chat_id: str, text: str) -> None:
        console.print(f"[bold cyan]→ {escape(chat_id)}[/bold cyan]: {escape(text)}")

    background = BackgroundWorker(
        paths,
        run_fn=_run,
        notify=_notify,
        status_fn=_status,
        lease_stale_after_s=config.worker.lease_stale_after_s,
    )
    if once:
        task = background.tick()
        if task is None:
            typer.echo("No background task processed.")
        return

    scheduler = Scheduler(status_fn=_status)
    scheduler.add_job("background", config.worker.tick_seconds, background.tick)
    if should_enable_maintenance_loop():
        scheduler.add_job(
            "maintenance",
            config.worker.maintenance_interval_s,
            lambda: run_maintenance_cycle(paths),
        )
    console.print("[dim]oka worker started (Ctrl+C to stop)[/dim]")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        console.print("[dim]oka worker stopped[/dim]")


@app.command()
def maintain(
    retention_days: Optional[int] = typer.Option(None, "--retention-days", min=1),
) -> None:
    """Archive old memory notes and rescore procedures."""
    paths = load_paths()
    report = run_maintenance_cycle(paths, retention_days=retention_days)
    typer.echo(
        f"Archived {report.archived_memory_files} memory files; "
        f"scored {report.procedures_scored} procedures into {report.procedure_scores_file}"
    )


@app.command()
def status() -> None:
    """Show the active task graph and the background queue."""
    paths = load_paths()
    console = Console()
    graph = load_task_graph(paths.task_graph_path)
    if graph.run_id is None:
        console.print("[dim]No active run.[/dim]")
    else:
        console.print(f"[bold]Run {graph.run_id}[/bold] ({graph.status})")
        console.print(escape(graph.goal))
        table = Table("id", "title", "status", "retries", "depends on")
        for node in graph.nodes:
            style = _STATUS_STYLE.get(node.status, "")
            table.add_row(
                node.id,
                escape(node.title),
                f"[{style}]{node.status}[/{style}]" if style else node.status,
                str(node.retries),
                ", ".join(node.depends_on),
            )
        console.print(table)

    tasks = load_background_tasks(paths.background_tasks_path)
    counts = Counter(task.status for task in tasks)
    summary = ", ".join(f"{name}={counts[name]}" for name in ("pending", "running", "done", "failed"))
    console.print(f"Background queue: {summary}")


@app.command()
def ledger(
    limit: int = typer.Option(20, "--limit", min=1),
    run_id: Optional[str] = typer.Option(None, "--run-id"),
) -> None:
    """Print recent run ledger events as JSON lines."""
    paths = load_paths()
    if run_id:
        events = events_for_run(paths.run_ledger_path, run_id)[-limit:]
    else:
        events = read_recent_events(paths.run_ledger_path, limit=limit)
    for event in events:
        typer.echo(json.dumps(event))


@app.command()
def setup() -> None:
    """Configure the LLM and write default runtime limits."""
    paths = load_paths()
    typer.echo(f"Setting up oka in {paths.workspace_dir}")
    provider = typer.prompt("LLM provider (openai/ollama)", default="ollama")
    if provider not in {"openai", "ollama"}:
        typer.echo("Provider must be 'openai' or 'ollama'.")
        raise typer.Exit(code=1)
    if provider == "openai":
        model = typer.prompt("LLM model", default="gpt-4o-mini")
    else:
        model = _prompt_ollama_model(default="llama3")
    base_url = typer.prompt(
        "LLM base URL",
        default="https://api.openai.com/v1" if provider == "openai" else "http://localhost:11434",
    )
    api_key = typer.prompt("OpenAI API key", hide_input=True) if provider == "openai" else None

    config = AppConfig(
        llm=LLMSettings(provider=provider, model=model, base_url=base_url, api_key=api_key)
    )
    save_config(paths.config_path, config)
    typer.echo(f"Config saved to {paths.config_path}")

    if not paths.runtime_config_path.exists():
        runtime = load_runtime_config(paths.runtime_config_path)
        paths.runtime_config_path.write_text(
            json.dumps(runtime_config_to_dict(runtime), indent=2) + "\n", encoding="utf-8"
        )
        typer.echo(f"Runtime limits written to {paths.runtime_config_path}")
    for directory in (paths.brain_dir, paths.memory_dir, paths.tools_bin_dir):
        directory.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    app()
