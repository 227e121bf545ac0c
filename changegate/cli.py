"""
changegate CLI — The Interface

  changegate run "<request>"     (plan, generate, gate, review, apply)
  changegate plan "<request>"    (dry run: planner + architect only)
  changegate doctor              (config + LLM connectivity + JSON check)
  changegate init [path]         (bootstrap .changegate in a project)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax
from rich.table import Table

from changegate import __codename__, __version__
from changegate.config_loader import PROJECT_CONFIG_DIR, ConfigError, load_config
from changegate.controller import Controller, PipelineResult, PlanningError, TaskResult
from changegate.event_bus import EventBus, PipelineEvent
from changegate.router import LLMError, Router, extract_json
from changegate.staging import (
    StagedChange,
    apply_changes,
    format_changes_summary,
    generate_diffs,
    stage_changes,
)
from changegate.tools.toolkit import ToolKit

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".changegate" / ".env")

app = typer.Typer(
    name="changegate",
    help=f"{__codename__} — plan, generate and review code changes, with consent for every new dependency.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    request: str = typer.Argument(..., help="What you want changed, in plain words"),
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to the target project"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply passing changes without prompting"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Reject new dependencies without asking"),
    auto_install: bool = typer.Option(False, "--auto-install", help="Install approved dependencies"),
):
    """Run the full pipeline on a request."""
    _configure_logging(verbose)

    project = _resolve_project(project)
    config = _load(project)
    if yes:
        config.pipeline.apply_changes_automatically = True
    if non_interactive:
        config.consent.non_interactive = True
    if auto_install:
        config.pipeline.auto_install = True

    bus = EventBus()
    bus.subscribe(_render_event)
    controller = Controller(project, config, bus=bus)

    console.print(f"[bold]Running:[/] {escape(request)}")
    try:
        result = asyncio.run(controller.run(request))
    except PlanningError as e:
        console.print(f"\n[red]Pipeline failed: {e}[/]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        raise typer.Exit(130)
    finally:
        controller.consent.cleanup()

    _print_results(result)
    usage = controller.router.usage.summary()
    console.print(
        f"[dim]LLM: {usage['call_count']} calls, {usage['total_tokens']} tokens, ~${usage['estimated_cost']}[/]"
    )

    for task_result in result.results:
        if task_result.changes:
            _stage_and_apply(
                task_result,
                controller.toolkit,
                config.pipeline.apply_changes_automatically,
                interactive=not config.consent.non_interactive,
            )

    if not result.success:
        raise typer.Exit(1)


@app.command()
def plan(
    request: str = typer.Argument(..., help="What you want changed, in plain words"),
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to the target project"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Dry run — show the task breakdown and file plans without generating code."""
    _configure_logging(verbose)

    project = _resolve_project(project)
    controller = Controller(project, _load(project))

    try:
        preview = asyncio.run(controller.plan(request))
    except PlanningError as e:
        console.print(f"\n[red]{e}[/]")
        raise typer.Exit(1)

    table = Table(title="Task Breakdown", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Task")
    table.add_column("Depends on", style="dim")
    table.add_column("Files", style="dim")
    for task in preview.tasks:
        table.add_row(
            task.id,
            f"[bold]{task.title}[/]\n{task.description}",
            ", ".join(task.depends_on),
            ", ".join(task.estimated_files),
        )
    console.print(table)

    for task in preview.tasks:
        if task.id in preview.errors:
            console.print(f"[red]Architect failed for {task.id}: {preview.errors[task.id]}[/]")
            continue
        file_plan = preview.plans[task.id]
        marks = {"create": "[green]+[/]", "modify": "[yellow]~[/]", "delete": "[red]-[/]"}
        lines = [f"[dim]{file_plan.reasoning}[/]", ""]
        for op in file_plan.files:
            lines.append(f"{marks[op.operation]} {op.path}")
            lines.append(f"    {op.description}")
        console.print(Panel("\n".join(lines), title=escape(f"[{task.id}] {task.title}"), border_style="cyan"))

    console.print("\n[dim]Dry run complete. Use [bold]changegate run[/] to execute this plan.[/]")


class _StatusProbe(BaseModel):
    status: str


@app.command()
def doctor(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Path to the target project"),
):
    """Check configuration, LLM connectivity and structured output."""
    console.print(f"[bold]{__codename__} doctor[/]\n")

    config = _load(project.resolve())
    info = Table(title="Configuration", border_style="cyan")
    info.add_column("Setting")
    info.add_column("Value")
    info.add_row("LLM base URL", str(config.llm.base_url))
    for role in Router.ROLES:
        info.add_row(f"Model ({role})", config.model_for(role))
    info.add_row("Max tokens", str(config.llm.max_tokens))
    info.add_row("Import validation", "on" if config.pipeline.enable_import_validation else "off")
    info.add_row("Auto install", "on" if config.pipeline.auto_install else "off")
    info.add_row("Non-interactive", "yes" if config.consent.non_interactive else "no")
    console.print(info)

    router = Router(config)
    console.print("\nChecking LLM connectivity...")
    try:
        reply = asyncio.run(router.generate("planner", [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": 'Say "hello" and nothing else.'},
        ]))
    except LLMError as e:
        console.print(f"[red]✗ LLM connection failed: {e.message}[/]")
        if e.kind == "connection":
            console.print(f"  Make sure your LLM server is running at: {config.llm.base_url}")
            console.print("  [dim]Check LLM_BASE_URL and the port number.[/]")
        raise typer.Exit(1)
    console.print(f'[green]✓ LLM connection successful[/] [dim]({reply.latency_ms}ms) "{reply.content.strip()}"[/]')

    console.print("\nChecking structured output...")
    try:
        probe = asyncio.run(router.generate("planner", [
            {"role": "system", "content": 'Respond ONLY with valid JSON: {"status": "ok"}'},
            {"role": "user", "content": "Test"},
        ]))
    except LLMError as e:
        console.print(f"[red]✗ JSON test failed: {e.message}[/]")
        raise typer.Exit(1)

    try:
        parsed = _StatusProbe.model_validate(extract_json(probe.content))
    except ValueError:
        console.print(f'[yellow]⚠ LLM did not return valid JSON: "{probe.content.strip()[:200]}"[/]')
        console.print("  [dim]Agents retry with error feedback, but expect slower runs.[/]")
    else:
        if parsed.status == "ok":
            console.print("[green]✓ Structured output working[/]")
        else:
            console.print(f"[yellow]⚠ Structured output returned unexpected status: {parsed.status}[/]")

    console.print("\n[green]✅ All checks passed.[/]")


@app.command()
def init(
    project: Optional[Path] = typer.Argument(None, help="Path to the project"),
):
    """Initialize .changegate directory in a project."""
    project = (project or Path.cwd()).resolve()
    cg_dir = project / PROJECT_CONFIG_DIR
    cg_dir.mkdir(exist_ok=True)

    config_path = cg_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# changegate project-level config overrides
# These merge with the built-in defaults.

# Point at a different model server or model:
# llm:
#   base_url: "http://localhost:8000/v1"
#   model: "openai/qwen3-coder:30b"

# Use a stronger model for review only:
# routing:
#   reviewer: "anthropic/claude-sonnet-4-20250514"

# Adjust retry limits:
# limits:
#   max_review_retries: 2
#   max_import_retries: 1

# Install approved dependencies automatically:
# pipeline:
#   auto_install: true
""")

    consent_file = load_config(project).consent.filename
    gitignore = project / ".gitignore"
    ignore_entries = [consent_file]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# changegate\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# changegate\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized changegate in {cg_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Consent: {project / consent_file} (git-ignored)")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _render_event(event: PipelineEvent) -> None:
    payload = event.payload
    if event.event_type == "task_started":
        console.print(f"\n[bold cyan]▶ {event.task_id}[/] {payload.get('title', '')}")
    elif event.event_type == "phase_changed":
        console.print(f"  [dim]· {payload['phase']}[/]")
    elif event.event_type == "import_retry":
        console.print(f"  [yellow]↻ regenerating without: {', '.join(payload.get('packages', []))}[/]")
    elif event.event_type == "install_failed":
        console.print(f"  [yellow]✗ install failed ({payload.get('kind')}), changes rolled back[/]")
    elif event.event_type == "review_failed":
        console.print(f"  [yellow]↻ review found {len(payload.get('issues', []))} issue(s), retrying[/]")
    elif event.event_type == "task_finished":
        color = "green" if payload.get("status") == "passed" else "red"
        console.print(f"  [{color}]■ {payload.get('status')}[/]")


def _issue_counts(result: TaskResult) -> str:
    parts = []
    for severity, label in (("error", "errors"), ("warning", "warnings"), ("suggestion", "suggestions")):
        n = sum(1 for i in result.review_issues if i.severity == severity)
        if n:
            parts.append(f"{n} {label}")
    return ", ".join(parts) or "-"


def _print_results(result: PipelineResult) -> None:
    table = Table(title="Results", border_style="cyan")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Review")
    table.add_column("Packages", style="dim")

    for r in result.results:
        status = "[green]✓ passed[/]" if r.status == "passed" else "[red]✗ failed[/]"
        packages = ", ".join(
            [f"+{p}" for p in r.installed_packages] + [f"{p} (not installed)" for p in r.accepted_packages]
        )
        table.add_row(f"{r.task.id}: {r.task.title}", status, str(r.attempts), _issue_counts(r), packages)
    console.print(table)

    if result.errors:
        console.print("\n[red]Errors:[/]")
        for error in result.errors:
            console.print(f"  - {error}")

    for r in result.results:
        if r.review_errors:
            console.print(f"\n[yellow]{r.task.id} review errors:[/]")
            for error in r.review_errors:
                console.print(f"  - {escape(error)}", highlight=False)
        if r.accepted_packages:
            console.print(
                f"\n[yellow]{r.task.id} uses packages that are approved but not installed: "
                f"{', '.join(r.accepted_packages)}[/]"
            )


def _print_issues(result: TaskResult) -> None:
    for issue in result.review_issues:
        console.print(f"  \\[{issue.severity}] {escape(issue.file)}: {escape(issue.description)}", highlight=False)
        if issue.suggested_fix:
            console.print(f"    [dim]Fix: {escape(issue.suggested_fix)}[/]", highlight=False)


def _apply(staged: list[StagedChange], toolkit: ToolKit) -> None:
    report = apply_changes(staged, toolkit)
    for path, error in report.failed.items():
        console.print(f"[red]  ✗ {path}: {error}[/]")
    if report.ok:
        console.print("[green]Changes applied.[/]")
    else:
        console.print(f"[yellow]Applied {len(report.applied)} of {len(staged)} changes.[/]")


def _stage_and_apply(result: TaskResult, toolkit: ToolKit, automatic: bool, interactive: bool = True) -> None:
    staged = stage_changes(result.changes, toolkit)
    title = escape(f"{result.task.id}: {result.task.title}")
    console.print(Panel(format_changes_summary(staged), title=title, border_style="cyan"))

    if not result.review_passed:
        console.print("[yellow]Review did not pass.[/]")
        _print_issues(result)

    if automatic and result.review_passed:
        _apply(staged, toolkit)
        return

    if not interactive:
        console.print("[dim]Changes discarded.[/]")
        return

    answer = Prompt.ask("Apply changes? \\[y/N/diff]", console=console, default="n", show_default=False)
    answer = answer.strip().lower()
    if answer in ("diff", "d"):
        console.print(Syntax(generate_diffs(staged), "diff", theme="ansi_dark", word_wrap=True))
        answer = Prompt.ask("Apply changes? \\[y/N]", console=console, default="n", show_default=False)
        answer = answer.strip().lower()

    if answer in ("y", "yes"):
        _apply(staged, toolkit)
    else:
        console.print("[dim]Changes discarded.[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_project(project: Path) -> Path:
    project = project.resolve()
    if not project.is_dir():
        console.print(f"[red]Project not found: {project}[/]")
        raise typer.Exit(1)
    return project


def _load(project: Path):
    try:
        return load_config(project)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/]")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg.rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg.rstrip(), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
