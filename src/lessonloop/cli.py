"""lessonloop command line."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from lessonloop.config import Settings, load_settings
from lessonloop.errors import RequestValidationError, StoreUnavailableError
from lessonloop.logging_utils import configure_logging
from lessonloop.pipeline import Pipeline
from lessonloop.store import CONTENT_FILE, PREFERENCES_FILE, JSONLContentSink, JSONPreferenceStore
from lessonloop.types import LessonContext, TeachingRequest, TeachingResult

app = typer.Typer(name="lessonloop", help="Evaluation-gated teaching content pipeline", add_completion=False)


def _settings(home: Path | None) -> Settings:
    if home is None:
        return load_settings()
    return load_settings(home=home)


def _store(settings: Settings) -> JSONPreferenceStore:
    return JSONPreferenceStore(settings.home / PREFERENCES_FILE)


def _build_pipeline(settings: Settings) -> Pipeline:
    pipeline = Pipeline(
        store=_store(settings),
        sink=JSONLContentSink(settings.home / CONTENT_FILE),
        settings=settings,
    )
    return pipeline.register_default_workers()


def _error(console: Console, message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")


def _render_result(console: Console, result: TeachingResult) -> None:
    evaluation = result.evaluation
    status = "[green]passed[/green]" if evaluation.passed else "[yellow]below threshold[/yellow]"
    summary = Table(show_header=False, box=None, padding=(0, 1))
    summary.add_row("Format", str(result.recommended_format))
    summary.add_row("Worker", result.worker)
    summary.add_row("Attempts", str(result.attempts_used))
    summary.add_row("Score", f"{evaluation.total_score:g}/100 ({status}, {evaluation.source})")
    summary.add_row("Preferences changed", "yes" if result.preference_changed else "no")
    if result.is_stuck:
        summary.add_row("Student stuck", "yes")
    console.print(summary)

    breakdown = Table(title="Rubric")
    breakdown.add_column("Criterion")
    breakdown.add_column("Weight", justify="right")
    breakdown.add_column("Score", justify="right")
    for item in evaluation.breakdown:
        breakdown.add_row(item.criterion, str(item.weight), f"{item.score:g}")
    console.print(breakdown)

    console.print(
        Panel(Text(result.candidate.render_text()), title=f"{result.candidate.format} (attempt {result.candidate.attempt})")
    )
    if evaluation.improvements and not evaluation.passed:
        console.print("[bold]Improvements:[/bold]")
        for item in evaluation.improvements:
            console.print(f"- {escape(item)}")


def teach(
    message: str = typer.Argument(..., help="What the student asks"),
    user: str = typer.Option("local", "--user", "-u", help="User id"),
    title: str | None = typer.Option(None, "--title", help="Lesson title"),
    topic: str | None = typer.Option(None, "--topic", help="Lesson topic"),
    description: str | None = typer.Option(None, "--description", help="Lesson description"),
    home: Path | None = typer.Option(None, "--home", help="Data directory"),  # noqa: B008
) -> None:
    """Run one teaching cycle and print the accepted content."""

    console = Console()
    settings = _settings(home)
    configure_logging(profile="cli", level=settings.log_level)
    lesson = None
    if title or topic or description:
        lesson = LessonContext(title=title or "", topic=topic or "", description=description or "")
    request = TeachingRequest(user_id=user, message=message, lesson=lesson)
    try:
        result = _build_pipeline(settings).run(request)
    except (RequestValidationError, StoreUnavailableError) as exc:
        _error(console, str(exc))
        raise typer.Exit(code=1) from exc
    _render_result(console, result)


def prefs(
    user: str = typer.Option("local", "--user", "-u", help="User id"),
    home: Path | None = typer.Option(None, "--home", help="Data directory"),  # noqa: B008
) -> None:
    """Show the stored preferences of one user."""

    console = Console()
    settings = _settings(home)
    try:
        snapshot = asyncio.run(_store(settings).get(user))
    except StoreUnavailableError as exc:
        _error(console, str(exc))
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Preferences of {user}")
    table.add_column("Field")
    table.add_column("Value")
    for name, value in snapshot.to_payload().items():
        table.add_row(name, str(value))
    console.print(table)


def workers(
    home: Path | None = typer.Option(None, "--home", help="Data directory"),  # noqa: B008
) -> None:
    """List registered workers and their status."""

    console = Console()
    pipeline = _build_pipeline(_settings(home))
    table = Table(title="Workers")
    table.add_column("Name")
    table.add_column("Busy")
    table.add_column("Queue", justify="right")
    for status in pipeline.worker_statuses():
        table.add_row(status.name, "yes" if status.busy else "no", str(status.queue_depth))
    console.print(table)


def config(
    home: Path | None = typer.Option(None, "--home", help="Data directory"),  # noqa: B008
) -> None:
    """Show the effective configuration a teaching cycle would run with."""

    console = Console()
    settings = _settings(home)
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_row("model", settings.model or "(offline echo)")
    table.add_row("api_key", "set" if settings.api_key else "(none)")
    table.add_row("pass_threshold", f"{settings.pass_threshold:g}")
    table.add_row("max_attempts", str(settings.max_attempts))
    timeout = settings.worker_timeout_seconds
    table.add_row("worker_timeout_seconds", "(none)" if timeout is None else f"{timeout:g}")
    table.add_row("rubric", ", ".join(f"{name}={weight}" for name, weight in settings.rubric_weights.items()))
    table.add_row("format_precedence", ", ".join(str(fmt) for fmt in settings.format_precedence))
    substitutions = ", ".join(f"{source}->{target}" for source, target in settings.format_substitutions.items())
    table.add_row("format_substitutions", substitutions or "(none)")
    table.add_row("home", str(settings.home))
    console.print(table)


app.command("teach")(teach)
app.command("prefs")(prefs)
app.command("workers")(workers)
app.command("config")(config)
