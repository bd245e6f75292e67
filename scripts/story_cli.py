from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
import re
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config.settings import get_settings
from memory.models import ClassificationSignal, RetrievedContext
from memory.storage.sqlite_store import SQLiteStore
from runtime.orchestrator import MemoryOrchestrator, build_orchestrator

app = typer.Typer(help="Inspect and exercise the story memory engine.")
console = Console()

_LINE_RE = re.compile(r"^(USER|ASSISTANT)\s*:\s*(.*)$", re.IGNORECASE)


def _configure_logging(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        force=True,
    )
    for noisy_name in ("httpx", "httpcore", "openai", "openai._base_client"):
        noisy = logging.getLogger(noisy_name)
        noisy.setLevel(logging.WARNING)
        noisy.propagate = False


def _orchestrator() -> MemoryOrchestrator:
    settings = get_settings()
    return build_orchestrator(settings, SQLiteStore(settings.sqlite_path))


def _parse_transcript(text: str) -> list[tuple[str, str]]:
    turns: list[tuple[str, str]] = []
    for line in text.splitlines():
        match = _LINE_RE.match(line.strip())
        if match:
            turns.append((match.group(1).lower(), match.group(2).strip()))
        elif turns and line.strip():
            role, content = turns[-1]
            turns[-1] = (role, f"{content}\n{line.strip()}")
    return turns


def _render_context(context: RetrievedContext | None) -> None:
    if context is None:
        console.print("[dim]No retrieved context.[/dim]")
        return
    table = Table(title=f"Retrieved Context ({context.strategy})")
    table.add_column("Target")
    table.add_column("Question")
    table.add_column("Answer")
    for target, question, answer in context.triples():
        table.add_row(target, question, answer)
    console.print(table)
    if context.summary:
        console.print(Panel(context.summary, title="Synthesis"))
    if not context.complete:
        console.print(f"[yellow]Stopped at the iteration cap after {context.iterations} iterations.[/yellow]")


@app.command("import")
def import_transcript(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Transcript with USER:/ASSISTANT: lines."),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    store = SQLiteStore(get_settings().sqlite_path)
    turns = _parse_transcript(path.read_text(encoding="utf-8"))
    for role, content in turns:
        store.append_turn(role, content)
    console.print(f"Imported {len(turns)} turns; transcript now has {store.count_turns()} turns.")


@app.command("segment")
def segment(
    max_chapters: int = typer.Option(20, min=1, help="Upper bound on chapters created in this run."),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    orchestrator = _orchestrator()

    async def run() -> int:
        created = 0
        for _ in range(max_chapters):
            task = orchestrator.on_assistant_turn_classified(ClassificationSignal(chapter_boundary_due=True))
            if task is None or await task is None:
                break
            created += 1
        return created

    created = asyncio.run(run())
    console.print(
        f"Created {created} chapters; {len(orchestrator.unassigned_turns())} turns remain unassigned."
    )


@app.command("chapters")
def chapters(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    orchestrator = _orchestrator()
    table = Table(title="Chapters")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Turns")
    table.add_column("Characters")
    table.add_column("Locations")
    for chapter in orchestrator.index.all():
        table.add_row(
            str(chapter.number),
            chapter.title or "",
            f"{chapter.start_position}-{chapter.end_position}",
            ", ".join(chapter.metadata.characters),
            ", ".join(chapter.metadata.locations),
        )
    console.print(table)


@app.command("ask")
def ask(
    user_input: str = typer.Argument(..., help="Next player input to retrieve context for."),
    mode: str = typer.Option("", help="Override planner mode (static, agentic, auto)."),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    orchestrator = _orchestrator()
    if mode:
        orchestrator.update_config(replace(orchestrator.config, planner_mode=mode.lower()))
    context = asyncio.run(orchestrator.on_user_turn(user_input))
    _render_context(context)


if __name__ == "__main__":
    app()
