"""Pulse CLI: main entry point using Typer."""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from pulse.cli.alerts_cmd import app as alerts_app

app = typer.Typer(
    name="pulse",
    help="Client health monitoring: sentiment, clustering and churn-risk alerts.",
    no_args_is_help=True,
)
console = Console()

app.add_typer(alerts_app, name="alerts", help="Review and act on alerts")


def _setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )


@app.command()
def init(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Create the database tables and a default config file."""
    _setup_logging(verbose)

    async def _init():
        from pulse.config import get_settings
        from pulse.storage.db import close_db, init_db

        settings = get_settings()

        config_dir = Path.home() / ".config/pulse"
        config_dir.mkdir(parents=True, exist_ok=True)
        console.print(f"  Config dir: {config_dir}")

        for directory in settings.watch.directories:
            directory.mkdir(parents=True, exist_ok=True)
        console.print(f"  Data dir:   {settings.general.data_dir}")

        console.print("  Initializing database...")
        await init_db()
        await close_db()
        console.print("  Database ready.")

        config_path = config_dir / "config.toml"
        if not config_path.exists():
            config_path.write_text(
                "[general]\n"
                'db_url = "postgresql+asyncpg://localhost/pulse"\n'
                'data_dir = "data"\n'
                'log_level = "INFO"\n\n'
                "[anthropic]\n"
                '# api_key = ""  # Or set ANTHROPIC_API_KEY env var\n'
                'model = "claude-haiku-4-5-20251001"\n\n'
                "[local_model]\n"
                "enabled = true\n\n"
                "[mailbox]\n"
                'host = "imap.gmail.com"\n'
                "port = 993\n"
                "interval_minutes = 5\n"
                "# default_password = \"\"  # Or set MAILBOX_DEFAULT_PASSWORD env var\n"
                '# accounts = [{ address = "csdinsure@gmail.com" }]\n\n'
                "[alerts]\n"
                "metrics_interval_minutes = 2\n"
                "dedup_window_minutes = 60\n"
            )
            console.print(f"  Config written: {config_path}")

        console.print("\n[bold green]Pulse initialized![/bold green]")
        console.print("\nNext steps:")
        console.print("  1. Import client data:   [cyan]pulse import data/[/cyan]")
        console.print("  2. Start the daemon:     [cyan]pulse run[/cyan]")

    asyncio.run(_init())


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the Pulse daemon (file watcher plus periodic jobs)."""
    _setup_logging(verbose)

    from pulse.daemon import run_daemon

    asyncio.run(run_daemon())


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port", "-p"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Serve the REST API."""
    _setup_logging(verbose)

    import uvicorn

    uvicorn.run("pulse.api.routes:app", host=host, port=port)


@app.command("import")
def import_files(
    paths: list[Path] = typer.Argument(help="Files or directories to import"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Import client profiles, transcripts and metric exports.

    Files whose content hasn't changed since the last import are skipped.
    """
    _setup_logging(verbose)

    async def _import():
        from pulse.alerts.triggers import TriggerEngine
        from pulse.config import get_settings
        from pulse.ingestion.importer import is_metrics_export
        from pulse.ingestion.watcher import FileWatchAdapter, is_watched
        from pulse.processing.sentiment import SentimentPipeline
        from pulse.storage.db import close_db, get_session

        settings = get_settings()
        files: list[Path] = []
        for p in paths:
            if p.is_dir():
                files.extend(sorted(f for f in p.rglob("*") if f.is_file()))
            else:
                files.append(p)
        files = [f for f in files if is_watched(f, settings.watch.extensions)]

        if not files:
            console.print("[yellow]No importable files found.[/yellow]")
            return

        pipeline = SentimentPipeline.from_settings(settings)
        await pipeline.load()
        engine = TriggerEngine(settings=settings)
        async with get_session() as session:
            # Exports already imported with these bytes don't go back to the AI service
            await engine.prime_from_ledger(session, [f for f in files if is_metrics_export(f)])
        adapter = FileWatchAdapter(engine, pipeline, settings)

        total = 0
        # Profiles first so transcripts and metrics can reference their clients
        for f in sorted(files, key=lambda f: (f.suffix.lower() != ".xml", str(f))):
            try:
                count = await adapter.process_file(f)
            except Exception as e:
                console.print(f"  [red]{f}: {e}[/red]")
                continue
            total += count
            console.print(f"  {f}: {count} rows" if count else f"  [dim]{f}: unchanged[/dim]")

        await close_db()
        console.print(f"\n[bold]Imported {total} rows from {len(files)} files[/bold]")

    asyncio.run(_import())


@app.command()
def classify(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one sentiment batch over unanalyzed conversations and emails."""
    _setup_logging(verbose)

    async def _classify():
        from pulse.processing.sentiment import SentimentPipeline
        from pulse.storage.db import close_db, get_session

        pipeline = SentimentPipeline.from_settings()
        await pipeline.load()
        async with get_session() as session:
            summary = await pipeline.process_pending(session)
        await close_db()

        console.print(
            f"Classified {summary['conversations']} conversations, {summary['emails']} emails "
            f"({summary['failed']} failed, {summary['errors']} errors)"
        )

    asyncio.run(_classify())


@app.command()
def cluster(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Recompute thematic clusters over analyzed content."""
    _setup_logging(verbose)

    async def _cluster():
        from pulse.processing.clustering import run_clustering
        from pulse.storage.db import close_db, get_session

        async with get_session() as session:
            report = await run_clustering(session)
        await close_db()

        if report.status == "clustered":
            console.print(
                f"[green]{report.clusters} clusters[/green] over {report.documents} documents "
                f"({report.vocabulary_size} terms)"
            )
        elif report.status == "skipped":
            console.print(f"[yellow]Not enough documents to cluster ({report.documents})[/yellow]")
        else:
            console.print("[red]Clustering failed, see log[/red]")
            raise typer.Exit(1)

    asyncio.run(_cluster())


@app.command()
def scan(
    force: bool = typer.Option(False, "--force", "-f", help="Analyze exports even if unchanged"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run trigger detection over the configured metric exports."""
    _setup_logging(verbose)

    async def _scan():
        from pulse.alerts.triggers import TriggerEngine
        from pulse.storage.db import close_db, get_session

        engine = TriggerEngine()
        async with get_session() as session:
            if not force:
                await engine.prime_from_ledger(session)
            created = await engine.scan(session)
        await close_db()
        console.print(f"Created [bold]{created}[/bold] alerts")

    asyncio.run(_scan())


@app.command()
def analyze(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one metrics-threshold alert pass over all clients."""
    _setup_logging(verbose)

    async def _analyze():
        from pulse.alerts.metrics import MetricsAlertEngine
        from pulse.storage.db import close_db, get_session

        engine = MetricsAlertEngine()
        async with get_session() as session:
            created = await engine.analyze_all(session)
        await close_db()
        console.print(f"Created [bold]{created}[/bold] alerts")

    asyncio.run(_analyze())


def main():
    app()


if __name__ == "__main__":
    main()
