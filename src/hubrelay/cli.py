from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from hubrelay.core.config import Settings

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from hubrelay.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default HUBRELAY_HOST or 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default HUBRELAY_PORT or 5173)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    settings = Settings.from_env()
    _setup_logging(settings)
    uvicorn.run(
        "hubrelay.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def version() -> None:
    from hubrelay import __version__

    typer.echo(__version__)

@app.command()
def tasks(
    client_id: str = typer.Argument(..., help="Client whose persisted tasks to list"),
    show_results: bool = typer.Option(False, "--results", help="Include task results"),
) -> None:
    """List a client's persisted tasks, newest first."""
    _load_env()
    settings = Settings.from_env()

    from hubrelay.core.tasks import StorageError, TaskStore

    try:
        records = TaskStore(settings.db_path).list_for_client(client_id)
    except StorageError as exc:
        typer.echo(f"❌ Could not read {settings.db_path}: {exc}", err=True)
        raise typer.Exit(code=1)

    if not records:
        typer.echo(f"No tasks for client {client_id}.")
        raise typer.Exit()

    for record in records:
        line = f"{record.created_at}  {record.status:<8} {record.unique_id}  taskId={record.task_id or '-'}"
        if record.error:
            line += f"  error={record.error}"
        typer.echo(line)
        if show_results and record.result is not None:
            typer.echo(f"   result: {record.result}")

if __name__ == "__main__":
    app()
