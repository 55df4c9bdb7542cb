from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from scriptwarden.core.config import Settings
    from scriptwarden.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: SCRIPTWARDEN_HOST or 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: SCRIPTWARDEN_PORT or 18791)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the supervision gateway (HTTP + MCP)."""
    _load_env()
    from scriptwarden.core.config import Settings

    settings = Settings.from_env()
    _setup_logging()
    uvicorn.run(
        "scriptwarden.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from scriptwarden import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
