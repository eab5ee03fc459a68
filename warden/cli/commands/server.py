"""CLI — Service commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

console = Console()


def serve(
    host: str | None = typer.Option(None, help="Host to bind to (default: server.host)."),
    port: int | None = typer.Option(None, help="Port to listen on (default: server.port)."),
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
    log_level: str = typer.Option("info", help="Log level."),
) -> None:
    """Start the Warden HTTP service."""
    from warden.api.server import create_app
    from warden.config import Settings

    settings = Settings.load(config_file=config)
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port

    console.print(
        f"[bold green]Starting Warden on {settings.server.host}:{settings.server.port}[/bold green]"
    )

    app_instance = create_app(settings=settings)

    uvicorn.run(
        app_instance,
        host=settings.server.host,
        port=settings.server.port,
        log_level=log_level,
        proxy_headers=bool(settings.server.trusted_proxies),
        forwarded_allow_ips=settings.server.trusted_proxies or None,
    )


def status(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8400),
) -> None:
    """Check service health."""
    import httpx

    try:
        resp = httpx.get(f"http://{host}:{port}/health", timeout=5.0)
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as exc:
        console.print(f"[red]Service unreachable: {exc}[/red]")
        raise typer.Exit(1)

    table = Table(title="Warden Status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for k, v in data.items():
        table.add_row(str(k), str(v))
    console.print(table)
