"""CLI — Shared helpers for commands that work on the local stores."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console

from warden.config import Settings
from warden.exceptions import WardenError
from warden.security.manager import SecurityManager
from warden.security.models import Principal, Role

T = TypeVar("T")

console = Console()

# Actor recorded in the audit trail for administrative CLI operations.
CLI_ACTOR = Principal(
    user_id="system:cli",
    username="warden-cli",
    roles=frozenset({Role.ADMIN}),
)


def run_with_security(
    settings: Settings,
    action: Callable[[SecurityManager], Awaitable[T]],
) -> T:
    """Open the stores, run *action*, close the stores.

    ``WardenError`` is printed and turned into exit code 1.
    """
    async def _main() -> T:
        security = await SecurityManager.open(settings)
        try:
            return await action(security)
        finally:
            await security.close()

    try:
        return asyncio.run(_main())
    except WardenError as exc:
        console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(1)
