"""CLI — Account administration commands."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from warden.cli.runtime import CLI_ACTOR, run_with_security
from warden.config import Settings
from warden.exceptions import UserNotFoundError
from warden.security.manager import SecurityManager
from warden.security.models import RequestContext, Role
from warden.security.users import UserRecord

app = typer.Typer(help="Create, unlock and list user accounts.")
console = Console()

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]

_CLI_CONTEXT = RequestContext(ip="localhost", user_agent="warden-cli")


@app.command("create")
def create(
    username: str = typer.Argument(help="Login name."),
    role: list[Role] = typer.Option([Role.OBSERVER], "--role", "-r", case_sensitive=False),
    email: str | None = typer.Option(None),
    department: str | None = typer.Option(None),
    password: str | None = typer.Option(
        None, help="Initial password (prompted if omitted).", show_default=False
    ),
    config: ConfigOption = None,
) -> None:
    """Create an account."""
    if password is None:
        password = typer.prompt("Password", hide_input=True, confirmation_prompt=True)

    async def _create(security: SecurityManager) -> UserRecord:
        return await security.accounts.register(
            username,
            password,
            roles=role,
            email=email,
            department=department,
            actor=CLI_ACTOR,
            ctx=_CLI_CONTEXT,
        )

    record = run_with_security(Settings.load(config_file=config), _create)
    roles = ", ".join(sorted(r.value for r in record.roles))
    console.print(f"[green]Created user {record.username}[/green] ({record.user_id}) roles: {roles}")


@app.command("unlock")
def unlock(
    username: str = typer.Argument(help="Login name of the locked account."),
    config: ConfigOption = None,
) -> None:
    """Clear the failed-login lock on an account."""

    async def _unlock(security: SecurityManager) -> UserRecord:
        record = await security.users.get_by_username(username)
        if record is None:
            raise UserNotFoundError(username)
        return await security.accounts.unlock(record.user_id, CLI_ACTOR, _CLI_CONTEXT)

    record = run_with_security(Settings.load(config_file=config), _unlock)
    console.print(f"[green]Unlocked {record.username}[/green]")


@app.command("list")
def list_users(
    active_only: bool = typer.Option(False, "--active", help="Hide disabled accounts."),
    config: ConfigOption = None,
) -> None:
    """List accounts."""

    async def _list(security: SecurityManager) -> list[UserRecord]:
        return await security.users.list_users(active_only=active_only)

    records = run_with_security(Settings.load(config_file=config), _list)

    table = Table(title=f"Users ({len(records)})")
    table.add_column("Username", style="cyan")
    table.add_column("Roles")
    table.add_column("Department")
    table.add_column("Active")
    table.add_column("Attempts", justify="right")
    table.add_column("Locked until")
    for r in records:
        locked = (
            datetime.fromtimestamp(r.locked_until, tz=timezone.utc).isoformat()
            if r.locked_until
            else "-"
        )
        table.add_row(
            r.username,
            ", ".join(sorted(x.value for x in r.roles)),
            r.department or "-",
            "[green]yes[/green]" if r.is_active else "[red]no[/red]",
            str(r.login_attempts),
            locked,
        )
    console.print(table)
