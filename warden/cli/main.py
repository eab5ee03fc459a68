"""Warden CLI — Entry point.

Usage:
    warden serve
    warden status
    warden audit query [--action ACTION] [--severity HIGH] [--since-hours 24]
    warden audit stats
    warden audit purge --days 365
    warden audit export --format csv --output audit.csv
    warden secrets keygen
    warden secrets encrypt
    warden secrets decrypt <blob>
    warden users create <username> --role ADMIN
    warden users unlock <username>
    warden users list
"""

from __future__ import annotations

import typer

from warden.cli.commands import audit, secrets, server, users
from warden.logging import configure_logging

app = typer.Typer(
    name="warden",
    help="Warden — Access control, audit trail and security monitoring.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.command("serve")(server.serve)
app.command("status")(server.status)
app.add_typer(audit.app, name="audit")
app.add_typer(secrets.app, name="secrets")
app.add_typer(users.app, name="users")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show info-level logs."),
) -> None:
    configure_logging(level="info" if verbose else "warning")


if __name__ == "__main__":
    app()
