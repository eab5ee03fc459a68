"""CLI — Secret encryption commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from warden.config import Settings
from warden.exceptions import WardenError
from warden.security.cipher import SecretCipher, generate_master_key

app = typer.Typer(help="Encrypt and decrypt secrets, generate master keys.")
console = Console()

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")]


def _cipher(config: Path | None) -> SecretCipher:
    return SecretCipher.from_settings(Settings.load(config_file=config))


@app.command("keygen")
def keygen() -> None:
    """Print a new random master key."""
    console.print(generate_master_key(), highlight=False, soft_wrap=True)
    console.print(
        "[dim]Set it as WARDEN_SECRETS__MASTER_KEY or secrets.master_key in config.yaml.[/dim]"
    )


@app.command("encrypt")
def encrypt(
    plaintext: str | None = typer.Argument(None, help="Secret to encrypt (prompted if omitted)."),
    config: ConfigOption = None,
) -> None:
    """Encrypt a secret under the configured master key."""
    if plaintext is None:
        plaintext = typer.prompt("Secret", hide_input=True)
    try:
        blob = _cipher(config).encrypt(plaintext)
    except WardenError as exc:
        console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(1)
    console.print(blob, highlight=False, soft_wrap=True)


@app.command("decrypt")
def decrypt(
    blob: str = typer.Argument(help="Base64 blob produced by 'encrypt'."),
    config: ConfigOption = None,
) -> None:
    """Decrypt a blob under the configured master key."""
    try:
        plaintext = _cipher(config).decrypt(blob)
    except WardenError as exc:
        console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(1)
    console.print(plaintext, highlight=False, soft_wrap=True)
