# tekitoi/cli/main_cli.py
import typer
import uvicorn
from pathlib import Path
from typing import Optional

from ..registry.client_registry import ClientRegistry
from ..settings import Settings
from ..utils.security import generate_fernet_key, hash_password

# Main CLI application with help enabled when no arguments are provided
app = typer.Typer(
    name="tekitoi",
    help="Tekitoi OAuth2 authorization broker.",
    no_args_is_help=True
)


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind. Defaults to TEKITOI_HOST."),
    port: Optional[int] = typer.Option(None, help="Port to bind. Defaults to TEKITOI_PORT."),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development only)."),
):
    """Run the broker with uvicorn."""
    settings = Settings()
    bind_host = host or settings.host
    bind_port = port or settings.port
    typer.echo(f"Starting {settings.app_name} on {bind_host}:{bind_port} (storage: {settings.storage_backend})")
    uvicorn.run(
        "tekitoi.main:create_app",
        factory=True,
        host=bind_host,
        port=bind_port,
        log_level="debug" if settings.debug_mode else settings.log_level.lower(),
        reload=reload
    )


@app.command("check-dataset")
def check_dataset(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Dataset JSON file."),
):
    """Validate a dataset file and print what it declares."""
    try:
        registry = ClientRegistry.from_dataset_file(path)
    except ValueError as e:
        typer.secho(f"Invalid dataset: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    for application in registry.applications:
        typer.echo(f"Application '{application.client_id}' -> {application.redirect_uri}")
        for provider in application.providers:
            line = f"  - {provider.id} ({provider.kind})"
            if provider.provider_kind.is_local:
                line += f": {len(registry.list_users(application.id, provider.id))} user(s)"
            typer.echo(line)
    typer.secho(f"Dataset OK: {len(registry.applications)} application(s).", fg=typer.colors.GREEN)


@app.command("hash-password")
def hash_password_command(
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True, help="Cleartext password to hash."
    ),
):
    """Print a password_hash usable in a credentials provider."""
    typer.echo(hash_password(password))


@app.command("generate-key")
def generate_key():
    """Print a new TEKITOI_TOKEN_ENCRYPTION_KEY value."""
    typer.echo(generate_fernet_key())


def cli_entry_point():
    """Entry point function for console script registration in pyproject.toml"""
    app()


if __name__ == "__main__":
    cli_entry_point()
