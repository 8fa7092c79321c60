"""CLI commands for database migration management.

This module wraps yoyo-migrations commands, providing a unified CLI interface
that automatically handles DATABASE_URL configuration from environment variables.
"""

import os
import subprocess
from typing import List, Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="Database migration commands (wraps yoyo-migrations)")

MIGRATIONS_DIR = "migrations"


def get_database_url() -> str:
    """Get DATABASE_URL from environment.

    Supabase's REST URL cannot run migrations, so a PostgreSQL connection
    string is required here.

    Raises:
        typer.Exit: If DATABASE_URL is not available.
    """
    load_dotenv()

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return database_url

    typer.echo(
        "Error: DATABASE_URL environment variable is required.\n"
        "Set it in your environment or .env file.",
        err=True,
    )
    raise typer.Exit(1)


def _run_yoyo_command(args: List[str], database_url: Optional[str] = None) -> None:
    """Run a yoyo command against the migrations directory.

    Raises:
        typer.Exit: If the yoyo command fails.
    """
    if database_url is None:
        database_url = get_database_url()

    cmd = ["yoyo"] + args + ["--database", database_url, MIGRATIONS_DIR]

    try:
        result = subprocess.run(cmd, check=False, text=True)
    except FileNotFoundError:
        typer.echo("Error: 'yoyo' command not found. Install yoyo-migrations.", err=True)
        raise typer.Exit(1)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


@app.command("migrate")
def migrate() -> None:
    """Apply all pending database migrations.

    Example:
        conveyor db migrate
    """
    typer.echo("Applying database migrations...")
    _run_yoyo_command(["apply", "--batch"])
    typer.echo("Migrations applied successfully.")


@app.command("rollback")
def rollback(
    count: Optional[int] = typer.Option(
        None,
        "--count",
        "-c",
        help="Number of migrations to rollback (default: 1)",
    ),
) -> None:
    """Rollback the most recently applied migration(s).

    Example:
        conveyor db rollback --count 2
    """
    if count is not None and count < 1:
        typer.echo("Error: --count must be at least 1", err=True)
        raise typer.Exit(1)

    args = ["rollback", "--batch"]
    if count is not None:
        args.extend(["--revision", str(count)])

    msg = f"Rolling back {count} migration(s)..." if count else "Rolling back last migration..."
    typer.echo(msg)
    _run_yoyo_command(args)
    typer.echo("Rollback completed successfully.")


@app.command("status")
def status() -> None:
    """Show database migration status."""
    _run_yoyo_command(["list"])
