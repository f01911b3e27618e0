import click
from flask import current_app
from flask.cli import with_appcontext

from relational.config import ConnectionSettings
from relational.errors import RelationalDatabaseError


@click.group("relational")
def relational_cli():
    """Inspect the relational database connection."""


@relational_cli.command("dsn")
@click.option("--name", "connection_name", default=None, help="Connection name (defaults to RELATIONAL_CONNECTION_NAME)")
@with_appcontext
def dsn_command(connection_name):
    """Print the configured DSN with the password redacted."""
    connection_name = connection_name or current_app.config["RELATIONAL_CONNECTION_NAME"]
    try:
        settings = ConnectionSettings.from_environment(connection_name)
    except RelationalDatabaseError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"{settings.database_type}: {settings.redacted_dsn}")


@relational_cli.command("check")
@with_appcontext
def check_command():
    """Open the connection and run a trivial query against it."""
    from relational.extension import get_database

    try:
        database = get_database()
        database.ping()
    except RelationalDatabaseError as exc:
        current_app.logger.warning("Connection check failed: %s", exc)
        raise click.ClickException(str(exc))
    click.echo(f"✔ Connection '{database.connection_name}' is reachable")
