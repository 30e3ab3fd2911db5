"""
Root Typer application for the shipyard CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from shipyard import __version__
from shipyard.cli.utils import err_console
from shipyard.core.errors import ConfigError
from shipyard.core.logging import configure_logging
from shipyard.core.settings import get_settings

app = Typer(
    name="shipyard",
    help="shipyard -- push-to-deploy containers and managed Postgres on one host.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"shipyard {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override SHIPYARD_LOG_LEVEL."),
) -> None:
    """shipyard CLI -- deploy branches, manage certificates and databases."""
    try:
        settings = get_settings()
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/] {exc.message}")
        raise typer.Exit(code=1) from exc
    json_format = {"json": True, "console": False}.get(settings.log_format)
    configure_logging(level=log_level or settings.log_level, json_format=json_format)


from shipyard.cli.db import app as db_app  # noqa: E402
from shipyard.cli.deploy import certs_app  # noqa: E402
from shipyard.cli.deploy import register as register_deploy  # noqa: E402

register_deploy(app)
app.add_typer(certs_app, name="certs", help="TLS certificate operations.")
app.add_typer(db_app, name="db", help="Managed PostgreSQL instances.")


if __name__ == "__main__":
    app()
