"""CLI application for QuickSight managed row-level security."""

import logging

import typer
from rich.logging import RichHandler

from qsrls.cli.commands.account import app as account_app
from qsrls.cli.commands.region import app as region_app
from qsrls.cli.commands.rls import app as rls_app
from qsrls.cli.commands.sync import app as sync_app
from qsrls.cli.common.options import LogLevelOpt
from qsrls.cli.common.output import console
from qsrls.core.settings import Settings

app = typer.Typer(
    help="qsrls - mirror QuickSight permissions and publish row-level security",
    no_args_is_help=True,
)


def setup_logging(level: str | None) -> None:
    """Route core logs through a RichHandler on the CLI console."""
    name = (level or Settings.from_env().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # botocore is chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)


@app.callback()
def _main(log_level: str | None = LogLevelOpt):
    """Configure logging for every command."""
    setup_logging(log_level)


app.add_typer(account_app, name="account")
app.add_typer(sync_app, name="sync")
app.add_typer(region_app, name="region")
app.add_typer(rls_app, name="rls")


if __name__ == "__main__":
    app()
