"""Common CLI options for the CLI."""

import typer

ProfileOpt = typer.Option(
    None,
    "--profile",
    "-p",
    help="AWS profile (from ~/.aws/config)",
)

LogLevelOpt = typer.Option(
    None,
    "--log-level",
    help="Log level of core logs (DEBUG, INFO, WARNING, ERROR). Defaults to QSRLS_LOG_LEVEL.",
    show_default=False,
)

RegionOpt = typer.Option(
    ...,
    "--region",
    "-r",
    help="AWS region",
)

ParallelOpt = typer.Option(
    1,
    "--parallel",
    "-n",
    min=1,
    help="Number of namespaces to sync in parallel",
)

FirstRunOpt = typer.Option(
    False,
    "--first-run",
    help="Skip the local snapshot (nothing mirrored yet, nothing to delete)",
)

YesOpt = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation",
)

DryRunOpt = typer.Option(
    False,
    "--dry-run",
    help="Show what would change, but don't change anything",
)
