"""Commands for the managed QuickSight account."""

import typer

from qsrls.cli.common.context import QsAppContext, build_context
from qsrls.cli.common.exits import finish, warn_exit
from qsrls.cli.common.options import ProfileOpt, RegionOpt
from qsrls.cli.common.output import out
from qsrls.core.reconcile import set_account

app = typer.Typer(help="Initialize and inspect the managed account", no_args_is_help=True)


@app.callback()
def _init(ctx: typer.Context, profile: str | None = ProfileOpt):
    """Initialize account context."""
    ctx.obj = build_context(profile)


@app.command()
def init(ctx: typer.Context, region: str = RegionOpt):
    """
    Record the account and its QuickSight management region.
    """
    appctx: QsAppContext = ctx.obj
    adapter = appctx.region(region).quicksight

    with out.status(f"Checking QuickSight access in {region}..."):
        outcome = set_account(
            appctx.store,
            appctx.account_id,
            region,
            check_access=adapter.check_access,
        )
    finish(outcome)


@app.command()
def show(ctx: typer.Context):
    """
    Show the account record and its counters.
    """
    appctx: QsAppContext = ctx.obj
    account = appctx.account()
    if account is None:
        warn_exit("Account not initialized. Run `qsrls account init --region <region>`.")

    out.header(f"Account {account.account_id}")
    out.kv(
        {
            "Management region": account.management_region,
            "Namespaces": account.namespaces_count,
            "Groups": account.groups_count,
            "Users": account.users_count,
            "Mirror store": appctx.store.path,
        }
    )
