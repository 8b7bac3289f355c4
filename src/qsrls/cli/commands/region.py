"""Commands for managed regions."""

import typer

from qsrls.cli.common.context import QsAppContext, build_context
from qsrls.cli.common.exits import finish, ok_exit, warn_exit
from qsrls.cli.common.options import ProfileOpt, YesOpt
from qsrls.cli.common.output import out
from qsrls.core.models import EntityType
from qsrls.core.provisioner import ensure_region, forget_region, refresh_region

app = typer.Typer(help="Provision and inspect managed regions", no_args_is_help=True)

RegionArg = typer.Argument(..., help="AWS region, e.g. eu-west-1")


@app.callback()
def _init(ctx: typer.Context, profile: str | None = ProfileOpt):
    """Initialize region context."""
    ctx.obj = build_context(profile)


@app.command()
def setup(ctx: typer.Context, region: str = RegionArg, yes: bool = YesOpt):
    """
    Create the bucket, Glue database and data source of a region (missing ones only).
    """
    appctx: QsAppContext = ctx.obj
    existing = appctx.store.get(EntityType.MANAGED_REGION, region)
    if existing is not None and existing.provisioned:
        ok_exit(f"Region {region} is already provisioned")

    if not yes and not out.confirm(f"Create missing RLS resources in {region}?"):
        ok_exit("Cancelled")

    adapters = appctx.region(region)
    with out.status(f"Provisioning {region}..."):
        outcome = ensure_region(
            appctx.store,
            region,
            storage=adapters.storage,
            catalog=adapters.catalog,
            quicksight=adapters.quicksight,
            prefix=appctx.settings.resource_prefix,
        )
    current = appctx.store.get(EntityType.MANAGED_REGION, region)
    if current is not None:
        out.regions_table([current], title=f"Region {region}")
    finish(outcome)


@app.command("list")
def list_(ctx: typer.Context):
    """
    List managed regions.
    """
    appctx: QsAppContext = ctx.obj
    regions = sorted(appctx.store.list(EntityType.MANAGED_REGION), key=lambda r: r.region_name)
    if not regions:
        warn_exit("No managed regions. Run `qsrls region setup <region>`.")
    out.regions_table(regions)


@app.command()
def refresh(ctx: typer.Context, region: str = RegionArg):
    """
    Refresh dataset counters and SPICE capacity of a region.
    """
    appctx: QsAppContext = ctx.obj
    with out.status(f"Reading SPICE capacity of {region}..."):
        outcome = refresh_region(appctx.store, region, quicksight=appctx.region(region).quicksight)
    finish(outcome)


@app.command()
def forget(ctx: typer.Context, region: str = RegionArg, yes: bool = YesOpt):
    """
    Remove a region from the local mirror (remote resources are kept).
    """
    appctx: QsAppContext = ctx.obj
    if not yes and not out.confirm(f"Forget managed region {region}?"):
        ok_exit("Cancelled")
    finish(forget_region(appctx.store, region))
