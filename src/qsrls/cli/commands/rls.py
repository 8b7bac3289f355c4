"""Commands for row-level security rules."""

import typer

from qsrls.cli.common.context import QsAppContext, build_context
from qsrls.cli.common.exits import finish, ok_exit, warn_exit
from qsrls.cli.common.options import DryRunOpt, ProfileOpt, RegionOpt, YesOpt
from qsrls.cli.common.output import out
from qsrls.cli.common.progress import publish_progress
from qsrls.core.errors import Outcome
from qsrls.core.models import EntityType
from qsrls.core.pipeline import prepare_publication, publish_rls
from qsrls.core.removal import remove_rls
from qsrls.core.rules import dataset_rules, grant as core_grant, render_rule_table, revoke as core_revoke

app = typer.Typer(help="Manage, publish and remove row-level security", no_args_is_help=True)

DatasetArg = typer.Argument(..., help="Dataset ARN")
PrincipalArg = typer.Argument(..., help="User or group ARN")


@app.callback()
def _init(ctx: typer.Context, profile: str | None = ProfileOpt):
    """Initialize RLS context."""
    ctx.obj = build_context(profile)


@app.command()
def datasets(ctx: typer.Context, region: str = RegionOpt):
    """
    List mirrored datasets of a region.
    """
    appctx: QsAppContext = ctx.obj
    found = sorted(appctx.store.list(EntityType.DATASET, region=region), key=lambda d: d.name.lower())
    if not found:
        warn_exit(f"No datasets mirrored in {region}. Run `qsrls sync datasets --region {region}`.")
    out.datasets_table(found, title=f"Datasets in {region}")


@app.command()
def rules(ctx: typer.Context, dataset_arn: str = DatasetArg):
    """
    List the permissions of a dataset.
    """
    appctx: QsAppContext = ctx.obj
    perms = sorted(dataset_rules(appctx.store, dataset_arn), key=lambda p: (p.principal_arn, p.field))
    if not perms:
        warn_exit("No permissions defined")
    out.permissions_table(perms)


@app.command()
def grant(
    ctx: typer.Context,
    dataset_arn: str = DatasetArg,
    principal_arn: str = PrincipalArg,
    field: str = typer.Argument(..., help="Dataset field, or * for every field"),
    values: list[str] = typer.Argument(..., help="Allowed values, or * for every value"),
):
    """
    Allow a user or group to see some values of a field.
    """
    appctx: QsAppContext = ctx.obj
    allowed = "*" if values == ["*"] else values
    finish(core_grant(appctx.store, dataset_arn, principal_arn, field, allowed))


@app.command()
def revoke(
    ctx: typer.Context,
    dataset_arn: str = DatasetArg,
    principal_arn: str = PrincipalArg,
    field: str | None = typer.Option(None, "--field", help="Only revoke the rule of this field"),
):
    """
    Remove the rules of a user or group on a dataset.
    """
    appctx: QsAppContext = ctx.obj
    finish(core_revoke(appctx.store, dataset_arn, principal_arn, field))


@app.command()
def render(ctx: typer.Context, dataset_arn: str = DatasetArg):
    """
    Print the rule table that would be published.
    """
    appctx: QsAppContext = ctx.obj
    table = render_rule_table(dataset_rules(appctx.store, dataset_arn))
    if not table:
        warn_exit("No permissions defined")
    out.raw(table)


@app.command()
def publish(
    ctx: typer.Context,
    dataset_arn: str = DatasetArg,
    yes: bool = YesOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Publish the rules of a dataset to QuickSight.
    """
    appctx: QsAppContext = ctx.obj
    prepared = prepare_publication(appctx.store, dataset_arn)
    if isinstance(prepared, Outcome):
        finish(prepared)
    target, request = prepared

    out.header(f"Publish RLS of '{target.name}'")
    out.kv(
        {
            "Region": request.region,
            "Staged object": f"s3://{request.bucket}/{request.object_key}",
            "Glue table": f"{request.catalog_db}.{request.table_name}",
            "RLS dataset": request.rls_dataset_arn or f"{request.rule_dataset_id} (new)",
        }
    )
    out.raw(request.rule_table)

    if dry_run:
        warn_exit("Dry-run enabled: nothing was published")
    if not yes and not out.confirm(f"Publish RLS of '{target.name}'?"):
        ok_exit("Cancelled")

    with publish_progress(f"Publishing RLS of {target.name}") as on_stage:
        state = publish_rls(
            appctx.store,
            dataset_arn,
            appctx.publish_services(target.region),
            on_stage=on_stage,
        )

    out.stages_table(state.history)
    finish(state.outcome)


@app.command()
def remove(ctx: typer.Context, dataset_arn: str = DatasetArg, yes: bool = YesOpt):
    """
    Detach and delete the published RLS of a dataset.
    """
    appctx: QsAppContext = ctx.obj
    target = appctx.store.get(EntityType.DATASET, dataset_arn)
    if target is None:
        warn_exit(f"Dataset '{dataset_arn}' is not mirrored", code=2)

    if not yes and not out.confirm(f"Remove RLS of '{target.name}' and delete its RLS dataset?"):
        ok_exit("Cancelled")

    adapters = appctx.region(target.region)
    with out.status(f"Removing RLS of {target.name}..."):
        outcome = remove_rls(
            appctx.store,
            dataset_arn,
            storage=adapters.storage,
            catalog=adapters.catalog,
            quicksight=adapters.quicksight,
            poll_interval=appctx.settings.poll_interval,
            max_attempts=appctx.settings.poll_max_attempts,
        )
    finish(outcome)
