"""Commands for synchronizing QuickSight into the local mirror."""

from typing import Callable

import typer

from qsrls.cli.common.context import QsAppContext, build_context
from qsrls.cli.common.exits import exit_code, warn_exit
from qsrls.cli.common.options import (
    DryRunOpt,
    FirstRunOpt,
    ParallelOpt,
    ProfileOpt,
    RegionOpt,
)
from qsrls.cli.common.output import out
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import EntityType, PrincipalKind
from qsrls.core.reconcile import (
    SyncResult,
    sync_all,
    sync_datasets,
    sync_namespaces,
    sync_principals,
)

app = typer.Typer(help="Mirror namespaces, groups, users and datasets", no_args_is_help=True)


@app.callback()
def _init(ctx: typer.Context, profile: str | None = ProfileOpt):
    """Initialize sync context."""
    ctx.obj = build_context(profile)


def _run(
    appctx: QsAppContext,
    label: str,
    passes: Callable[[MirrorStore], list[SyncResult]],
    *,
    dry_run: bool,
) -> None:
    """Run reconciliation passes, render their results and exit on failure."""
    store = appctx.store.clone() if dry_run else appctx.store

    with out.status(f"Syncing {label}..."):
        results = passes(store)

    out.sync_results_table(results, title=f"Sync {label}")
    for r in results:
        if not r.ok:
            out.error(r.outcome.message)
            raise typer.Exit(exit_code(r.outcome))
        if r.total == 0 and r.entity != "account":
            out.warn(r.outcome.message)

    if dry_run:
        warn_exit("Dry-run enabled: the local mirror was not changed")
    out.success(f"{label.capitalize()} synchronized")


@app.command("all")
def all_(
    ctx: typer.Context,
    parallel: int = ParallelOpt,
    first_run: bool = FirstRunOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Sync namespaces, then groups and users of every namespace.
    """
    appctx: QsAppContext = ctx.obj
    directory = appctx.region(appctx.management_region()).quicksight
    _run(
        appctx,
        "namespaces, groups and users",
        lambda store: sync_all(store, directory, first_run=first_run, max_parallel=parallel),
        dry_run=dry_run,
    )


@app.command()
def namespaces(
    ctx: typer.Context,
    first_run: bool = FirstRunOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Sync namespaces (deleted namespaces also delete their users and groups).
    """
    appctx: QsAppContext = ctx.obj
    directory = appctx.region(appctx.management_region()).quicksight
    _run(
        appctx,
        "namespaces",
        lambda store: [sync_namespaces(store, directory, first_run=first_run)],
        dry_run=dry_run,
    )


def _principals(ctx: typer.Context, kind: PrincipalKind, parallel: int, first_run: bool, dry_run: bool) -> None:
    appctx: QsAppContext = ctx.obj
    names = [n.name for n in appctx.store.list(EntityType.NAMESPACE)]
    if not names:
        warn_exit("No namespaces mirrored. Run `qsrls sync namespaces` first.", code=2)
    directory = appctx.region(appctx.management_region()).quicksight
    _run(
        appctx,
        f"{kind.value.lower()}s",
        lambda store: [
            sync_principals(
                store, directory, kind, names, first_run=first_run, max_parallel=parallel
            )
        ],
        dry_run=dry_run,
    )


@app.command()
def groups(
    ctx: typer.Context,
    parallel: int = ParallelOpt,
    first_run: bool = FirstRunOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Sync groups of every mirrored namespace.
    """
    _principals(ctx, PrincipalKind.GROUP, parallel, first_run, dry_run)


@app.command()
def users(
    ctx: typer.Context,
    parallel: int = ParallelOpt,
    first_run: bool = FirstRunOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Sync users of every mirrored namespace.
    """
    _principals(ctx, PrincipalKind.USER, parallel, first_run, dry_run)


@app.command()
def datasets(
    ctx: typer.Context,
    region: str = RegionOpt,
    first_run: bool = FirstRunOpt,
    dry_run: bool = DryRunOpt,
):
    """
    Sync datasets of one region.
    """
    appctx: QsAppContext = ctx.obj
    adapter = appctx.region(region).quicksight
    _run(
        appctx,
        f"datasets in {region}",
        lambda store: [sync_datasets(store, adapter, region, first_run=first_run)],
        dry_run=dry_run,
    )
