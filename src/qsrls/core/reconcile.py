"""Reconciliation of remote directory listings into the local mirror.

Each pass converges the mirror's identities for one entity type (optionally
within one namespace scope) onto exactly the identities returned by the
remote listing:

  1) snapshot local identities as "pending delete" (skipped on a first run)
  2) page through the remote listing sequentially
  3) update records still present upstream, create the new ones
  4) delete whatever is still pending, strictly after all creates/updates
  5) refresh the AccountDetails counters (namespace, group and user passes)

A write the store does not confirm, a failed delete or a failed page aborts
the pass immediately. Since deletes only happen after the listing has been
fully consumed, a failure while paging never removes local records.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Iterable, Protocol

from qsrls.core.errors import ErrorKind, MissingArgument, Outcome, RemoteError
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import (
    AccountDetails,
    Dataset,
    EntityType,
    ManagedRegion,
    Namespace,
    Page,
    Principal,
    PrincipalKind,
)
from qsrls.core.paging import iter_pages

logger = logging.getLogger(__name__)

RULE_DATASET_PREFIX = "QS_RLS_Managed_"


class DirectoryAdapter(Protocol):
    """Paginated read access to namespaces, groups and users."""

    def list_namespaces(self, token: str | None = None) -> Page:
        ...

    def list_groups(self, namespace: str, token: str | None = None) -> Page:
        ...

    def list_users(self, namespace: str, token: str | None = None) -> Page:
        ...


class DatasetsAdapter(Protocol):
    """Paginated read access to datasets of one region."""

    def list_datasets(self, token: str | None = None) -> Page:
        ...

    def describe_dataset_fields(self, dataset_id: str) -> tuple[tuple[str, ...], int] | None:
        ...


class SyncAborted(Exception):
    """Raised inside a pass to stop it; carries the outcome to report."""

    def __init__(self, outcome: Outcome) -> None:
        super().__init__(outcome.message)
        self.outcome = outcome


@dataclass
class _Tally:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    cascaded: int = 0
    skipped: int = 0
    names: list[str] = field(default_factory=list)

    @property
    def seen(self) -> int:
        return self.created + self.updated + self.unchanged

    def absorb(self, other: _Tally) -> None:
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.deleted += other.deleted
        self.cascaded += other.cascaded
        self.skipped += other.skipped
        self.names.extend(other.names)


@dataclass(frozen=True)
class SyncResult:
    """
    Result of one reconciliation pass.

    Attributes:
        entity: Label of the synchronized entity type.
        outcome: Structured outcome of the pass.
        created / updated / unchanged / deleted: Per-action counters.
        cascaded: Principals deleted because their namespace disappeared.
        skipped: Empty remote items ignored with a warning.
        names: Names of the remote items seen, in listing order.
    """

    entity: str
    outcome: Outcome
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    cascaded: int = 0
    skipped: int = 0
    names: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def mutations(self) -> int:
        return self.created + self.updated + self.deleted + self.cascaded


def _result(entity: str, outcome: Outcome, tally: _Tally) -> SyncResult:
    return SyncResult(
        entity=entity,
        outcome=outcome,
        created=tally.created,
        updated=tally.updated,
        unchanged=tally.unchanged,
        deleted=tally.deleted,
        cascaded=tally.cascaded,
        skipped=tally.skipped,
        names=tuple(tally.names),
    )


def _confirm(written: str | None, expected: str, *, action: str, label: str) -> None:
    """Abort the pass when the store did not confirm the written identity."""
    if written != expected:
        logger.error("Failed to %s %s '%s' (store returned %r)", action, label, expected, written)
        raise SyncAborted(
            Outcome.failure(
                f"[StoreWriteFailed] Failed to {action} {label} '{expected}' in the local mirror.",
                kind=ErrorKind.UNKNOWN,
                error_type="StoreWriteFailed",
            )
        )


def _converge(
    store: MirrorStore,
    entity: EntityType,
    pages: Iterable[Page],
    pending: dict[str, Any],
    *,
    label: str,
    prepare: Callable[[Any, Any | None], Any] | None = None,
    mutable: bool = True,
    on_deleted: Callable[[Any], int] | None = None,
) -> _Tally:
    """
    Apply one remote listing to the store.

    `pending` maps local identities to their records and is consumed: after
    the listing, whatever remains is deleted. `prepare(remote, existing)`
    builds the record to write; `on_deleted(record)` runs cascades and
    returns how many dependent records it removed.
    """
    tally = _Tally()
    processed: set[str] = set()

    for page in pages:
        for item in page.items:
            if item is None:
                tally.skipped += 1
                logger.warning("Skipping empty %s item in remote listing", label)
                continue

            key = item.key
            if key in processed:
                logger.warning("%s '%s' listed twice; ignoring duplicate", label, key)
                continue
            processed.add(key)
            tally.names.append(getattr(item, "name", key))

            existing = pending.pop(key, None)
            if existing is None:
                existing = store.get(entity, key)
            record = prepare(item, existing) if prepare else item

            if existing is None:
                _confirm(store.create(entity, record), key, action="create", label=label)
                tally.created += 1
                logger.info("%s '%s' created", label, key)
            elif not mutable or record == existing:
                tally.unchanged += 1
            else:
                _confirm(store.update(entity, record), key, action="update", label=label)
                tally.updated += 1
                logger.info("%s '%s' updated", label, key)

    for key in sorted(pending):
        record = pending[key]
        _confirm(store.delete(entity, key), key, action="delete", label=label)
        tally.deleted += 1
        logger.info("%s '%s' deleted (no longer upstream)", label, key)
        if on_deleted:
            tally.cascaded += on_deleted(record)

    return tally


def _run_pass(entity: str, body: Callable[[], tuple[Outcome, _Tally]]) -> SyncResult:
    """Run a pass body, converting anything raised into a failed SyncResult."""
    try:
        outcome, tally = body()
    except SyncAborted as exc:
        return SyncResult(entity=entity, outcome=exc.outcome)
    except Exception as exc:  # noqa: BLE001  # pass boundary: report, never raise
        logger.error("%s sync failed: %s", entity, exc)
        return SyncResult(entity=entity, outcome=Outcome.from_error(exc, context=f"Syncing {entity}"))
    return _result(entity, outcome, tally)


def _snapshot(store: MirrorStore, entity: EntityType, first_run: bool, **filters: Any) -> dict[str, Any]:
    if first_run:
        return {}
    return {r.key: r for r in store.list(entity, **filters)}


def _cascade_namespace(store: MirrorStore, namespace: Namespace) -> int:
    """Delete every principal that belonged to a deleted namespace."""
    doomed = {p.key: p for p in store.list(EntityType.PRINCIPAL, namespace_name=namespace.name)}
    doomed.update({p.key: p for p in store.list(EntityType.PRINCIPAL, namespace_arn=namespace.arn)})
    for key, principal in sorted(doomed.items()):
        _confirm(
            store.delete(EntityType.PRINCIPAL, key),
            key,
            action="delete",
            label=f"{principal.kind.value.lower()} of namespace '{namespace.name}'",
        )
    if doomed:
        logger.info("Namespace '%s' removed: %d principal(s) deleted", namespace.name, len(doomed))
    return len(doomed)


def sync_namespaces(
    store: MirrorStore,
    directory: DirectoryAdapter,
    *,
    first_run: bool = False,
) -> SyncResult:
    """
    Converge local namespaces onto the remote listing.

    Namespaces are immutable: records present on both sides are left as they
    are. A deleted namespace cascades to its users and groups. A listing with
    no namespace at all is reported as a failure (after converging), since
    every later pass depends on at least one namespace.
    """

    def body() -> tuple[Outcome, _Tally]:
        pending = _snapshot(store, EntityType.NAMESPACE, first_run)
        logger.info("Namespaces already mirrored: %d", len(pending))
        tally = _converge(
            store,
            EntityType.NAMESPACE,
            iter_pages(directory.list_namespaces, label="namespaces"),
            pending,
            label="namespace",
            mutable=False,
            on_deleted=partial(_cascade_namespace, store),
        )
        _refresh_account_counters(store)
        if tally.seen == 0:
            logger.error("No namespaces found upstream")
            return (
                Outcome.failure(
                    "[NoNamespaces] Syncing namespaces: no QuickSight namespaces found. "
                    "Create a namespace in QuickSight and try again.",
                    kind=ErrorKind.NOT_FOUND,
                    error_type="NoNamespaces",
                ),
                tally,
            )
        return Outcome.success(f"Namespaces synchronized: {tally.seen} found."), tally

    return _run_pass("namespaces", body)


def _sync_principal_scope(
    store: MirrorStore,
    directory: DirectoryAdapter,
    kind: PrincipalKind,
    namespace: str,
    namespace_arn: str | None,
    first_run: bool,
) -> _Tally:
    fetch = directory.list_users if kind is PrincipalKind.USER else directory.list_groups
    pending = _snapshot(store, EntityType.PRINCIPAL, first_run, kind=kind, namespace_name=namespace)

    def prepare(remote: Principal, _existing: Principal | None) -> Principal:
        return replace(remote, namespace_name=namespace, namespace_arn=namespace_arn)

    return _converge(
        store,
        EntityType.PRINCIPAL,
        iter_pages(partial(fetch, namespace), label=f"{kind.value.lower()}s of '{namespace}'"),
        pending,
        label=kind.value.lower(),
        prepare=prepare,
    )


def sync_principals(
    store: MirrorStore,
    directory: DirectoryAdapter,
    kind: PrincipalKind,
    namespaces: Iterable[str | None],
    *,
    first_run: bool = False,
    max_parallel: int = 1,
) -> SyncResult:
    """
    Converge users or groups of each namespace onto the remote listings.

    Each namespace is an independent scope with its own sequential
    pagination; up to `max_parallel` scopes run concurrently. Finding no
    principal at all is tolerated with a warning.
    """
    entity = f"{kind.value.lower()}s"

    def body() -> tuple[Outcome, _Tally]:
        if max_parallel < 1:
            raise MissingArgument(f"max_parallel must be >= 1, got {max_parallel}.")
        arns = {n.name: n.arn for n in store.list(EntityType.NAMESPACE)}
        scopes: list[str] = []
        for ns in namespaces:
            if not ns:
                logger.warning("Namespace is undefined. Skipping.")
                continue
            scopes.append(ns)

        run = partial(_sync_principal_scope, store, directory, kind)
        total = _Tally()
        if max_parallel == 1 or len(scopes) <= 1:
            for ns in scopes:
                total.absorb(run(ns, arns.get(ns), first_run))
        else:
            with ThreadPoolExecutor(max_workers=max_parallel) as pool:
                futures = [pool.submit(run, ns, arns.get(ns), first_run) for ns in scopes]
                # collected in namespace order: the first failing scope is reported
                for f in futures:
                    total.absorb(f.result())

        _refresh_account_counters(store)

        if total.seen == 0:
            logger.warning("No QuickSight %s found", entity)
            return Outcome.success(f"No QuickSight {entity} found."), total
        return Outcome.success(f"QuickSight {entity} synchronized: {total.seen} found."), total

    return _run_pass(entity, body)


def _dataset_record(
    adapter: DatasetsAdapter, remote: Dataset, existing: Dataset | None
) -> Dataset:
    """Describe a listed dataset and merge it with the locally owned RLS fields."""
    try:
        described = adapter.describe_dataset_fields(remote.id)
    except RemoteError as exc:
        if exc.kind in (ErrorKind.THROTTLED, ErrorKind.TRANSIENT, ErrorKind.TIMED_OUT):
            raise
        logger.warning("Dataset '%s' cannot be described: %s", remote.id, exc.message)
        described = None

    if described is None:
        record = replace(remote, api_manageable=False, fields=(), spice_capacity_bytes=0)
    else:
        fields, spice_bytes = described
        record = replace(remote, api_manageable=True, fields=fields, spice_capacity_bytes=spice_bytes)

    record = replace(record, tool_created=remote.id.startswith(RULE_DATASET_PREFIX))
    if existing is not None:
        # rls_enabled follows the remote pointer, the rest is pipeline-owned
        record = replace(
            record,
            rls_tool_managed=existing.rls_tool_managed,
            rls_dataset_id=existing.rls_dataset_id or record.rls_dataset_id,
            glue_key=existing.glue_key,
            tool_created=existing.tool_created or record.tool_created,
        )
    return record


def sync_datasets(
    store: MirrorStore,
    adapter: DatasetsAdapter,
    region: str,
    *,
    first_run: bool = False,
) -> SyncResult:
    """
    Converge the datasets of one region onto the remote listing.

    Every listed dataset is described for its output fields and SPICE usage;
    datasets the API cannot manage are kept with `api_manageable=False`.
    RLS bookkeeping fields of existing records are preserved. The region's
    dataset counters are refreshed when the region is managed.
    """

    def body() -> tuple[Outcome, _Tally]:
        pending = _snapshot(store, EntityType.DATASET, first_run, region=region)
        tally = _converge(
            store,
            EntityType.DATASET,
            iter_pages(adapter.list_datasets, label=f"datasets in {region}"),
            pending,
            label="dataset",
            prepare=partial(_dataset_record, adapter),
        )
        counters = update_region_dataset_counters(store, region)
        if not counters.ok and counters.kind is not ErrorKind.NOT_FOUND:
            return counters, tally
        if tally.seen == 0:
            logger.warning("No datasets found in %s", region)
            return Outcome.success(f"No datasets found in {region}."), tally
        return Outcome.success(f"Datasets in {region} synchronized: {tally.seen} found."), tally

    return _run_pass(f"datasets ({region})", body)


def update_region_dataset_counters(store: MirrorStore, region: str) -> Outcome:
    """Recompute dataset counters of a ManagedRegion from the mirror."""
    managed: ManagedRegion | None = store.get(EntityType.MANAGED_REGION, region)
    if managed is None:
        return Outcome.failure(
            f"[RegionNotManaged] Region '{region}' is not managed.",
            kind=ErrorKind.NOT_FOUND,
            error_type="RegionNotManaged",
        )
    datasets = store.list(EntityType.DATASET, region=region)
    updated = replace(
        managed,
        datasets_count=len(datasets),
        not_manageable_datasets_count=sum(1 for d in datasets if not d.api_manageable),
        tool_created_count=sum(1 for d in datasets if d.tool_created),
    )
    if updated != managed and store.update(EntityType.MANAGED_REGION, updated) != region:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to update dataset counters of region '{region}'.",
            error_type="StoreWriteFailed",
        )
    return Outcome.success(f"Dataset counters of region '{region}' updated.")


def _refresh_account_counters(store: MirrorStore) -> None:
    """Persist account counters after a pass; a missing account record is tolerated."""
    counters = update_account_counters(store)
    if not counters.ok and counters.kind is not ErrorKind.NOT_FOUND:
        raise SyncAborted(counters)


def update_account_counters(store: MirrorStore) -> Outcome:
    """Persist namespace/group/user counts on the AccountDetails record."""
    accounts: list[AccountDetails] = store.list(EntityType.ACCOUNT)
    if not accounts:
        return Outcome.failure(
            "[AccountNotInitialized] Account details not found. Run account initialization first.",
            kind=ErrorKind.NOT_FOUND,
            error_type="AccountNotInitialized",
        )
    if len(accounts) > 1:
        return Outcome.failure(
            f"[AccountNotUnique] Expected one account record, found {len(accounts)}.",
            kind=ErrorKind.CONFLICT,
            error_type="AccountNotUnique",
        )
    account = accounts[0]
    updated = replace(
        account,
        namespaces_count=len(store.list(EntityType.NAMESPACE)),
        groups_count=len(store.list(EntityType.PRINCIPAL, kind=PrincipalKind.GROUP)),
        users_count=len(store.list(EntityType.PRINCIPAL, kind=PrincipalKind.USER)),
    )
    if updated != account and store.update(EntityType.ACCOUNT, updated) != account.key:
        return Outcome.failure(
            "[StoreWriteFailed] Failed to update account details.",
            error_type="StoreWriteFailed",
        )
    logger.info(
        "Account counters: %d namespaces, %d groups, %d users",
        updated.namespaces_count,
        updated.groups_count,
        updated.users_count,
    )
    return Outcome.success("Account details updated.")


def set_account(
    store: MirrorStore,
    account_id: str,
    management_region: str,
    *,
    check_access: Callable[[], None] | None = None,
) -> Outcome:
    """
    Create or update the single AccountDetails record.

    Any record for a different account id is removed so that at most one
    record exists. Existing counters are kept on update.
    """
    if not account_id or not management_region:
        return Outcome.failure(
            "[ReferenceError] Account initialization: missing account id or management region.",
            kind=ErrorKind.VALIDATION,
            error_type="ReferenceError",
        )
    if check_access is not None:
        try:
            check_access()
        except RemoteError as exc:
            return Outcome.from_error(
                exc, context=f"Validating QuickSight management region '{management_region}'"
            )

    for other in store.list(EntityType.ACCOUNT):
        if other.account_id != account_id:
            store.delete(EntityType.ACCOUNT, other.key)

    existing: AccountDetails | None = store.get(EntityType.ACCOUNT, account_id)
    if existing is None:
        written = store.create(EntityType.ACCOUNT, AccountDetails(account_id, management_region))
    else:
        written = store.update(EntityType.ACCOUNT, replace(existing, management_region=management_region))
    if written != account_id:
        return Outcome.failure(
            "[StoreWriteFailed] Failed to save account details.",
            error_type="StoreWriteFailed",
        )
    return Outcome.success(f"Account {account_id} initialized with management region {management_region}.")


def sync_all(
    store: MirrorStore,
    directory: DirectoryAdapter,
    *,
    first_run: bool = False,
    max_parallel: int = 1,
) -> list[SyncResult]:
    """
    Run namespaces -> groups -> users passes, then refresh account counters.

    Stops at the first failing pass; the returned list holds every pass that
    ran (the counters update is reported as an "account" result).
    """
    results: list[SyncResult] = []

    namespaces = sync_namespaces(store, directory, first_run=first_run)
    results.append(namespaces)
    if not namespaces.ok:
        return results

    for kind in (PrincipalKind.GROUP, PrincipalKind.USER):
        res = sync_principals(
            store,
            directory,
            kind,
            namespaces.names,
            first_run=first_run,
            max_parallel=max_parallel,
        )
        results.append(res)
        if not res.ok:
            return results

    results.append(SyncResult(entity="account", outcome=update_account_counters(store)))
    return results
