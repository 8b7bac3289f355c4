"""Removal of a published RLS configuration.

Undoes what the publish pipeline created for one target dataset: the RLS
pointer, the rule dataset, the Glue table and the staged objects. Deletes of
resources that are already gone count as done, so a partial removal can be
re-run. Mirrored permissions are kept so the rules can be published again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Protocol

from qsrls.core.errors import ErrorKind, Outcome, RemoteError
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import UNSET, Dataset, EntityType, ManagedRegion, RlsStatus
from qsrls.core.pipeline import GLUE_TABLE_PREFIX, RULES_FOLDER, dataset_update_spec, ingestion_of
from qsrls.core.poller import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL, wait_for_ingestion
from qsrls.core.reconcile import update_region_dataset_counters

logger = logging.getLogger(__name__)


class RemovalStorage(Protocol):
    def list_objects(self, bucket: str, prefix: str) -> list[str]:
        ...

    def delete_object(self, bucket: str, key: str) -> None:
        ...


class RemovalCatalog(Protocol):
    def delete_table(self, database: str, name: str) -> None:
        ...


class RemovalQuickSight(Protocol):
    def describe_dataset(self, dataset_id: str) -> dict[str, Any]:
        ...

    def update_dataset(self, **spec: Any) -> dict[str, Any]:
        ...

    def delete_dataset(self, dataset_id: str) -> None:
        ...

    def describe_ingestion(self, dataset_id: str, ingestion_id: str) -> dict[str, Any]:
        ...


def _ignore_missing(call: Callable[[], Any], what: str) -> bool:
    """Run a delete-class call; return False when the resource was already gone."""
    try:
        call()
    except RemoteError as exc:
        if not exc.is_not_found:
            raise
        logger.info("%s already deleted", what)
        return False
    logger.info("%s deleted", what)
    return True


def _detach(
    quicksight: RemovalQuickSight,
    dataset_id: str,
    *,
    poll_interval: float,
    max_attempts: int,
    sleep: Callable[[float], None],
) -> Outcome:
    try:
        dataset = quicksight.describe_dataset(dataset_id)
    except RemoteError as exc:
        if exc.is_not_found:
            logger.warning("Dataset %s no longer exists; nothing to detach", dataset_id)
            return Outcome.success(f"Dataset '{dataset_id}' no longer exists.")
        raise
    if not dataset.get("RowLevelPermissionDataSet"):
        return Outcome.success(f"Dataset '{dataset_id}' has no RLS dataset attached.")

    resp = quicksight.update_dataset(**dataset_update_spec(dataset, None))
    ingestion_id = ingestion_of(resp, "Detaching RLS dataset")
    if ingestion_id:
        return wait_for_ingestion(
            quicksight,
            dataset_id,
            ingestion_id,
            poll_interval=poll_interval,
            max_attempts=max_attempts,
            sleep=sleep,
        )
    return Outcome.success(f"RLS dataset detached from '{dataset_id}'.")


def remove_rls(
    store: MirrorStore,
    dataset_arn: str,
    *,
    storage: RemovalStorage,
    catalog: RemovalCatalog,
    quicksight: RemovalQuickSight,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> Outcome:
    """
    Detach and delete the tool-managed RLS of a dataset.

    Steps run in order and the first failure aborts: detach the pointer (and
    wait for the resulting ingestion), delete the rule dataset, the Glue table
    and the staged objects, then reset the local records.
    """
    target: Dataset | None = store.get(EntityType.DATASET, dataset_arn)
    if target is None:
        return Outcome.failure(
            f"[NotFound] Dataset '{dataset_arn}' is not mirrored.",
            kind=ErrorKind.NOT_FOUND,
            error_type="NotFound",
        )
    if not target.rls_tool_managed or not target.rls_dataset_id:
        return Outcome.failure(
            f"[ValidationException] RLS of dataset '{target.name}' is not managed by qsrls.",
            kind=ErrorKind.VALIDATION,
            error_type="ValidationException",
        )
    region: ManagedRegion | None = store.get(EntityType.MANAGED_REGION, target.region)
    if region is None:
        return Outcome.failure(
            f"[RegionNotManaged] Region '{target.region}' is not managed.",
            kind=ErrorKind.NOT_FOUND,
            error_type="RegionNotManaged",
        )

    context = f"Detaching RLS dataset from '{target.id}'"
    try:
        detached = _detach(
            quicksight, target.id, poll_interval=poll_interval, max_attempts=max_attempts, sleep=sleep
        )
        if not detached.ok:
            return detached

        context = f"Deleting RLS dataset '{target.rls_dataset_id}'"
        _ignore_missing(lambda: quicksight.delete_dataset(target.rls_dataset_id), f"RLS dataset {target.rls_dataset_id}")

        glue_key = target.id
        if region.catalog_db_name != UNSET:
            table = f"{GLUE_TABLE_PREFIX}{glue_key}"
            context = f"Deleting Glue table '{table}'"
            _ignore_missing(lambda: catalog.delete_table(region.catalog_db_name, table), f"Glue table {table}")

        if region.bucket_name != UNSET:
            prefix = f"{RULES_FOLDER}/{glue_key}/"
            context = f"Deleting staged objects under s3://{region.bucket_name}/{prefix}"
            for key in storage.list_objects(region.bucket_name, prefix):
                _ignore_missing(lambda k=key: storage.delete_object(region.bucket_name, k), f"Object {key}")
    except RemoteError as exc:
        logger.error("%s failed: %s", context, exc.message)
        return Outcome.from_error(exc, context=context)

    for rule in store.list(EntityType.DATASET, id=target.rls_dataset_id, region=target.region):
        store.delete(EntityType.DATASET, rule.key)
    reset = replace(target, rls_enabled=RlsStatus.DISABLED, rls_tool_managed=False, rls_dataset_id=None)
    if store.update(EntityType.DATASET, reset) != target.arn:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to reset RLS state of dataset '{target.id}'.",
            error_type="StoreWriteFailed",
        )
    counters = update_region_dataset_counters(store, target.region)
    if not counters.ok and counters.kind is not ErrorKind.NOT_FOUND:
        logger.warning("RLS of %s removed but region counters not saved: %s", target.id, counters.message)
        return counters
    return Outcome.success(f"RLS removed from dataset '{target.name}'.")
