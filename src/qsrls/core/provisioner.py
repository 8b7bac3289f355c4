"""Provisioning of the per-region infrastructure used by the publish pipeline.

A ManagedRegion owns three resources: an S3 bucket for staged rule tables, a
Glue database for their catalog tables and an Athena data source for the rule
datasets. `ensure_region` creates each missing one exactly once, strictly in
that order, persisting every name as soon as it exists so an interrupted run
resumes from the first unset field.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Protocol

from qsrls.core.errors import ErrorKind, Outcome, RemoteError
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import UNSET, EntityType, ManagedRegion
from qsrls.core.reconcile import update_region_dataset_counters

logger = logging.getLogger(__name__)


class BucketCreator(Protocol):
    def create_bucket(self, prefix: str) -> str:
        ...


class DatabaseCreator(Protocol):
    def create_database(self, prefix: str) -> str:
        ...


class DataSourceCreator(Protocol):
    def create_data_source(self, prefix: str) -> str:
        ...


class CapacityReader(Protocol):
    def spice_capacity(self) -> tuple[float, float]:
        ...


def _persist(store: MirrorStore, region: ManagedRegion) -> None:
    if store.update(EntityType.MANAGED_REGION, region) != region.key:
        raise RuntimeError(f"Failed to save managed region '{region.key}'")


def ensure_region(
    store: MirrorStore,
    region_name: str,
    *,
    storage: BucketCreator,
    catalog: DatabaseCreator,
    quicksight: DataSourceCreator,
    prefix: str,
) -> Outcome:
    """
    Ensure a ManagedRegion record exists with bucket, database and data source.

    Fields already holding a real name are never re-created. The first failing
    creation aborts the sequence with its mapped outcome; fields provisioned
    before it are kept. A permission failure on the very first resource (the
    bucket) removes the region record again, since nothing exists for it.

    Args:
        store: Local mirror store.
        region_name: AWS region to provision.
        storage: S3 adapter for the region.
        catalog: Glue adapter for the region.
        quicksight: QuickSight adapter for the region.
        prefix: Name prefix of the generated resources.
    """
    if not region_name:
        return Outcome.failure(
            "[ReferenceError] Region setup: missing 'region'.",
            kind=ErrorKind.VALIDATION,
            error_type="ReferenceError",
        )

    region: ManagedRegion | None = store.get(EntityType.MANAGED_REGION, region_name)
    created_record = False
    if region is None:
        region = ManagedRegion(region_name=region_name)
        if store.create(EntityType.MANAGED_REGION, region) != region_name:
            return Outcome.failure(
                f"[StoreWriteFailed] Region setup: failed to create record for '{region_name}'.",
                error_type="StoreWriteFailed",
            )
        created_record = True
        logger.info("Managed region '%s' created", region_name)

    steps: list[tuple[str, str, Callable[[str], str], str]] = [
        ("bucket_name", "S3 bucket", storage.create_bucket, "Creating S3 bucket"),
        ("catalog_db_name", "Glue database", catalog.create_database, "Creating Glue database"),
        ("data_source_name", "QuickSight data source", quicksight.create_data_source, "Creating QuickSight data source"),
    ]

    for field_name, label, create, context in steps:
        current = getattr(region, field_name)
        if current != UNSET:
            logger.info("%s already provisioned in %s: %s", label, region_name, current)
            continue
        try:
            name = create(prefix)
        except RemoteError as exc:
            logger.error("%s failed in %s: %s", context, region_name, exc.message)
            if field_name == "bucket_name" and exc.kind is ErrorKind.PERMISSION_DENIED:
                store.delete(EntityType.MANAGED_REGION, region_name)
                logger.warning("Managed region '%s' removed: bucket creation was denied", region_name)
            return Outcome.from_error(exc, context=f"{context} in {region_name}")

        region = replace(region, **{field_name: name})
        try:
            _persist(store, region)
        except RuntimeError as exc:
            return Outcome.from_error(exc, context=f"{context} in {region_name}")
        logger.info("%s created in %s: %s", label, region_name, name)

    if created_record:
        return Outcome.success(f"Region {region_name} provisioned.", status_code=201)
    return Outcome.success(f"Region {region_name} provisioned.")


def refresh_region(
    store: MirrorStore,
    region_name: str,
    *,
    quicksight: CapacityReader,
) -> Outcome:
    """Refresh dataset counters and SPICE capacity of a managed region."""
    counters = update_region_dataset_counters(store, region_name)
    if not counters.ok:
        return counters

    try:
        available, used = quicksight.spice_capacity()
    except RemoteError as exc:
        return Outcome.from_error(exc, context=f"Reading SPICE capacity of {region_name}")

    region: ManagedRegion = store.get(EntityType.MANAGED_REGION, region_name)
    updated = replace(region, available_capacity_gb=available, used_capacity_gb=used)
    if updated != region and store.update(EntityType.MANAGED_REGION, updated) != region_name:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to update SPICE capacity of region '{region_name}'.",
            error_type="StoreWriteFailed",
        )
    return Outcome.success(
        f"Region {region_name}: {region.datasets_count} datasets, "
        f"SPICE {used:.2f}/{available:.2f} GB used."
    )


def forget_region(store: MirrorStore, region_name: str) -> Outcome:
    """
    Delete the local ManagedRegion record.

    Remote resources (bucket, database, data source) are left untouched.
    """
    if store.delete(EntityType.MANAGED_REGION, region_name) != region_name:
        return Outcome.failure(
            f"[RegionNotManaged] Region '{region_name}' is not managed.",
            kind=ErrorKind.NOT_FOUND,
            error_type="RegionNotManaged",
        )
    logger.info("Managed region '%s' forgotten locally", region_name)
    return Outcome.success(f"Region {region_name} removed from the local mirror.")
