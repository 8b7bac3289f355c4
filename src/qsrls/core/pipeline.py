"""RLS publish pipeline.

Publishing a rule table runs a fixed sequence of stages:

    0  VALIDATE_RESOURCES  bucket, Glue database and data source exist
    1  STAGE_TABLE         rule table written to S3
    2  SYNC_SCHEMA         Glue table created or updated over the staged folder
    3  RULE_DATASET        QuickSight rule dataset created or updated
    4  ATTACH              rule dataset attached to the target dataset
    99 POLL_INGESTION      wait for the ingestion started by stage 3 or 4

Each stage is a plain function returning a `StageResult`; `advance` is the
transition function that folds a result into the next `PublishState`. Every
stage is idempotent, so a failed run is resumed by running the pipeline again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Callable, Protocol

from qsrls.core.errors import ErrorKind, MissingArgument, Outcome, RemoteError, require
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import UNSET, Dataset, EntityType, ManagedRegion, RlsStatus
from qsrls.core.poller import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL, wait_for_ingestion
from qsrls.core.reconcile import RULE_DATASET_PREFIX, update_region_dataset_counters
from qsrls.core.rules import dataset_rules, header_of, render_rule_table, sanitize_columns

logger = logging.getLogger(__name__)

RULES_FOLDER = "RLS-Datasets"
GLUE_TABLE_PREFIX = "qs-rls-"
RULE_TABLE_ID = "qs-rls-rules"

# definition fields copied verbatim when a dataset is updated
_PRESERVED_FIELDS = (
    "ColumnGroups",
    "FieldFolders",
    "RowLevelPermissionTagConfiguration",
    "ColumnLevelPermissionRules",
    "DataSetUsageConfiguration",
    "DatasetParameters",
    "PerformanceConfiguration",
)


class Stage(IntEnum):
    FAILED = -1
    VALIDATE_RESOURCES = 0
    STAGE_TABLE = 1
    SYNC_SCHEMA = 2
    RULE_DATASET = 3
    ATTACH = 4
    POLL_INGESTION = 99
    DONE = 100

    @property
    def terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED)

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    Stage.FAILED: "Failed",
    Stage.VALIDATE_RESOURCES: "Validating resources",
    Stage.STAGE_TABLE: "Staging rule table in S3",
    Stage.SYNC_SCHEMA: "Syncing Glue table",
    Stage.RULE_DATASET: "Creating or updating RLS dataset",
    Stage.ATTACH: "Attaching RLS dataset",
    Stage.POLL_INGESTION: "Waiting for ingestion",
    Stage.DONE: "Done",
}


class PublishStorage(Protocol):
    def head_bucket(self, bucket: str) -> None:
        ...

    def put_object(self, bucket: str, key: str, content: str) -> None:
        ...


class PublishCatalog(Protocol):
    def get_database(self, name: str) -> dict[str, Any]:
        ...

    def get_table(self, database: str, name: str) -> dict[str, Any]:
        ...

    def create_table(self, database: str, table_input: dict[str, Any]) -> None:
        ...

    def update_table(self, database: str, table_input: dict[str, Any]) -> None:
        ...


class PublishQuickSight(Protocol):
    def describe_data_source(self, data_source_id: str) -> dict[str, Any]:
        ...

    def data_source_arn(self, data_source_id: str) -> str:
        ...

    def describe_dataset(self, dataset_id: str) -> dict[str, Any]:
        ...

    def create_dataset(self, **spec: Any) -> dict[str, Any]:
        ...

    def update_dataset(self, **spec: Any) -> dict[str, Any]:
        ...

    def describe_ingestion(self, dataset_id: str, ingestion_id: str) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class PublishServices:
    """Remote collaborators of one region plus the ingestion polling policy."""

    storage: PublishStorage
    catalog: PublishCatalog
    quicksight: PublishQuickSight
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    sleep: Callable[[float], None] = time.sleep


@dataclass(frozen=True)
class PublishRequest:
    """
    Everything the stages need to publish one dataset's rule table.

    Attributes:
        region: Region of the target dataset.
        dataset_id: Id of the target dataset.
        rule_table: Rendered rule table (CSV with header).
        bucket: Managed region bucket.
        catalog_db: Managed region Glue database.
        data_source: Managed region QuickSight data source id.
        rls_dataset_arn: Arn of a previously published rule dataset, if any.
    """

    region: str
    dataset_id: str
    rule_table: str
    bucket: str
    catalog_db: str
    data_source: str
    rls_dataset_arn: str | None = None

    @property
    def rule_dataset_id(self) -> str:
        return f"{RULE_DATASET_PREFIX}{self.dataset_id}"

    @property
    def object_key(self) -> str:
        return f"{RULES_FOLDER}/{self.dataset_id}/{self.rule_dataset_id}.csv"

    @property
    def table_name(self) -> str:
        return f"{GLUE_TABLE_PREFIX}{self.dataset_id}"

    @property
    def table_location(self) -> str:
        return f"s3://{self.bucket}/{RULES_FOLDER}/{self.dataset_id}/"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage plus whatever it carries forward."""

    outcome: Outcome
    columns: tuple[str, ...] | None = None
    rls_dataset_arn: str | None = None
    ingestion_id: str | None = None


@dataclass(frozen=True)
class PublishState:
    """
    Intermediate context held by the caller between stages.

    Attributes:
        stage: Next stage to run (DONE/FAILED when terminal).
        columns: Sanitized rule table columns (from stage 1).
        rls_dataset_arn: Rule dataset arn (from the request or stage 3).
        ingestion_dataset_id: Dataset whose ingestion is being awaited.
        ingestion_id: Ingestion to await in stage 99.
        resume: Stage to continue with once the ingestion completed.
        outcome: Outcome of the last stage run.
        history: (stage, outcome) of every stage run so far.
    """

    stage: Stage = Stage.VALIDATE_RESOURCES
    columns: tuple[str, ...] = ()
    rls_dataset_arn: str | None = None
    ingestion_dataset_id: str | None = None
    ingestion_id: str | None = None
    resume: Stage | None = None
    outcome: Outcome | None = None
    history: tuple[tuple[Stage, Outcome], ...] = field(default_factory=tuple)

    @property
    def done(self) -> bool:
        return self.stage is Stage.DONE

    @property
    def failed(self) -> bool:
        return self.stage is Stage.FAILED


def glue_table_input(request: PublishRequest, columns: tuple[str, ...] | list[str]) -> dict[str, Any]:
    """Build the Glue TableInput of a rule table."""
    return {
        "Name": request.table_name,
        "Description": f"QS-RLS Table created for DataSetId: {request.dataset_id}",
        "StorageDescriptor": {
            "Columns": [{"Name": c, "Type": "STRING"} for c in columns],
            "Location": request.table_location,
            "InputFormat": "org.apache.hadoop.mapred.TextInputFormat",
            "OutputFormat": "org.apache.hadoop.hive.ql.io.HiveIgnoreKeyTextOutputFormat",
            "SerdeInfo": {
                "SerializationLibrary": "org.apache.hadoop.hive.serde2.OpenCSVSerde",
                "Parameters": {
                    "separatorChar": ",",
                    "quoteChar": '"',
                    "skip.header.line.count": "1",
                },
            },
        },
    }


def rule_dataset_spec(
    request: PublishRequest, columns: tuple[str, ...] | list[str], data_source_arn: str
) -> dict[str, Any]:
    """Build the create/update arguments of the rule dataset."""
    return {
        "DataSetId": request.rule_dataset_id,
        "Name": request.rule_dataset_id,
        "ImportMode": "SPICE",
        "PhysicalTableMap": {
            RULE_TABLE_ID: {
                "RelationalTable": {
                    "DataSourceArn": data_source_arn,
                    "Catalog": "AwsDataCatalog",
                    "Schema": request.catalog_db,
                    "Name": request.table_name,
                    "InputColumns": [{"Name": c, "Type": "STRING"} for c in columns],
                }
            }
        },
    }


def dataset_update_spec(dataset: dict[str, Any], rls_pointer: dict[str, Any] | None) -> dict[str, Any]:
    """
    Return UpdateDataSet arguments reproducing a described dataset.

    Every definition field is copied verbatim; only the RLS pointer is set to
    `rls_pointer` (or removed when None).
    """
    spec: dict[str, Any] = {
        "DataSetId": dataset["DataSetId"],
        "Name": dataset["Name"],
        "PhysicalTableMap": dataset["PhysicalTableMap"],
        "ImportMode": dataset["ImportMode"],
    }
    if dataset.get("LogicalTableMap"):
        spec["LogicalTableMap"] = dataset["LogicalTableMap"]
    for name in _PRESERVED_FIELDS:
        if dataset.get(name):
            spec[name] = dataset[name]
    if rls_pointer is not None:
        spec["RowLevelPermissionDataSet"] = rls_pointer
    return spec


def rls_pointer(rls_dataset_arn: str) -> dict[str, str]:
    return {
        "Arn": rls_dataset_arn,
        "PermissionPolicy": "GRANT_ACCESS",
        "Status": "ENABLED",
        "FormatVersion": "VERSION_2",
    }


def ingestion_of(resp: dict[str, Any], context: str) -> str | None:
    """
    Return the ingestion id of an async (201) dataset response.

    A synchronous (200) response returns None.
    """
    if resp.get("Status") == 201:
        ingestion_id = resp.get("IngestionId")
        if not ingestion_id:
            raise RemoteError(f"{context}: No IngestionId found.", error_type="QuickSightError")
        return ingestion_id
    return None


def validate_resources(request: PublishRequest, services: PublishServices) -> StageResult:
    """Stage 0: confirm the managed region's resources exist."""
    require(
        region=request.region,
        bucket=None if request.bucket == UNSET else request.bucket,
        catalog_db=None if request.catalog_db == UNSET else request.catalog_db,
        data_source=None if request.data_source == UNSET else request.data_source,
    )
    checks: list[tuple[str, Callable[[], Any]]] = [
        (f"S3 bucket '{request.bucket}'", lambda: services.storage.head_bucket(request.bucket)),
        (f"Glue database '{request.catalog_db}'", lambda: services.catalog.get_database(request.catalog_db)),
        (
            f"QuickSight data source '{request.data_source}'",
            lambda: services.quicksight.describe_data_source(request.data_source),
        ),
    ]
    for name, check in checks:
        try:
            check()
        except RemoteError as exc:
            logger.error("%s is not usable: %s", name, exc.message)
            return StageResult(Outcome.from_error(exc, context=f"Validating {name}"))
    return StageResult(Outcome.success(f"Resources of {request.region} validated."))


def stage_table(request: PublishRequest, services: PublishServices) -> StageResult:
    """Stage 1: write the rule table to its fixed object key."""
    require(dataset_id=request.dataset_id, rule_table=request.rule_table)
    columns = sanitize_columns(header_of(request.rule_table))
    if not columns:
        return StageResult(
            Outcome.failure(
                "[NoValidCSVHeaders] Staging rule table: no valid CSV headers found.",
                kind=ErrorKind.VALIDATION,
                error_type="NoValidCSVHeaders",
            )
        )
    services.storage.put_object(request.bucket, request.object_key, request.rule_table)
    logger.info("Rule table staged at s3://%s/%s", request.bucket, request.object_key)
    return StageResult(
        Outcome.success(f"Rule table staged at s3://{request.bucket}/{request.object_key}."),
        columns=tuple(columns),
    )


def sync_schema(request: PublishRequest, state: PublishState, services: PublishServices) -> StageResult:
    """Stage 2: get-or-create the Glue table, updating an existing one in place."""
    require(columns=state.columns, catalog_db=request.catalog_db)
    table_input = glue_table_input(request, state.columns)
    try:
        services.catalog.get_table(request.catalog_db, request.table_name)
    except RemoteError as exc:
        if not exc.is_not_found:
            raise
        services.catalog.create_table(request.catalog_db, table_input)
        logger.info("Glue table %s.%s created", request.catalog_db, request.table_name)
        return StageResult(Outcome.success(f"Glue table '{request.table_name}' created.", status_code=201))

    services.catalog.update_table(request.catalog_db, table_input)
    logger.info("Glue table %s.%s updated", request.catalog_db, request.table_name)
    return StageResult(Outcome.success(f"Glue table '{request.table_name}' updated."))


def publish_rule_dataset(request: PublishRequest, state: PublishState, services: PublishServices) -> StageResult:
    """
    Stage 3: create the rule dataset, or update it when it already exists.

    A stale arn (update answers NOT_FOUND) falls back to creation, and a
    create answering CONFLICT falls back to an update.
    """
    require(columns=state.columns, data_source=request.data_source)
    qs = services.quicksight
    spec = rule_dataset_spec(request, state.columns, qs.data_source_arn(request.data_source))

    def create() -> dict[str, Any]:
        logger.info("Creating RLS dataset %s", request.rule_dataset_id)
        return qs.create_dataset(**spec, UseAs="RLS_RULES")

    def update() -> dict[str, Any]:
        logger.info("Updating RLS dataset %s", request.rule_dataset_id)
        return qs.update_dataset(**spec)

    if state.rls_dataset_arn:
        try:
            resp = update()
        except RemoteError as exc:
            if not exc.is_not_found:
                raise
            logger.warning("RLS dataset %s no longer exists; creating it", state.rls_dataset_arn)
            resp = create()
    else:
        try:
            resp = create()
        except RemoteError as exc:
            if exc.kind is not ErrorKind.CONFLICT:
                raise
            logger.warning("RLS dataset %s already exists; updating it", request.rule_dataset_id)
            resp = update()

    arn = resp.get("Arn")
    if not arn:
        raise RemoteError("RLS dataset response carries no Arn.", error_type="QuickSightError")
    ingestion_id = ingestion_of(resp, "Creating or updating RLS dataset")
    return StageResult(
        Outcome.success(f"RLS dataset '{request.rule_dataset_id}' published.", status_code=201 if ingestion_id else 200),
        rls_dataset_arn=arn,
        ingestion_id=ingestion_id,
    )


def attach_rule_dataset(request: PublishRequest, state: PublishState, services: PublishServices) -> StageResult:
    """
    Stage 4: point the target dataset's RLS at the rule dataset.

    When the pointer is already in place and the rule dataset still exists,
    nothing is updated.
    """
    require(dataset_id=request.dataset_id, rls_dataset_arn=state.rls_dataset_arn)
    qs = services.quicksight
    target = qs.describe_dataset(request.dataset_id)
    current = (target.get("RowLevelPermissionDataSet") or {}).get("Arn")

    if current and current == state.rls_dataset_arn:
        try:
            qs.describe_dataset(current.rsplit("/", 1)[-1])
        except RemoteError as exc:
            if not exc.is_not_found:
                raise
            logger.info("RLS dataset %s is attached but missing; re-attaching", current)
        else:
            logger.info("Dataset %s already secured by %s", request.dataset_id, current)
            return StageResult(Outcome.success(f"RLS of dataset '{request.dataset_id}' already set."))

    resp = qs.update_dataset(**dataset_update_spec(target, rls_pointer(state.rls_dataset_arn)))
    ingestion_id = ingestion_of(resp, "Attaching RLS dataset")
    logger.info("Dataset %s secured by %s", request.dataset_id, state.rls_dataset_arn)
    return StageResult(
        Outcome.success(f"RLS dataset attached to '{request.dataset_id}'.", status_code=201 if ingestion_id else 200),
        ingestion_id=ingestion_id,
    )


def poll_ingestion(state: PublishState, services: PublishServices) -> StageResult:
    """Stage 99: wait until the pending ingestion is terminal."""
    require(ingestion_dataset_id=state.ingestion_dataset_id, ingestion_id=state.ingestion_id)
    return StageResult(
        wait_for_ingestion(
            services.quicksight,
            state.ingestion_dataset_id,
            state.ingestion_id,
            poll_interval=services.poll_interval,
            max_attempts=services.max_attempts,
            sleep=services.sleep,
        )
    )


def run_stage(request: PublishRequest, state: PublishState, services: PublishServices) -> StageResult:
    """Run the current stage; anything raised becomes a failed StageResult."""
    stage = state.stage
    try:
        if stage is Stage.VALIDATE_RESOURCES:
            return validate_resources(request, services)
        if stage is Stage.STAGE_TABLE:
            return stage_table(request, services)
        if stage is Stage.SYNC_SCHEMA:
            return sync_schema(request, state, services)
        if stage is Stage.RULE_DATASET:
            return publish_rule_dataset(request, state, services)
        if stage is Stage.ATTACH:
            return attach_rule_dataset(request, state, services)
        if stage is Stage.POLL_INGESTION:
            return poll_ingestion(state, services)
    except (RemoteError, MissingArgument) as exc:
        logger.error("Stage %d (%s) failed: %s", stage, stage.label, exc)
        return StageResult(Outcome.from_error(exc, context=f"Stage {stage.value} {stage.label}"))
    except Exception as exc:  # noqa: BLE001  # stage boundary: report, never raise
        logger.exception("Stage %d (%s) crashed", stage, stage.label)
        return StageResult(Outcome.from_error(exc, context=f"Stage {stage.value} {stage.label}"))
    raise ValueError(f"Stage {stage.name} cannot be run")


def advance(request: PublishRequest, state: PublishState, result: StageResult) -> PublishState:
    """Transition function: fold a stage result into the next state."""
    stage = state.stage
    history = state.history + ((stage, result.outcome),)
    state = replace(state, outcome=result.outcome, history=history)

    if not result.outcome.ok:
        return replace(state, stage=Stage.FAILED)

    if stage is Stage.VALIDATE_RESOURCES:
        return replace(state, stage=Stage.STAGE_TABLE)
    if stage is Stage.STAGE_TABLE:
        return replace(state, stage=Stage.SYNC_SCHEMA, columns=result.columns or ())
    if stage is Stage.SYNC_SCHEMA:
        return replace(state, stage=Stage.RULE_DATASET)
    if stage is Stage.RULE_DATASET:
        state = replace(state, rls_dataset_arn=result.rls_dataset_arn)
        if result.ingestion_id:
            return replace(
                state,
                stage=Stage.POLL_INGESTION,
                ingestion_dataset_id=request.rule_dataset_id,
                ingestion_id=result.ingestion_id,
                resume=Stage.ATTACH,
            )
        return replace(state, stage=Stage.ATTACH)
    if stage is Stage.ATTACH:
        if result.ingestion_id:
            return replace(
                state,
                stage=Stage.POLL_INGESTION,
                ingestion_dataset_id=request.dataset_id,
                ingestion_id=result.ingestion_id,
                resume=Stage.DONE,
            )
        return replace(state, stage=Stage.DONE)
    if stage is Stage.POLL_INGESTION:
        return replace(
            state,
            stage=state.resume or Stage.DONE,
            ingestion_dataset_id=None,
            ingestion_id=None,
            resume=None,
        )
    raise ValueError(f"No transition from stage {stage.name}")


def run_pipeline(
    request: PublishRequest,
    services: PublishServices,
    *,
    on_stage: Callable[[Stage, Outcome], None] | None = None,
) -> PublishState:
    """
    Run every stage in order until DONE or FAILED.

    `on_stage(stage, outcome)` is called after each stage, e.g. for progress
    display.
    """
    state = PublishState(rls_dataset_arn=request.rls_dataset_arn)
    while not state.stage.terminal:
        logger.info("Stage %d: %s", state.stage, state.stage.label)
        stage = state.stage
        result = run_stage(request, state, services)
        state = advance(request, state, result)
        if on_stage:
            on_stage(stage, result.outcome)
    return state


def _failed(state: PublishState, outcome: Outcome) -> PublishState:
    return replace(state, stage=Stage.FAILED, outcome=outcome)


def record_publication(
    store: MirrorStore, target: Dataset, request: PublishRequest, state: PublishState
) -> Outcome:
    """Mark the target as tool-managed and upsert the rule dataset record."""
    rule = Dataset(
        arn=state.rls_dataset_arn,
        id=request.rule_dataset_id,
        name=request.rule_dataset_id,
        region=request.region,
        tool_created=True,
        glue_key=request.dataset_id,
        import_mode="SPICE",
        fields=state.columns,
    )
    existing: Dataset | None = store.get(EntityType.DATASET, rule.arn)
    if existing is None:
        written = store.create(EntityType.DATASET, rule)
    else:
        written = store.update(
            EntityType.DATASET,
            replace(existing, tool_created=True, glue_key=request.dataset_id, fields=state.columns),
        )
    if written != rule.arn:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to save RLS dataset '{rule.id}'.",
            error_type="StoreWriteFailed",
        )

    secured = replace(
        target,
        rls_enabled=RlsStatus.ENABLED,
        rls_tool_managed=True,
        rls_dataset_id=request.rule_dataset_id,
    )
    if store.update(EntityType.DATASET, secured) != target.arn:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to save RLS state of dataset '{target.id}'.",
            error_type="StoreWriteFailed",
        )
    counters = update_region_dataset_counters(store, request.region)
    if not counters.ok and counters.kind is not ErrorKind.NOT_FOUND:
        logger.warning("RLS of %s published but region counters not saved: %s", target.id, counters.message)
        return counters
    return Outcome.success(f"RLS of dataset '{target.name}' published.")


def rule_dataset_arn(store: MirrorStore, target: Dataset) -> str | None:
    """Return the arn of the rule dataset previously published for a target."""
    if not target.rls_dataset_id:
        return None
    for ds in store.list(EntityType.DATASET, id=target.rls_dataset_id, region=target.region):
        return ds.arn
    return None


def prepare_publication(store: MirrorStore, dataset_arn: str) -> tuple[Dataset, PublishRequest] | Outcome:
    """
    Resolve a target dataset into a PublishRequest from the mirror.

    Returns a failure Outcome when the dataset, its region or its rules are
    not usable.
    """
    target: Dataset | None = store.get(EntityType.DATASET, dataset_arn)
    if target is None:
        return Outcome.failure(
            f"[NotFound] Dataset '{dataset_arn}' is not mirrored. Sync datasets first.",
            kind=ErrorKind.NOT_FOUND,
            error_type="NotFound",
        )
    if not target.api_manageable:
        return Outcome.failure(
            f"[ValidationException] Dataset '{target.name}' cannot be managed through the API.",
            kind=ErrorKind.VALIDATION,
            error_type="ValidationException",
        )
    region: ManagedRegion | None = store.get(EntityType.MANAGED_REGION, target.region)
    if region is None or not region.provisioned:
        return Outcome.failure(
            f"[RegionNotManaged] Region '{target.region}' is not provisioned. Run region setup first.",
            kind=ErrorKind.VALIDATION,
            error_type="RegionNotManaged",
        )
    table = render_rule_table(dataset_rules(store, dataset_arn))
    if not table:
        return Outcome.failure(
            f"[NoPermissions] Dataset '{target.name}' has no permission to publish.",
            kind=ErrorKind.VALIDATION,
            error_type="NoPermissions",
        )
    return target, PublishRequest(
        region=target.region,
        dataset_id=target.id,
        rule_table=table,
        bucket=region.bucket_name,
        catalog_db=region.catalog_db_name,
        data_source=region.data_source_name,
        rls_dataset_arn=rule_dataset_arn(store, target),
    )


def publish_rls(
    store: MirrorStore,
    dataset_arn: str,
    services: PublishServices,
    *,
    on_stage: Callable[[Stage, Outcome], None] | None = None,
) -> PublishState:
    """
    Publish the mirrored permissions of a dataset and record the result.

    The returned state is DONE with a success outcome, or FAILED with the
    outcome of the stage (or bookkeeping step) that failed.
    """
    prepared = prepare_publication(store, dataset_arn)
    if isinstance(prepared, Outcome):
        return _failed(PublishState(), prepared)
    target, request = prepared

    state = run_pipeline(request, services, on_stage=on_stage)
    if not state.done:
        return state

    recorded = record_publication(store, target, request, state)
    if not recorded.ok:
        return _failed(state, recorded)
    return replace(state, outcome=recorded)
