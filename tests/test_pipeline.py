from dataclasses import replace

import pytest

from qsrls.core.adapters.mirrorstore import MemoryMirrorStore
from qsrls.core.errors import ErrorKind, Outcome, RemoteError
from qsrls.core.models import (
    Dataset,
    EntityType,
    ManagedRegion,
    Permission,
    Principal,
    PrincipalKind,
    RlsStatus,
)
from qsrls.core.pipeline import (
    PublishRequest,
    PublishServices,
    PublishState,
    Stage,
    StageResult,
    advance,
    attach_rule_dataset,
    publish_rls,
    run_pipeline,
    stage_table,
)

REGION = "eu-west-1"
TARGET_ID = "sales"
RULE_ID = f"QS_RLS_Managed_{TARGET_ID}"
ANN = "arn:aws:quicksight:us-east-1:111122223333:user/default/ann"
TABLE = f"UserARN,GroupARN,country\n{ANN},,FR"


def _arn(dataset_id: str) -> str:
    return f"arn:aws:quicksight:{REGION}:111122223333:dataset/{dataset_id}"


def _not_found(operation: str, what: str) -> RemoteError:
    return RemoteError(f"{operation}: {what} not found", error_type="ResourceNotFoundException")


class _Storage:
    def __init__(self, buckets=("bucket-1",)):
        self.buckets = set(buckets)
        self.objects: dict[tuple[str, str], str] = {}

    def head_bucket(self, bucket):
        if bucket not in self.buckets:
            raise RemoteError("HeadBucket: Not Found", error_type="404")

    def put_object(self, bucket, key, content):
        self.objects[(bucket, key)] = content

    def list_objects(self, bucket, prefix):
        return [k for (b, k) in self.objects if b == bucket and k.startswith(prefix)]

    def delete_object(self, bucket, key):
        self.objects.pop((bucket, key), None)


class _Catalog:
    def __init__(self, databases=("db-1",)):
        self.databases = set(databases)
        self.tables: dict[tuple[str, str], dict] = {}
        self.calls: list[str] = []

    def get_database(self, name):
        if name not in self.databases:
            raise RemoteError(f"GetDatabase: Database {name} not found", error_type="EntityNotFoundException")
        return {"Name": name}

    def get_table(self, database, name):
        if (database, name) not in self.tables:
            raise RemoteError(f"GetTable: Table {name} not found", error_type="EntityNotFoundException")
        return self.tables[(database, name)]

    def create_table(self, database, table_input):
        self.calls.append("create_table")
        self.tables[(database, table_input["Name"])] = table_input

    def update_table(self, database, table_input):
        self.calls.append("update_table")
        self.tables[(database, table_input["Name"])] = table_input

    def delete_table(self, database, name):
        if self.tables.pop((database, name), None) is None:
            raise RemoteError(f"DeleteTable: Table {name} not found", error_type="EntityNotFoundException")


class _QuickSight:
    """In-memory QuickSight; `async_ingestion` makes dataset writes answer 201."""

    def __init__(self, *, async_ingestion=False, ingestion_statuses=None):
        self.async_ingestion = async_ingestion
        self.ingestion_statuses = list(ingestion_statuses or [])
        self.data_sources = {"ds-1"}
        self.datasets: dict[str, dict] = {
            TARGET_ID: {
                "DataSetId": TARGET_ID,
                "Arn": _arn(TARGET_ID),
                "Name": "Sales",
                "ImportMode": "SPICE",
                "PhysicalTableMap": {"t": {"S3Source": {"DataSourceArn": "arn:src"}}},
                "LogicalTableMap": {"l": {"Alias": "sales"}},
                "ColumnGroups": [{"GeoSpatialColumnGroup": {"Name": "geo"}}],
                "OutputColumns": [{"Name": "country", "Type": "STRING"}],
            }
        }
        self.calls: list[tuple[str, str]] = []

    def _write_response(self, dataset_id):
        if self.async_ingestion:
            return {"Status": 201, "Arn": _arn(dataset_id), "IngestionId": f"ing-{len(self.calls)}"}
        return {"Status": 200, "Arn": _arn(dataset_id)}

    def describe_data_source(self, data_source_id):
        if data_source_id not in self.data_sources:
            raise _not_found("DescribeDataSource", data_source_id)
        return {"DataSourceId": data_source_id, "Status": "CREATION_SUCCESSFUL"}

    def data_source_arn(self, data_source_id):
        return f"arn:aws:quicksight:{REGION}:111122223333:datasource/{data_source_id}"

    def describe_dataset(self, dataset_id):
        self.calls.append(("describe", dataset_id))
        if dataset_id not in self.datasets:
            raise _not_found("DescribeDataSet", dataset_id)
        return dict(self.datasets[dataset_id])

    def create_dataset(self, **spec):
        dataset_id = spec["DataSetId"]
        self.calls.append(("create", dataset_id))
        if dataset_id in self.datasets:
            raise RemoteError("CreateDataSet: exists", error_type="ResourceExistsException")
        self.datasets[dataset_id] = {**spec, "Arn": _arn(dataset_id)}
        return self._write_response(dataset_id)

    def update_dataset(self, **spec):
        dataset_id = spec["DataSetId"]
        self.calls.append(("update", dataset_id))
        if dataset_id not in self.datasets:
            raise _not_found("UpdateDataSet", dataset_id)
        self.datasets[dataset_id] = {**spec, "Arn": _arn(dataset_id)}
        return self._write_response(dataset_id)

    def delete_dataset(self, dataset_id):
        self.calls.append(("delete", dataset_id))
        if self.datasets.pop(dataset_id, None) is None:
            raise _not_found("DeleteDataSet", dataset_id)

    def describe_ingestion(self, dataset_id, ingestion_id):
        self.calls.append(("ingestion", dataset_id))
        status = self.ingestion_statuses.pop(0) if self.ingestion_statuses else "COMPLETED"
        return {"IngestionId": ingestion_id, "IngestionStatus": status}


def _services(storage=None, catalog=None, quicksight=None) -> PublishServices:
    return PublishServices(
        storage=storage or _Storage(),
        catalog=catalog or _Catalog(),
        quicksight=quicksight or _QuickSight(),
        poll_interval=0,
        max_attempts=5,
        sleep=lambda _: None,
    )


def _request(**kwargs) -> PublishRequest:
    base = dict(
        region=REGION,
        dataset_id=TARGET_ID,
        rule_table=TABLE,
        bucket="bucket-1",
        catalog_db="db-1",
        data_source="ds-1",
    )
    base.update(kwargs)
    return PublishRequest(**base)


def _stages(state: PublishState) -> list[int]:
    return [stage.value for stage, _ in state.history]


def test_missing_catalog_database_stops_at_validation():
    storage = _Storage()
    state = run_pipeline(_request(), _services(storage=storage, catalog=_Catalog(databases=())))

    assert state.failed
    assert _stages(state) == [0]
    assert state.outcome.kind is ErrorKind.NOT_FOUND
    assert "Glue database 'db-1'" in state.outcome.message
    assert storage.objects == {}


def test_unprovisioned_resource_is_a_validation_failure():
    state = run_pipeline(_request(bucket="-"), _services())

    assert state.failed
    assert state.outcome.status_code == 400
    assert state.outcome.error_type == "ReferenceError"


def test_synchronous_publish_runs_every_stage_once():
    storage, catalog, qs = _Storage(), _Catalog(), _QuickSight()

    state = run_pipeline(_request(), _services(storage, catalog, qs))

    assert state.done
    assert _stages(state) == [0, 1, 2, 3, 4]
    assert storage.objects == {
        ("bucket-1", f"RLS-Datasets/{TARGET_ID}/{RULE_ID}.csv"): TABLE,
    }
    table = catalog.tables[("db-1", f"qs-rls-{TARGET_ID}")]
    assert table["StorageDescriptor"]["Location"] == f"s3://bucket-1/RLS-Datasets/{TARGET_ID}/"
    assert [c["Name"] for c in table["StorageDescriptor"]["Columns"]] == ["UserARN", "GroupARN", "country"]
    assert table["StorageDescriptor"]["SerdeInfo"]["Parameters"]["skip.header.line.count"] == "1"

    assert state.rls_dataset_arn == _arn(RULE_ID)
    target = qs.datasets[TARGET_ID]
    assert target["RowLevelPermissionDataSet"] == {
        "Arn": _arn(RULE_ID),
        "PermissionPolicy": "GRANT_ACCESS",
        "Status": "ENABLED",
        "FormatVersion": "VERSION_2",
    }
    assert target["ColumnGroups"] == [{"GeoSpatialColumnGroup": {"Name": "geo"}}]
    assert target["LogicalTableMap"] == {"l": {"Alias": "sales"}}


def test_async_writes_are_polled_before_moving_on():
    qs = _QuickSight(async_ingestion=True, ingestion_statuses=["RUNNING", "COMPLETED", "COMPLETED"])

    state = run_pipeline(_request(), _services(quicksight=qs))

    assert state.done
    assert _stages(state) == [0, 1, 2, 3, 99, 4, 99]
    ingestions = [c[1] for c in qs.calls if c[0] == "ingestion"]
    assert ingestions == [RULE_ID, RULE_ID, TARGET_ID]


def test_failed_ingestion_aborts_before_attach():
    qs = _QuickSight(async_ingestion=True, ingestion_statuses=["FAILED"])

    state = run_pipeline(_request(), _services(quicksight=qs))

    assert state.failed
    assert _stages(state) == [0, 1, 2, 3, 99]
    assert "RowLevelPermissionDataSet" not in qs.datasets[TARGET_ID]


def test_republishing_updates_instead_of_duplicating():
    storage, catalog, qs = _Storage(), _Catalog(), _QuickSight()
    services = _services(storage, catalog, qs)
    first = run_pipeline(_request(), services)
    qs.calls.clear()

    second = run_pipeline(_request(rls_dataset_arn=first.rls_dataset_arn), services)

    assert second.done
    assert second.rls_dataset_arn == first.rls_dataset_arn
    assert len(storage.objects) == 1
    assert catalog.calls == ["create_table", "update_table"]
    assert ("update", RULE_ID) in qs.calls
    assert ("create", RULE_ID) not in qs.calls
    # pointer already set and rule dataset present: target left untouched
    assert ("update", TARGET_ID) not in qs.calls


def test_stale_rule_dataset_arn_falls_back_to_create():
    qs = _QuickSight()

    state = run_pipeline(_request(rls_dataset_arn=_arn(RULE_ID)), _services(quicksight=qs))

    assert state.done
    assert ("update", RULE_ID) in qs.calls
    assert ("create", RULE_ID) in qs.calls


def test_existing_rule_dataset_without_known_arn_is_updated():
    qs = _QuickSight()
    qs.datasets[RULE_ID] = {"DataSetId": RULE_ID, "Arn": _arn(RULE_ID)}

    state = run_pipeline(_request(), _services(quicksight=qs))

    assert state.done
    assert [c for c in qs.calls if c[1] == RULE_ID][:2] == [("create", RULE_ID), ("update", RULE_ID)]


def test_attach_reattaches_when_rule_dataset_was_deleted_out_of_band():
    qs = _QuickSight()
    qs.datasets[TARGET_ID]["RowLevelPermissionDataSet"] = {"Arn": _arn(RULE_ID), "Status": "ENABLED"}
    state = PublishState(stage=Stage.ATTACH, rls_dataset_arn=_arn(RULE_ID))

    result = attach_rule_dataset(_request(), state, _services(quicksight=qs))

    assert result.outcome.ok
    assert ("describe", RULE_ID) in qs.calls
    assert ("update", TARGET_ID) in qs.calls


def test_attach_short_circuits_when_pointer_and_rule_dataset_exist():
    qs = _QuickSight()
    qs.datasets[RULE_ID] = {"DataSetId": RULE_ID, "Arn": _arn(RULE_ID)}
    qs.datasets[TARGET_ID]["RowLevelPermissionDataSet"] = {"Arn": _arn(RULE_ID), "Status": "ENABLED"}
    state = PublishState(stage=Stage.ATTACH, rls_dataset_arn=_arn(RULE_ID))

    result = attach_rule_dataset(_request(), state, _services(quicksight=qs))

    assert result.outcome.ok
    assert "already set" in result.outcome.message
    assert ("update", TARGET_ID) not in qs.calls


def test_stage_table_sanitizes_header():
    storage = _Storage()

    result = stage_table(_request(rule_table="A,,A,B\n1,2,3,4"), _services(storage=storage))

    assert result.outcome.ok
    assert result.columns == ("A", "B")


def test_stage_table_without_valid_header_fails():
    result = stage_table(_request(rule_table=",,\n1,2,3"), _services())

    assert result.outcome.error_type == "NoValidCSVHeaders"


def test_advance_routes_ingestion_through_polling():
    request = _request()
    state = PublishState(stage=Stage.RULE_DATASET, columns=("A",))

    polling = advance(
        request,
        state,
        StageResult(Outcome.success("ok", 201), rls_dataset_arn="arn:rule", ingestion_id="ing-1"),
    )
    assert (polling.stage, polling.resume, polling.ingestion_dataset_id) == (
        Stage.POLL_INGESTION,
        Stage.ATTACH,
        RULE_ID,
    )
    assert polling.rls_dataset_arn == "arn:rule"

    attaching = advance(request, polling, StageResult(Outcome.success("done")))
    assert attaching.stage is Stage.ATTACH
    assert attaching.ingestion_id is None

    failed = advance(request, attaching, StageResult(Outcome.failure("boom")))
    assert failed.failed
    assert len(failed.history) == 3


def test_advance_rejects_terminal_states():
    with pytest.raises(ValueError):
        advance(_request(), PublishState(stage=Stage.DONE), StageResult(Outcome.success("x")))


def _mirror() -> MemoryMirrorStore:
    store = MemoryMirrorStore()
    store.create(
        EntityType.MANAGED_REGION,
        ManagedRegion(REGION, bucket_name="bucket-1", catalog_db_name="db-1", data_source_name="ds-1"),
    )
    store.create(EntityType.DATASET, Dataset(_arn(TARGET_ID), TARGET_ID, "Sales", REGION, fields=("country",)))
    store.create(EntityType.PRINCIPAL, Principal(ANN, PrincipalKind.USER, "ann", "default"))
    store.create(EntityType.PERMISSION, Permission(_arn(TARGET_ID), ANN, "country", "FR"))
    return store


def test_publish_rls_records_the_publication():
    store = _mirror()
    storage = _Storage()

    state = publish_rls(store, _arn(TARGET_ID), _services(storage=storage))

    assert state.done
    assert state.outcome.ok
    assert storage.objects[("bucket-1", f"RLS-Datasets/{TARGET_ID}/{RULE_ID}.csv")] == TABLE
    target = store.get(EntityType.DATASET, _arn(TARGET_ID))
    assert target.rls_enabled is RlsStatus.ENABLED
    assert target.rls_tool_managed is True
    assert target.rls_dataset_id == RULE_ID
    rule = store.get(EntityType.DATASET, _arn(RULE_ID))
    assert (rule.tool_created, rule.glue_key) == (True, TARGET_ID)
    assert store.get(EntityType.MANAGED_REGION, REGION).tool_created_count == 1


def test_publish_rls_reuses_the_recorded_rule_dataset():
    store = _mirror()
    qs = _QuickSight()
    services = _services(quicksight=qs)
    publish_rls(store, _arn(TARGET_ID), services)
    qs.calls.clear()

    state = publish_rls(store, _arn(TARGET_ID), services)

    assert state.done
    assert ("create", RULE_ID) not in qs.calls
    assert len(store.list(EntityType.DATASET)) == 2


def test_publish_rls_requires_a_provisioned_region():
    store = _mirror()
    region = store.get(EntityType.MANAGED_REGION, REGION)
    store.update(EntityType.MANAGED_REGION, replace(region, data_source_name="-"))

    state = publish_rls(store, _arn(TARGET_ID), _services())

    assert state.failed
    assert state.outcome.error_type == "RegionNotManaged"
    assert state.history == ()


def test_publish_rls_requires_permissions():
    store = _mirror()
    store.delete(EntityType.PERMISSION, Permission(_arn(TARGET_ID), ANN, "country", "FR").key)

    state = publish_rls(store, _arn(TARGET_ID), _services())

    assert state.outcome.error_type == "NoPermissions"


class _RegionWritesFail(MemoryMirrorStore):
    def update(self, entity, record):
        if entity is EntityType.MANAGED_REGION:
            return None
        return super().update(entity, record)


def test_publish_rls_reports_unsaved_region_counters():
    store = _RegionWritesFail()
    store.create(
        EntityType.MANAGED_REGION,
        ManagedRegion(REGION, bucket_name="bucket-1", catalog_db_name="db-1", data_source_name="ds-1"),
    )
    store.create(EntityType.DATASET, Dataset(_arn(TARGET_ID), TARGET_ID, "Sales", REGION, fields=("country",)))
    store.create(EntityType.PRINCIPAL, Principal(ANN, PrincipalKind.USER, "ann", "default"))
    store.create(EntityType.PERMISSION, Permission(_arn(TARGET_ID), ANN, "country", "FR"))

    state = publish_rls(store, _arn(TARGET_ID), _services())

    assert state.failed
    assert state.outcome.error_type == "StoreWriteFailed"
    assert REGION in state.outcome.message
    assert store.get(EntityType.DATASET, _arn(TARGET_ID)).rls_tool_managed is True
