from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import boto3

from qsrls.core.errors import RemoteError, remote_call
from qsrls.core.models import (
    Dataset,
    Namespace,
    Page,
    Principal,
    PrincipalKind,
    RlsStatus,
)
from qsrls.core.poller import PollState, PollStatus, poll_until

_NOT_MANAGEABLE_MSG = "not supported through API"
_SPICE_LOOKBACK = timedelta(days=10)


def _opt_token(token: str | None) -> dict[str, str]:
    return {"NextToken": token} if token else {}


def _to_namespace(item: dict[str, Any]) -> Namespace | None:
    if not item or not item.get("Arn") or not item.get("Name"):
        return None
    return Namespace(
        arn=item["Arn"],
        name=item["Name"],
        capacity_region=item.get("CapacityRegion") or "",
    )


def _to_dataset(item: dict[str, Any], region: str) -> Dataset | None:
    if not item or not item.get("Arn") or not item.get("DataSetId"):
        return None
    rls = item.get("RowLevelPermissionDataSet") or {}
    enabled = rls.get("Arn") and rls.get("Status", "ENABLED") == "ENABLED"
    return Dataset(
        arn=item["Arn"],
        id=item["DataSetId"],
        name=item.get("Name") or item["DataSetId"],
        region=region,
        rls_enabled=RlsStatus.ENABLED if enabled else RlsStatus.DISABLED,
        rls_dataset_id=rls.get("Arn", "").rsplit("/", 1)[-1] or None,
        import_mode=item.get("ImportMode"),
        created_time=str(item["CreatedTime"]) if item.get("CreatedTime") else None,
        last_updated_time=str(item["LastUpdatedTime"]) if item.get("LastUpdatedTime") else None,
    )


class QuickSightAdapter:
    """Adapter around the QuickSight (and CloudWatch SPICE metrics) APIs for one region."""

    def __init__(
        self,
        session: boto3.session.Session,
        account_id: str,
        region: str,
        *,
        max_results: int = 100,
    ) -> None:
        self.account_id = account_id
        self.region = region
        self.max_results = max_results
        self.client = session.client("quicksight", region_name=region)
        self._session = session

    def check_access(self) -> None:
        """Verify the region answers identity calls (one-item ListUsers on `default`)."""
        with remote_call("ListUsers"):
            self.client.list_users(
                AwsAccountId=self.account_id, Namespace="default", MaxResults=1
            )

    def list_namespaces(self, token: str | None = None) -> Page:
        """Return one page of namespaces."""
        with remote_call("ListNamespaces"):
            resp = self.client.list_namespaces(
                AwsAccountId=self.account_id,
                MaxResults=self.max_results,
                **_opt_token(token),
            )
        items = tuple(_to_namespace(n) for n in resp.get("Namespaces") or [])
        return Page(items=items, next_token=resp.get("NextToken"))

    def list_groups(self, namespace: str, token: str | None = None) -> Page:
        """Return one page of groups in a namespace."""
        with remote_call("ListGroups"):
            resp = self.client.list_groups(
                AwsAccountId=self.account_id,
                Namespace=namespace,
                MaxResults=self.max_results,
                **_opt_token(token),
            )
        items = tuple(
            Principal(
                arn=g["Arn"],
                kind=PrincipalKind.GROUP,
                name=g.get("GroupName") or g["Arn"],
                namespace_name=namespace,
                principal_id=g.get("PrincipalId"),
                description=g.get("Description"),
            )
            if g and g.get("Arn")
            else None
            for g in resp.get("GroupList") or []
        )
        return Page(items=items, next_token=resp.get("NextToken"))

    def list_users(self, namespace: str, token: str | None = None) -> Page:
        """Return one page of users in a namespace."""
        with remote_call("ListUsers"):
            resp = self.client.list_users(
                AwsAccountId=self.account_id,
                Namespace=namespace,
                MaxResults=self.max_results,
                **_opt_token(token),
            )
        items = tuple(
            Principal(
                arn=u["Arn"],
                kind=PrincipalKind.USER,
                name=u.get("UserName") or u["Arn"],
                namespace_name=namespace,
                email=u.get("Email") or "",
                role=u.get("Role") or "",
                principal_id=u.get("PrincipalId"),
                identity_type=u.get("IdentityType"),
            )
            if u and u.get("Arn")
            else None
            for u in resp.get("UserList") or []
        )
        return Page(items=items, next_token=resp.get("NextToken"))

    def list_datasets(self, token: str | None = None) -> Page:
        """Return one page of dataset summaries as Dataset records (no fields yet)."""
        with remote_call("ListDataSets"):
            resp = self.client.list_data_sets(
                AwsAccountId=self.account_id,
                MaxResults=self.max_results,
                **_opt_token(token),
            )
        items = tuple(_to_dataset(d, self.region) for d in resp.get("DataSetSummaries") or [])
        return Page(items=items, next_token=resp.get("NextToken"))

    def describe_dataset(self, dataset_id: str) -> dict[str, Any]:
        """Return the full DataSet definition."""
        with remote_call("DescribeDataSet"):
            resp = self.client.describe_data_set(
                AwsAccountId=self.account_id, DataSetId=dataset_id
            )
        return resp["DataSet"]

    def describe_dataset_fields(self, dataset_id: str) -> tuple[tuple[str, ...], int] | None:
        """
        Return (output column names, consumed SPICE bytes) for a dataset.

        Returns None for dataset types the API cannot manage.
        """
        try:
            dataset = self.describe_dataset(dataset_id)
        except RemoteError as exc:
            if _NOT_MANAGEABLE_MSG in exc.message:
                return None
            raise
        columns = tuple(c["Name"] for c in dataset.get("OutputColumns") or [] if c.get("Name"))
        return columns, int(dataset.get("ConsumedSpiceCapacityInBytes") or 0)

    def create_dataset(self, **spec: Any) -> dict[str, Any]:
        """Create a dataset; the response carries Arn, Status and IngestionId."""
        with remote_call("CreateDataSet"):
            return self.client.create_data_set(AwsAccountId=self.account_id, **spec)

    def update_dataset(self, **spec: Any) -> dict[str, Any]:
        """Update a dataset definition; Status 201 means an ingestion was started."""
        with remote_call("UpdateDataSet"):
            return self.client.update_data_set(AwsAccountId=self.account_id, **spec)

    def delete_dataset(self, dataset_id: str) -> None:
        """Delete a dataset by id."""
        with remote_call("DeleteDataSet"):
            self.client.delete_data_set(AwsAccountId=self.account_id, DataSetId=dataset_id)

    def describe_ingestion(self, dataset_id: str, ingestion_id: str) -> dict[str, Any]:
        """Return the Ingestion structure of a dataset ingestion."""
        with remote_call("DescribeIngestion"):
            resp = self.client.describe_ingestion(
                AwsAccountId=self.account_id,
                DataSetId=dataset_id,
                IngestionId=ingestion_id,
            )
        return resp.get("Ingestion") or {}

    def describe_data_source(self, data_source_id: str) -> dict[str, Any]:
        """Return the DataSource structure (raises RemoteError NOT_FOUND if absent)."""
        with remote_call("DescribeDataSource"):
            resp = self.client.describe_data_source(
                AwsAccountId=self.account_id, DataSourceId=data_source_id
            )
        return resp.get("DataSource") or {}

    def data_source_arn(self, data_source_id: str) -> str:
        """Return the ARN of an existing data source."""
        return self.describe_data_source(data_source_id)["Arn"]

    def create_data_source(
        self,
        prefix: str,
        *,
        sleep: Callable[[float], None] | None = None,
        max_attempts: int = 60,
    ) -> str:
        """
        Create an Athena data source named `{prefix}{uuid4}` and wait for it.

        Returns the data source id once creation is successful.
        """
        name = f"{prefix}{uuid.uuid4()}"
        with remote_call("CreateDataSource"):
            self.client.create_data_source(
                AwsAccountId=self.account_id,
                DataSourceId=name,
                Name="QS Managed Data Source from Athena",
                Type="ATHENA",
                DataSourceParameters={"AthenaParameters": {"WorkGroup": "primary"}},
            )

        def _probe() -> PollStatus:
            status = str(self.describe_data_source(name).get("Status") or "")
            if status == "CREATION_IN_PROGRESS":
                return PollStatus(PollState.RUNNING, status)
            if status == "CREATION_SUCCESSFUL":
                return PollStatus(PollState.COMPLETED, status)
            return PollStatus(
                PollState.FAILED,
                status,
                error_type="QsDataSourceError",
                message=f"Data source creation ended with status '{status}'",
            )

        kwargs: dict[str, Any] = {"sleep": sleep} if sleep else {}
        outcome = poll_until(
            _probe,
            label=f"Data source '{name}' creation",
            poll_interval=1,
            max_attempts=max_attempts,
            **kwargs,
        )
        if not outcome.ok:
            raise RemoteError(
                outcome.message,
                error_type=outcome.error_type,
                kind=outcome.kind,
                status_code=outcome.status_code,
            )
        return name

    def spice_capacity(self) -> tuple[float, float]:
        """Return (available, used) SPICE capacity in GB from CloudWatch metrics."""
        cloudwatch = self._session.client("cloudwatch", region_name=self.region)
        end = datetime.now(timezone.utc)
        start = end - _SPICE_LOOKBACK

        def _latest_mb(metric_name: str) -> float:
            with remote_call("GetMetricData"):
                resp = cloudwatch.get_metric_data(
                    MetricDataQueries=[
                        {
                            "Id": "spice",
                            "MetricStat": {
                                "Metric": {"Namespace": "AWS/QuickSight", "MetricName": metric_name},
                                "Period": 3600,
                                "Stat": "Maximum",
                                "Unit": "Megabytes",
                            },
                            "ReturnData": True,
                            "AccountId": self.account_id,
                        }
                    ],
                    StartTime=start,
                    EndTime=end,
                )
            results = resp.get("MetricDataResults") or []
            if not results or results[0].get("StatusCode") != "Complete" or not results[0].get("Values"):
                raise RemoteError(
                    f"GetMetricData: no datapoints for {metric_name}",
                    error_type="QSSPICE",
                )
            return float(results[0]["Values"][0])

        limit_mb = _latest_mb("SPICECapacityLimitInMB")
        used_mb = _latest_mb("SPICECapacityConsumedInMB")
        return round(limit_mb / 1024, 2), round(used_mb / 1024, 2)
