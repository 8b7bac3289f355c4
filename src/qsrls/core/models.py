"""Core domain models mirrored from the remote analytics service.

These models represent the permission topology (namespaces, users, groups,
datasets) and the tool's own bookkeeping records (permissions, managed
regions, account details) in a simple, immutable form. They are free of SDK
types and CLI concerns; every record exposes a `key` property that is its
identity in the local mirror store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

UNSET = "-"
"""Sentinel stored in ManagedRegion fields that are not provisioned yet."""


class EntityType(str, Enum):
    """Kinds of records held by the local mirror store."""

    NAMESPACE = "namespace"
    PRINCIPAL = "principal"
    DATASET = "dataset"
    PERMISSION = "permission"
    MANAGED_REGION = "managed_region"
    ACCOUNT = "account"


class PrincipalKind(str, Enum):
    USER = "User"
    GROUP = "Group"


class RlsStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


@dataclass(frozen=True)
class Namespace:
    """
    A QuickSight namespace. Immutable once created.

    Attributes:
        arn: Namespace ARN (identity).
        name: Namespace name, e.g. "default".
        capacity_region: Region that holds the namespace's capacity.
    """

    arn: str
    name: str
    capacity_region: str

    @property
    def key(self) -> str:
        return self.arn


@dataclass(frozen=True)
class Principal:
    """
    A user or group inside a namespace.

    Attributes:
        arn: Principal ARN (identity).
        kind: USER or GROUP.
        name: User name or group name.
        namespace_name: Name of the owning namespace (cascade key).
        namespace_arn: ARN of the owning namespace, when known.
        email: E-mail address (users only, empty for groups).
        role: QuickSight role (users only, empty for groups).
        principal_id: Remote principal id.
        description: Free text description (groups only).
        identity_type: IAM / QUICKSIGHT identity type (users only).
    """

    arn: str
    kind: PrincipalKind
    name: str
    namespace_name: str
    namespace_arn: str | None = None
    email: str = ""
    role: str = ""
    principal_id: str | None = None
    description: str | None = None
    identity_type: str | None = None

    @property
    def key(self) -> str:
        return self.arn


@dataclass(frozen=True)
class Dataset:
    """
    A remote analytics dataset mirrored locally.

    The `rls_*` fields are written exclusively by the publish pipeline; the
    dataset sync preserves them when refreshing an existing record.
    """

    arn: str
    id: str
    name: str
    region: str
    rls_enabled: RlsStatus = RlsStatus.DISABLED
    rls_tool_managed: bool = False
    rls_dataset_id: str | None = None
    api_manageable: bool = True
    tool_created: bool = False
    glue_key: str | None = None
    spice_capacity_bytes: int = 0
    import_mode: str | None = None
    created_time: str | None = None
    last_updated_time: str | None = None
    fields: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return self.arn


@dataclass(frozen=True)
class Permission:
    """
    One row-level rule: a principal may see `rls_values` of `field`.

    Attributes:
        dataset_arn: Target dataset ARN.
        principal_arn: User or group ARN.
        field: Dataset field name, or "*" for all fields.
        rls_values: Comma-joined allowed values, or "*" for all values.
    """

    dataset_arn: str
    principal_arn: str
    field: str
    rls_values: str

    @property
    def key(self) -> str:
        return f"{self.dataset_arn}|{self.principal_arn}|{self.field}"


@dataclass(frozen=True)
class ManagedRegion:
    """
    Provisioning state for one region.

    Infrastructure fields hold UNSET until the corresponding resource exists
    and never go back to UNSET afterwards.
    """

    region_name: str
    bucket_name: str = UNSET
    catalog_db_name: str = UNSET
    data_source_name: str = UNSET
    available_capacity_gb: float = 0.0
    used_capacity_gb: float = 0.0
    datasets_count: int = 0
    not_manageable_datasets_count: int = 0
    tool_created_count: int = 0

    @property
    def key(self) -> str:
        return self.region_name

    @property
    def provisioned(self) -> bool:
        return UNSET not in (self.bucket_name, self.catalog_db_name, self.data_source_name)


@dataclass(frozen=True)
class AccountDetails:
    """Singleton summary of the managed account (0 or 1 record exists)."""

    account_id: str
    management_region: str
    namespaces_count: int = 0
    groups_count: int = 0
    users_count: int = 0

    @property
    def key(self) -> str:
        return self.account_id


RECORD_TYPES: dict[EntityType, type] = {
    EntityType.NAMESPACE: Namespace,
    EntityType.PRINCIPAL: Principal,
    EntityType.DATASET: Dataset,
    EntityType.PERMISSION: Permission,
    EntityType.MANAGED_REGION: ManagedRegion,
    EntityType.ACCOUNT: AccountDetails,
}


@dataclass(frozen=True)
class Page:
    """One page of a paginated remote listing."""

    items: tuple = field(default_factory=tuple)
    next_token: str | None = None
