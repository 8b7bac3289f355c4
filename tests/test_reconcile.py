from dataclasses import replace

from qsrls.core.adapters.mirrorstore import MemoryMirrorStore
from qsrls.core.errors import ErrorKind, RemoteError
from qsrls.core.models import (
    AccountDetails,
    Dataset,
    EntityType,
    ManagedRegion,
    Namespace,
    Page,
    Principal,
    PrincipalKind,
    RlsStatus,
)
from qsrls.core.reconcile import (
    set_account,
    sync_all,
    sync_datasets,
    sync_namespaces,
    sync_principals,
    update_account_counters,
)

REGION = "us-east-1"


def _ns(name: str) -> Namespace:
    return Namespace(arn=f"arn:ns/{name}", name=name, capacity_region=REGION)


def _user(name: str, namespace: str = "default", email: str = "") -> Principal:
    return Principal(
        arn=f"arn:aws:quicksight:{REGION}:1:user/{namespace}/{name}",
        kind=PrincipalKind.USER,
        name=name,
        namespace_name=namespace,
        email=email,
    )


def _group(name: str, namespace: str = "default") -> Principal:
    return Principal(
        arn=f"arn:aws:quicksight:{REGION}:1:group/{namespace}/{name}",
        kind=PrincipalKind.GROUP,
        name=name,
        namespace_name=namespace,
    )


def _page(items: list, token: str | None, size: int) -> Page:
    start = int(token or 0)
    end = start + size
    return Page(tuple(items[start:end]), str(end) if end < len(items) else None)


class _Directory:
    def __init__(self, namespaces=(), users=None, groups=None, page_size: int = 2):
        self.namespaces = list(namespaces)
        self.users = users or {}
        self.groups = groups or {}
        self.page_size = page_size
        self.calls: list[tuple] = []
        self.fail: dict[tuple, Exception] = {}

    def _serve(self, key: tuple, items: list, token: str | None) -> Page:
        self.calls.append((*key, token))
        if (*key, token) in self.fail:
            raise self.fail[(*key, token)]
        return _page(items, token, self.page_size)

    def list_namespaces(self, token=None) -> Page:
        return self._serve(("namespaces",), self.namespaces, token)

    def list_users(self, namespace, token=None) -> Page:
        return self._serve(("users", namespace), self.users.get(namespace, []), token)

    def list_groups(self, namespace, token=None) -> Page:
        return self._serve(("groups", namespace), self.groups.get(namespace, []), token)


class _Datasets:
    def __init__(self, datasets, fields):
        self.datasets = list(datasets)
        self.fields = fields

    def list_datasets(self, token=None) -> Page:
        return Page(tuple(self.datasets), None)

    def describe_dataset_fields(self, dataset_id):
        value = self.fields.get(dataset_id)
        if isinstance(value, Exception):
            raise value
        return value


class _UnconfirmedCreates(MemoryMirrorStore):
    def create(self, entity, record):
        return None


class _FailingDeletes(MemoryMirrorStore):
    def delete(self, entity, key):
        return None


def _keys(store, entity, **filters) -> set[str]:
    return {r.key for r in store.list(entity, **filters)}


def test_first_run_creates_namespaces_without_deletes():
    store = MemoryMirrorStore()
    directory = _Directory([Namespace("ns1", "default", REGION)])

    result = sync_namespaces(store, directory, first_run=True)

    assert result.ok
    assert (result.created, result.deleted) == (1, 0)
    assert store.get(EntityType.NAMESPACE, "ns1") == Namespace("ns1", "default", REGION)
    assert result.names == ("default",)


def test_empty_namespace_listing_deletes_and_cascades_to_principals():
    store = MemoryMirrorStore()
    sync_namespaces(store, _Directory([Namespace("ns1", "default", REGION)]), first_run=True)
    store.create(EntityType.PRINCIPAL, _user("ann"))
    store.create(EntityType.PRINCIPAL, _group("team"))
    store.create(EntityType.PRINCIPAL, _user("bob", namespace="other"))

    result = sync_namespaces(store, _Directory([]))

    assert store.list(EntityType.NAMESPACE) == []
    assert _keys(store, EntityType.PRINCIPAL) == {_user("bob", namespace="other").arn}
    assert (result.deleted, result.cascaded) == (1, 2)
    # no namespace at all is still reported as a failed pass
    assert not result.ok
    assert result.outcome.kind is ErrorKind.NOT_FOUND
    assert result.outcome.error_type == "NoNamespaces"


def test_second_identical_sync_makes_no_mutations():
    store = MemoryMirrorStore()
    directory = _Directory(
        [_ns("default"), _ns("sales"), _ns("hr")],
        users={"default": [_user("ann"), _user("bob"), _user("cid")]},
    )

    first = sync_all_passes(store, directory)
    second = sync_all_passes(store, directory)

    assert sum(r.mutations for r in first) > 0
    assert sum(r.mutations for r in second) == 0
    assert _keys(store, EntityType.NAMESPACE) == {"arn:ns/default", "arn:ns/sales", "arn:ns/hr"}
    assert len(store.list(EntityType.PRINCIPAL, kind=PrincipalKind.USER)) == 3


def sync_all_passes(store, directory):
    namespaces = sync_namespaces(store, directory)
    users = sync_principals(store, directory, PrincipalKind.USER, namespaces.names)
    return [namespaces, users]


def test_principal_sync_converges_onto_the_new_listing():
    store = MemoryMirrorStore()
    store.create(EntityType.NAMESPACE, _ns("default"))
    before = _Directory(users={"default": [_user("ann"), _user("bob")]})
    sync_principals(store, before, PrincipalKind.USER, ["default"])

    after = _Directory(users={"default": [_user("bob", email="bob@example.com"), _user("cid")]})
    result = sync_principals(store, after, PrincipalKind.USER, ["default"])

    assert result.ok
    assert (result.created, result.updated, result.deleted) == (1, 1, 1)
    assert _keys(store, EntityType.PRINCIPAL) == {_user("bob").arn, _user("cid").arn}
    bob = store.get(EntityType.PRINCIPAL, _user("bob").arn)
    assert bob.email == "bob@example.com"
    assert bob.namespace_arn == "arn:ns/default"


def test_page_failure_aborts_before_any_delete():
    store = MemoryMirrorStore()
    store.create(EntityType.NAMESPACE, _ns("default"))
    sync_principals(store, _Directory(users={"default": [_user("old")]}), PrincipalKind.USER, ["default"])

    directory = _Directory(users={"default": [_user("a"), _user("b"), _user("c")]}, page_size=2)
    directory.fail[("users", "default", "2")] = RemoteError(
        "ListUsers: slow down", error_type="ThrottlingException"
    )

    result = sync_principals(store, directory, PrincipalKind.USER, ["default"])

    assert not result.ok
    assert result.outcome.kind is ErrorKind.THROTTLED
    assert store.get(EntityType.PRINCIPAL, _user("old").arn) is not None


def test_unconfirmed_write_aborts_the_pass():
    store = _UnconfirmedCreates()

    result = sync_namespaces(store, _Directory([_ns("default")]))

    assert not result.ok
    assert result.outcome.error_type == "StoreWriteFailed"
    assert "default" in result.outcome.message


def test_failed_delete_aborts_the_pass():
    store = _FailingDeletes()
    store.create(EntityType.NAMESPACE, _ns("gone"))

    result = sync_namespaces(store, _Directory([_ns("default")]))

    assert not result.ok
    assert "delete" in result.outcome.message


def test_empty_items_are_skipped():
    store = MemoryMirrorStore()
    directory = _Directory([None, _ns("default"), None])

    result = sync_namespaces(store, directory, first_run=True)

    assert result.ok
    assert (result.created, result.skipped) == (1, 2)


def test_zero_principals_is_only_a_warning():
    store = MemoryMirrorStore()
    store.create(EntityType.NAMESPACE, _ns("default"))

    result = sync_principals(store, _Directory(), PrincipalKind.GROUP, ["default", None])

    assert result.ok
    assert result.total == 0
    assert "No QuickSight groups found" in result.outcome.message


def test_parallel_scopes_only_touch_their_own_namespace():
    store = MemoryMirrorStore()
    for name in ("default", "sales", "hr"):
        store.create(EntityType.NAMESPACE, _ns(name))
    store.create(EntityType.PRINCIPAL, _user("keep", namespace="hr"))
    directory = _Directory(
        users={
            "default": [_user("ann"), _user("bob"), _user("cid")],
            "sales": [_user("dan", namespace="sales")],
        }
    )

    result = sync_principals(
        store, directory, PrincipalKind.USER, ["default", "sales"], max_parallel=2
    )

    assert result.ok
    assert result.created == 4
    assert store.get(EntityType.PRINCIPAL, _user("keep", namespace="hr").arn) is not None
    default_calls = [c for c in directory.calls if c[:2] == ("users", "default")]
    assert [c[2] for c in default_calls] == [None, "2"]


def test_sync_principals_rejects_non_positive_parallel():
    result = sync_principals(MemoryMirrorStore(), _Directory(), PrincipalKind.USER, [], max_parallel=0)

    assert not result.ok
    assert result.outcome.kind is ErrorKind.VALIDATION
    assert result.outcome.error_type == "ReferenceError"
    assert "max_parallel" in result.outcome.message


def test_standalone_namespace_sync_refreshes_account_counters():
    store = MemoryMirrorStore()
    set_account(store, "111122223333", REGION)
    sync_all(
        store,
        _Directory(
            [_ns("a"), _ns("b")],
            users={"a": [_user("ann", namespace="a")], "b": [_user("bob", namespace="b")]},
        ),
        first_run=True,
    )
    account = store.get(EntityType.ACCOUNT, "111122223333")
    assert (account.namespaces_count, account.users_count) == (2, 2)

    result = sync_namespaces(store, _Directory([_ns("a")]))

    assert result.ok
    account = store.get(EntityType.ACCOUNT, "111122223333")
    assert (account.namespaces_count, account.users_count) == (1, 1)


def test_standalone_principal_sync_refreshes_account_counters():
    store = MemoryMirrorStore()
    set_account(store, "111122223333", REGION)
    store.create(EntityType.NAMESPACE, _ns("default"))

    result = sync_principals(
        store, _Directory(groups={"default": [_group("team"), _group("ops")]}), PrincipalKind.GROUP, ["default"]
    )

    assert result.ok
    account = store.get(EntityType.ACCOUNT, "111122223333")
    assert (account.namespaces_count, account.groups_count, account.users_count) == (1, 2, 0)


def test_empty_namespace_listing_still_refreshes_account_counters():
    store = MemoryMirrorStore()
    set_account(store, "111122223333", REGION)
    sync_namespaces(store, _Directory([_ns("default")]), first_run=True)

    result = sync_namespaces(store, _Directory([]))

    assert result.outcome.error_type == "NoNamespaces"
    assert store.get(EntityType.ACCOUNT, "111122223333").namespaces_count == 0


def test_passes_without_account_record_still_succeed():
    result = sync_namespaces(MemoryMirrorStore(), _Directory([_ns("default")]))

    assert result.ok


def test_sync_all_updates_account_counters():
    store = MemoryMirrorStore()
    set_account(store, "111122223333", REGION)
    directory = _Directory(
        [_ns("default")],
        users={"default": [_user("ann"), _user("bob")]},
        groups={"default": [_group("team")]},
    )

    results = sync_all(store, directory)

    assert [r.entity for r in results] == ["namespaces", "groups", "users", "account"]
    assert all(r.ok for r in results)
    account = store.get(EntityType.ACCOUNT, "111122223333")
    assert (account.namespaces_count, account.groups_count, account.users_count) == (1, 1, 2)


def test_sync_all_stops_after_failed_namespace_pass():
    results = sync_all(MemoryMirrorStore(), _Directory([]))

    assert [r.entity for r in results] == ["namespaces"]


def test_account_counters_need_an_account_record():
    outcome = update_account_counters(MemoryMirrorStore())

    assert outcome.kind is ErrorKind.NOT_FOUND


def test_set_account_keeps_a_single_record_and_checks_access():
    store = MemoryMirrorStore()
    store.create(EntityType.ACCOUNT, AccountDetails("999999999999", "eu-west-1"))

    assert set_account(store, "111122223333", REGION).ok
    assert _keys(store, EntityType.ACCOUNT) == {"111122223333"}

    def denied():
        raise RemoteError("ListUsers: no", error_type="AccessDeniedException")

    outcome = set_account(store, "111122223333", "ap-south-1", check_access=denied)
    assert outcome.kind is ErrorKind.PERMISSION_DENIED
    assert store.get(EntityType.ACCOUNT, "111122223333").management_region == REGION


def _dataset(ds_id: str, **kwargs) -> Dataset:
    return Dataset(arn=f"arn:dataset/{ds_id}", id=ds_id, name=ds_id.title(), region=REGION, **kwargs)


def test_dataset_sync_marks_unmanageable_and_preserves_rls_fields():
    store = MemoryMirrorStore()
    store.create(EntityType.MANAGED_REGION, ManagedRegion(REGION))
    store.create(
        EntityType.DATASET,
        _dataset(
            "sales",
            rls_enabled=RlsStatus.ENABLED,
            rls_tool_managed=True,
            rls_dataset_id="QS_RLS_Managed_sales",
        ),
    )
    store.create(EntityType.DATASET, _dataset("stale"))
    adapter = _Datasets(
        [_dataset("sales", rls_enabled=RlsStatus.ENABLED), _dataset("upload"), _dataset("QS_RLS_Managed_sales")],
        {
            "sales": (("country", "amount"), 2048),
            "QS_RLS_Managed_sales": (("UserARN", "GroupARN", "country"), 10),
        },
    )

    result = sync_datasets(store, adapter, REGION)

    assert result.ok
    assert result.deleted == 1
    sales = store.get(EntityType.DATASET, "arn:dataset/sales")
    assert sales.fields == ("country", "amount")
    assert sales.spice_capacity_bytes == 2048
    assert sales.rls_tool_managed is True
    assert sales.rls_dataset_id == "QS_RLS_Managed_sales"
    upload = store.get(EntityType.DATASET, "arn:dataset/upload")
    assert upload.api_manageable is False
    assert upload.fields == ()
    assert store.get(EntityType.DATASET, "arn:dataset/QS_RLS_Managed_sales").tool_created is True

    region = store.get(EntityType.MANAGED_REGION, REGION)
    assert (region.datasets_count, region.not_manageable_datasets_count, region.tool_created_count) == (3, 1, 1)


def test_dataset_sync_aborts_on_throttling():
    store = MemoryMirrorStore()
    adapter = _Datasets(
        [_dataset("sales")],
        {"sales": RemoteError("DescribeDataSet: slow down", error_type="ThrottlingException")},
    )

    result = sync_datasets(store, adapter, REGION)

    assert result.outcome.kind is ErrorKind.THROTTLED
    assert store.list(EntityType.DATASET) == []


def test_dataset_sync_without_managed_region_still_succeeds():
    store = MemoryMirrorStore()
    adapter = _Datasets([_dataset("sales")], {"sales": (("a",), 1)})

    result = sync_datasets(store, adapter, REGION)

    assert result.ok
    assert replace(store.get(EntityType.DATASET, "arn:dataset/sales"), fields=()) == _dataset(
        "sales", spice_capacity_bytes=1
    )
