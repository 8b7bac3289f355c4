from qsrls.core.adapters.mirrorstore import MemoryMirrorStore
from qsrls.core.errors import ErrorKind
from qsrls.core.models import Dataset, EntityType, Permission, Principal, PrincipalKind
from qsrls.core.rules import grant, header_of, render_rule_table, revoke, sanitize_columns

DS = "arn:aws:quicksight:eu-west-1:1:dataset/sales"
ANN = "arn:aws:quicksight:us-east-1:1:user/default/ann"
TEAM = "arn:aws:quicksight:us-east-1:1:group/default/team"


def test_sanitize_columns_drops_blanks_and_duplicates():
    assert sanitize_columns(["A", "", None, "A", "B"]) == ["A", "B"]
    assert sanitize_columns(["", None, "  "]) == []


def test_sanitize_columns_keeps_names_verbatim():
    assert sanitize_columns(["A ", "A", " ", "A "]) == ["A ", "A"]


def test_render_rule_table_groups_rules_by_principal():
    table = render_rule_table(
        [
            Permission(DS, TEAM, "country", "FR,DE"),
            Permission(DS, ANN, "country", "IT"),
            Permission(DS, ANN, "segment", "*"),
            Permission(DS, TEAM, "*", "*"),
        ]
    )

    assert table.splitlines() == [
        "UserARN,GroupARN,country,segment",
        f",{TEAM},\"FR,DE\",",
        f"{ANN},,IT,",
    ]


def test_render_rule_table_orders_rows_by_principal_arn():
    table = render_rule_table(
        [
            Permission(DS, TEAM, "country", "FR,DE"),
            Permission(DS, ANN, "country", "IT"),
        ]
    )

    # group arns sort before user arns
    assert table.splitlines() == [
        "UserARN,GroupARN,country",
        f",{TEAM},\"FR,DE\"",
        f"{ANN},,IT",
    ]


def test_render_rule_table_with_only_wildcards_has_no_field_columns():
    table = render_rule_table([Permission(DS, ANN, "*", "*")])

    assert table == f"UserARN,GroupARN\n{ANN},"
    assert header_of(table) == ["UserARN", "GroupARN"]


def test_render_rule_table_without_permissions_is_empty():
    assert render_rule_table([]) == ""


def _store() -> MemoryMirrorStore:
    store = MemoryMirrorStore()
    store.create(EntityType.DATASET, Dataset(DS, "sales", "Sales", "eu-west-1", fields=("country",)))
    store.create(
        EntityType.PRINCIPAL,
        Principal(ANN, PrincipalKind.USER, "ann", "default"),
    )
    return store


def test_grant_creates_then_replaces_a_rule():
    store = _store()

    assert grant(store, DS, ANN, "country", ["FR", " DE "]).ok
    assert grant(store, DS, ANN, "country", "*").ok

    rules = store.list(EntityType.PERMISSION, dataset_arn=DS)
    assert rules == [Permission(DS, ANN, "country", "*")]


def test_grant_validates_dataset_principal_and_field():
    store = _store()

    assert grant(store, "arn:missing", ANN, "country", ["FR"]).kind is ErrorKind.NOT_FOUND
    assert grant(store, DS, TEAM, "country", ["FR"]).kind is ErrorKind.NOT_FOUND
    assert grant(store, DS, ANN, "revenue", ["1"]).kind is ErrorKind.VALIDATION
    assert grant(store, DS, ANN, "country", []).kind is ErrorKind.VALIDATION


def test_revoke_deletes_rules_of_a_principal():
    store = _store()
    grant(store, DS, ANN, "country", ["FR"])
    grant(store, DS, ANN, "*", "*")

    assert revoke(store, DS, ANN, "country").ok
    assert [p.field for p in store.list(EntityType.PERMISSION)] == ["*"]
    assert revoke(store, DS, ANN).ok
    assert revoke(store, DS, ANN).kind is ErrorKind.NOT_FOUND
