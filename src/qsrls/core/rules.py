"""Row-level permission rules and their rendering as a rule table.

A rule table is the CSV consumed by a QuickSight RLS dataset: one row per
principal, a `UserARN` and a `GroupARN` column and one column per restricted
field. An empty cell grants every value of that field.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Iterable

from qsrls.core.errors import ErrorKind, Outcome
from qsrls.core.mirror import MirrorStore
from qsrls.core.models import Dataset, EntityType, Permission, Principal

logger = logging.getLogger(__name__)

ALL = "*"
RULE_HEADER = ("UserARN", "GroupARN")


def sanitize_columns(headers: Iterable[str | None]) -> list[str]:
    """
    Return headers without blanks or duplicates, keeping first-seen order.

    A header is blank when empty after trimming; other names are kept verbatim.
    """
    out: list[str] = []
    for header in headers:
        if header is None or not header.strip():
            continue
        if header not in out:
            out.append(header)
    return out


def header_of(table: str) -> list[str | None]:
    """Return the raw header cells of a rendered rule table."""
    first = next(csv.reader(io.StringIO(table)), [])
    return list(first)


def _principal_columns(principal_arn: str) -> tuple[str, str]:
    if ":user/" in principal_arn:
        return principal_arn, ""
    if ":group/" in principal_arn:
        return "", principal_arn
    logger.warning("Principal '%s' is neither a user nor a group", principal_arn)
    return "", ""


def render_rule_table(permissions: Iterable[Permission]) -> str:
    """
    Render permissions of one dataset as a rule table.

    Rows are ordered by principal arn; field columns follow the order in which
    fields first appear in that ordering. `*` fields do not get a column and
    `*` values render as empty cells. Returns "" when there is no permission.
    """
    ordered = sorted(permissions, key=lambda p: (p.principal_arn, p.field))
    if not ordered:
        return ""

    fields: list[str] = []
    by_principal: dict[str, dict[str, str]] = {}
    for perm in ordered:
        if perm.field and perm.field != ALL and perm.field not in fields:
            fields.append(perm.field)
        by_principal.setdefault(perm.principal_arn, {})[perm.field] = perm.rls_values or ""

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([*RULE_HEADER, *fields])
    for principal_arn, values in by_principal.items():
        cells = []
        for name in fields:
            value = values.get(name, "")
            cells.append("" if value == ALL else value)
        writer.writerow([*_principal_columns(principal_arn), *cells])
    return buf.getvalue().rstrip("\n")


def dataset_rules(store: MirrorStore, dataset_arn: str) -> list[Permission]:
    return store.list(EntityType.PERMISSION, dataset_arn=dataset_arn)


def grant(
    store: MirrorStore,
    dataset_arn: str,
    principal_arn: str,
    field: str,
    values: Iterable[str] | str,
) -> Outcome:
    """
    Create or replace the rule of one principal on one dataset field.

    `field` must be one of the dataset's mirrored fields or `*`; `values` is a
    list of allowed values (joined with commas) or `*` for all of them.
    """
    dataset: Dataset | None = store.get(EntityType.DATASET, dataset_arn)
    if dataset is None:
        return Outcome.failure(
            f"[NotFound] Dataset '{dataset_arn}' is not mirrored.",
            kind=ErrorKind.NOT_FOUND,
            error_type="NotFound",
        )
    principal: Principal | None = store.get(EntityType.PRINCIPAL, principal_arn)
    if principal is None:
        return Outcome.failure(
            f"[NotFound] Principal '{principal_arn}' is not mirrored.",
            kind=ErrorKind.NOT_FOUND,
            error_type="NotFound",
        )
    if field != ALL and field not in dataset.fields:
        return Outcome.failure(
            f"[ValidationException] Field '{field}' is not a field of dataset '{dataset.name}'.",
            kind=ErrorKind.VALIDATION,
            error_type="ValidationException",
        )

    rls_values = values if isinstance(values, str) else ",".join(v.strip() for v in values if v.strip())
    if not rls_values:
        return Outcome.failure(
            "[ReferenceError] Granting permission: missing 'values'.",
            kind=ErrorKind.VALIDATION,
            error_type="ReferenceError",
        )

    perm = Permission(dataset_arn, principal_arn, field, rls_values)
    if store.get(EntityType.PERMISSION, perm.key) is None:
        written = store.create(EntityType.PERMISSION, perm)
    else:
        written = store.update(EntityType.PERMISSION, perm)
    if written != perm.key:
        return Outcome.failure(
            f"[StoreWriteFailed] Failed to save permission of '{principal.name}' on '{field}'.",
            error_type="StoreWriteFailed",
        )
    logger.info("Permission saved: %s", perm.key)
    return Outcome.success(f"{principal.kind.value} '{principal.name}' granted {field}={rls_values}.")


def revoke(store: MirrorStore, dataset_arn: str, principal_arn: str, field: str | None = None) -> Outcome:
    """Delete the rules of one principal on a dataset (one field or all)."""
    doomed = [
        p
        for p in store.list(EntityType.PERMISSION, dataset_arn=dataset_arn, principal_arn=principal_arn)
        if field is None or p.field == field
    ]
    if not doomed:
        return Outcome.failure(
            f"[NotFound] No permission of '{principal_arn}' on '{dataset_arn}'.",
            kind=ErrorKind.NOT_FOUND,
            error_type="NotFound",
        )
    for perm in doomed:
        if store.delete(EntityType.PERMISSION, perm.key) != perm.key:
            return Outcome.failure(
                f"[StoreWriteFailed] Failed to delete permission '{perm.key}'.",
                error_type="StoreWriteFailed",
            )
    return Outcome.success(f"{len(doomed)} permission(s) revoked.")
