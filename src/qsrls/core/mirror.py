"""Interface of the local mirror store used by the core."""

from __future__ import annotations

from typing import Any, Protocol

from qsrls.core.models import EntityType


class MirrorStore(Protocol):
    """
    Record store keyed by stable identifiers.

    Writes return the identity of the written record; `None` means the store
    did not confirm the write and the caller must treat it as a failure.
    """

    def get(self, entity: EntityType, key: str) -> Any | None:
        """Return the record with the given identity, or None."""
        ...

    def list(self, entity: EntityType, **filters: Any) -> list[Any]:
        """Return records whose attributes equal every given filter value."""
        ...

    def create(self, entity: EntityType, record: Any) -> str | None:
        """Insert a new record."""
        ...

    def update(self, entity: EntityType, record: Any) -> str | None:
        """Replace an existing record."""
        ...

    def delete(self, entity: EntityType, key: str) -> str | None:
        """Delete a record by identity."""
        ...
