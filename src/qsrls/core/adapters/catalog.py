from __future__ import annotations

import uuid
from typing import Any

import boto3

from qsrls.core.errors import remote_call


class GlueAdapter:
    """Adapter around Glue Data Catalog database/table APIs for one region."""

    def __init__(self, session: boto3.session.Session, account_id: str, region: str) -> None:
        self.account_id = account_id
        self.region = region
        self.client = session.client("glue", region_name=region)

    def get_database(self, name: str) -> dict[str, Any]:
        """Return the database definition (raises RemoteError NOT_FOUND if absent)."""
        with remote_call("GetDatabase"):
            return self.client.get_database(Name=name)["Database"]

    def create_database(self, prefix: str) -> str:
        """Create a database named `{prefix}{uuid4}` and return its name."""
        name = f"{prefix}{uuid.uuid4()}"
        with remote_call("CreateDatabase"):
            self.client.create_database(
                DatabaseInput={
                    "Name": name,
                    "Description": "Database created by the QuickSight managed RLS tool",
                }
            )
        return name

    def get_table(self, database: str, name: str) -> dict[str, Any]:
        """Return a table definition."""
        with remote_call("GetTable"):
            return self.client.get_table(DatabaseName=database, Name=name)["Table"]

    def create_table(self, database: str, table_input: dict[str, Any]) -> None:
        """Create a table from a TableInput."""
        with remote_call("CreateTable"):
            self.client.create_table(
                CatalogId=self.account_id, DatabaseName=database, TableInput=table_input
            )

    def update_table(self, database: str, table_input: dict[str, Any]) -> None:
        """Replace a table definition in place."""
        with remote_call("UpdateTable"):
            self.client.update_table(
                CatalogId=self.account_id, DatabaseName=database, TableInput=table_input
            )

    def delete_table(self, database: str, name: str) -> None:
        """Delete a table."""
        with remote_call("DeleteTable"):
            self.client.delete_table(
                CatalogId=self.account_id, DatabaseName=database, Name=name
            )
