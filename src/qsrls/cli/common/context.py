"""Application context management for the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import boto3

from qsrls.cli.common.exits import die
from qsrls.core.adapters.catalog import GlueAdapter
from qsrls.core.adapters.mirrorstore import JsonMirrorStore
from qsrls.core.adapters.quicksight import QuickSightAdapter
from qsrls.core.adapters.storage import S3Adapter
from qsrls.core.auth import AuthError, get_session, resolve_account_id
from qsrls.core.models import AccountDetails, EntityType
from qsrls.core.pipeline import PublishServices
from qsrls.core.settings import Settings


@dataclass
class RegionAdapters:
    """Remote adapters bound to one region."""

    region: str
    quicksight: QuickSightAdapter
    storage: S3Adapter
    catalog: GlueAdapter


@dataclass
class QsAppContext:
    """
    Application context shared by every command of one invocation.

    The AWS session and account id are resolved lazily so commands working
    only on the local mirror never touch AWS.
    """

    profile: str | None
    settings: Settings
    store: JsonMirrorStore
    _regions: dict[str, RegionAdapters] = field(default_factory=dict)

    @cached_property
    def session(self) -> boto3.session.Session:
        try:
            return get_session(self.profile)
        except AuthError as exc:
            die(str(exc), code=1)

    @cached_property
    def account_id(self) -> str:
        if self.settings.account_id:
            return self.settings.account_id
        account: Any = next(iter(self.store.list(EntityType.ACCOUNT)), None)
        if account is not None:
            return account.account_id
        try:
            return resolve_account_id(self.session, self.profile)
        except AuthError as exc:
            die(str(exc), code=1)

    def account(self) -> AccountDetails | None:
        return next(iter(self.store.list(EntityType.ACCOUNT)), None)

    def management_region(self) -> str:
        """Return the management region (settings first, then the account record)."""
        if self.settings.management_region:
            return self.settings.management_region
        account = self.account()
        if account is None:
            die(
                "Management region unknown. Run `qsrls account init --region <region>` "
                "or set QSRLS_MANAGEMENT_REGION.",
                code=2,
            )
        return account.management_region

    def region(self, name: str) -> RegionAdapters:
        """Return (and cache) the adapters of one region."""
        if name not in self._regions:
            self._regions[name] = RegionAdapters(
                region=name,
                quicksight=QuickSightAdapter(
                    self.session,
                    self.account_id,
                    name,
                    max_results=self.settings.api_max_results,
                ),
                storage=S3Adapter(self.session, name),
                catalog=GlueAdapter(self.session, self.account_id, name),
            )
        return self._regions[name]

    def publish_services(self, name: str) -> PublishServices:
        adapters = self.region(name)
        return PublishServices(
            storage=adapters.storage,
            catalog=adapters.catalog,
            quicksight=adapters.quicksight,
            poll_interval=self.settings.poll_interval,
            max_attempts=self.settings.poll_max_attempts,
        )


def build_context(profile: str | None) -> QsAppContext:
    """Build and return the application context for one invocation.

    Args:
        profile: Optional AWS profile name to use for authentication.

    Returns:
        QsAppContext: Context with settings and the local mirror store.
    """
    return QsAppContext(profile=profile, settings=Settings.from_env(), store=JsonMirrorStore())
