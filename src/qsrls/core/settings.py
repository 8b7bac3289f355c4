"""Runtime settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from qsrls.core.poller import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL

_ENV_PREFIX = "QSRLS_"


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    """Return an integer env value, falling back to the default when invalid."""
    raw = os.getenv(_ENV_PREFIX + name)
    if raw is None:
        return default
    try:
        return max(int(raw), minimum)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(_ENV_PREFIX + name)
    return raw.strip() if raw and raw.strip() else default


@dataclass(frozen=True)
class Settings:
    """
    Settings shared by the core and the CLI.

    Attributes:
        account_id: AWS account id; resolved through STS when not set.
        management_region: QuickSight identity region used for namespace,
            group and user listings.
        resource_prefix: Prefix of generated bucket / database / data source names.
        api_max_results: Page size requested from list APIs.
        poll_interval: Seconds between ingestion status checks.
        poll_max_attempts: Maximum ingestion status checks per wait.
        log_level: Log level for the CLI's rich log handler.
    """

    account_id: str | None = None
    management_region: str | None = None
    resource_prefix: str = "qs-managed-rls-"
    api_max_results: int = 100
    poll_interval: int = DEFAULT_POLL_INTERVAL
    poll_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from QSRLS_* environment variables."""
        return cls(
            account_id=_env_str("ACCOUNT_ID"),
            management_region=_env_str("MANAGEMENT_REGION"),
            resource_prefix=_env_str("RESOURCE_PREFIX", cls.resource_prefix),
            api_max_results=_env_int("API_MAX_RESULTS", cls.api_max_results, minimum=1),
            poll_interval=_env_int("POLL_INTERVAL", cls.poll_interval),
            poll_max_attempts=_env_int("POLL_MAX_ATTEMPTS", cls.poll_max_attempts, minimum=1),
            log_level=(_env_str("LOG_LEVEL", cls.log_level) or cls.log_level).upper(),
        )
