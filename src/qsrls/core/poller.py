"""Bounded polling of long-running remote operations.

The poller checks a remote status at a fixed interval until it reaches a
terminal state. It never retries a failed operation itself: a failed or
cancelled status, a transport error, or exhausting the attempt bound all end
the loop with a failure outcome. Waiting is delegated to an injected `sleep`
so callers (and tests) control how the flow of control is suspended.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from qsrls.core.errors import ErrorKind, Outcome, RemoteError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5
DEFAULT_MAX_ATTEMPTS = 120


class PollState(str, Enum):
    """Normalized state reported by one poll."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PollStatus:
    """
    Result of one status probe.

    Attributes:
        state: RUNNING to keep polling, COMPLETED or FAILED to stop.
        raw_status: Remote status string (e.g. QUEUED, CANCELLED).
        error_type: Remote error classification for FAILED states.
        message: Remote error message for FAILED states.
    """

    state: PollState
    raw_status: str = ""
    error_type: str | None = None
    message: str | None = None


class IngestionAdapter(Protocol):
    """Interface for querying dataset ingestion status."""

    def describe_ingestion(self, dataset_id: str, ingestion_id: str) -> dict:
        """Return the remote Ingestion structure."""
        ...


_RUNNING_STATUSES = {"QUEUED", "INITIALIZED", "RUNNING"}
_FAILED_STATUSES = {"FAILED", "CANCELLED"}


def ingestion_status(ingestion: dict) -> PollStatus:
    """Normalize a remote Ingestion structure into a PollStatus."""
    status = str(ingestion.get("IngestionStatus") or "")
    if status == "COMPLETED":
        return PollStatus(PollState.COMPLETED, status)
    if status in _RUNNING_STATUSES:
        return PollStatus(PollState.RUNNING, status)
    if status in _FAILED_STATUSES:
        info = ingestion.get("ErrorInfo") or {}
        return PollStatus(
            PollState.FAILED,
            status,
            error_type=f"QuickSightIngestion_{status}_{info.get('Type')}",
            message=info.get("Message") or f"Ingestion {status.lower()}",
        )
    return PollStatus(
        PollState.FAILED,
        status,
        error_type="UnknownError",
        message=f"Unexpected ingestion status '{status or 'missing'}'",
    )


def poll_until(
    probe: Callable[[], PollStatus],
    *,
    label: str,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> Outcome:
    """
    Probe a remote operation until it reaches a terminal state.

    The first probe happens immediately; every further probe is preceded by
    one wait of `poll_interval` seconds. At most `max_attempts` probes are
    made.

    Args:
        probe: Callable returning the current PollStatus.
        label: Name of the operation, used in messages.
        poll_interval: Seconds to wait between probes.
        max_attempts: Maximum number of probes before giving up.
        sleep: Wait primitive.

    Returns:
        A success Outcome on COMPLETED, otherwise a failure Outcome carrying
        the remote classification.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            status = probe()
        except RemoteError as exc:
            logger.error("Polling %s failed: %s", label, exc.message)
            return Outcome.from_error(exc, context=f"Polling {label}")

        if status.state is PollState.COMPLETED:
            logger.info("%s completed after %d poll(s)", label, attempt)
            return Outcome.success(f"{label} completed.")

        if status.state is PollState.FAILED:
            logger.error("%s ended with %s: %s", label, status.raw_status, status.message)
            return Outcome.failure(
                f"[{status.error_type}] {label}: {status.message}",
                kind=ErrorKind.UNKNOWN,
                error_type=status.error_type,
            )

        if attempt >= max_attempts:
            logger.error("%s still %s after %d poll(s)", label, status.raw_status, attempt)
            return Outcome.failure(
                f"[PollTimeout] {label}: still {status.raw_status or 'running'} "
                f"after {attempt} poll(s)",
                kind=ErrorKind.TIMED_OUT,
                error_type="PollTimeout",
            )

        logger.info("%s is %s, waiting %ss", label, status.raw_status, poll_interval)
        sleep(poll_interval)


def wait_for_ingestion(
    adapter: IngestionAdapter,
    dataset_id: str,
    ingestion_id: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> Outcome:
    """
    Block until a dataset ingestion reaches COMPLETED, FAILED or CANCELLED.

    Args:
        adapter: QuickSight adapter used to describe the ingestion.
        dataset_id: Dataset the ingestion belongs to.
        ingestion_id: Ingestion to monitor.
        poll_interval: Seconds between status checks.
        max_attempts: Maximum number of status checks.
        sleep: Wait primitive.
    """
    return poll_until(
        lambda: ingestion_status(adapter.describe_ingestion(dataset_id, ingestion_id)),
        label=f"Ingestion '{ingestion_id}' of dataset '{dataset_id}'",
        poll_interval=poll_interval,
        max_attempts=max_attempts,
        sleep=sleep,
    )
