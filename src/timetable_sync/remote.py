"""
Remote calendar client contract and the shared retry policy.
"""

import logging
import time
from typing import Any
from typing import Callable
from typing import Protocol
from typing import TypeVar

from tenacity import RetryCallState
from tenacity import Retrying
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from timetable_sync.models import RemoteRef
from timetable_sync.models import RemoteTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteCalendarClient(Protocol):
    """Anything the orchestrator can push payloads to.

    ``update`` raises PreconditionFailed when ``expected_version`` no longer
    matches the remote object; ``update`` and ``get`` raise RemoteNotFound when
    the object is gone.  Transport problems surface as RemoteTransientError and
    credential problems as RemoteAuthError.
    """

    def create(self, payload: dict[str, Any]) -> RemoteRef: ...

    def update(
        self, remote_id: str, payload: dict[str, Any], expected_version: str | None = None
    ) -> RemoteRef: ...

    def get(self, remote_id: str) -> dict[str, Any]: ...


class MeteredClient:
    """Wraps a client and counts every create/update/get as one quota unit."""

    def __init__(self, client: RemoteCalendarClient):
        self.client = client
        self.calls = 0

    def create(self, payload: dict[str, Any]) -> RemoteRef:
        self.calls += 1
        return self.client.create(payload)

    def update(
        self, remote_id: str, payload: dict[str, Any], expected_version: str | None = None
    ) -> RemoteRef:
        self.calls += 1
        return self.client.update(remote_id, payload, expected_version)

    def get(self, remote_id: str) -> dict[str, Any]:
        self.calls += 1
        return self.client.get(remote_id)


def call_with_retry(
    operation: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "remote call",
) -> T:
    """Run ``operation``, retrying RemoteTransientError with exponential backoff.

    Waits ``base_delay * 2**(attempt - 1)`` between attempts.  Every other
    error propagates on first occurrence.
    """

    def _log_retry(retry_state: RetryCallState):
        logger.warning(
            f"{description} failed (attempt {retry_state.attempt_number}/{max_retries}), "
            f"retrying in {retry_state.next_action.sleep:.1f}s: "
            f"{retry_state.outcome.exception()}"
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_exception_type(RemoteTransientError),
        reraise=True,
        sleep=sleep,
        before_sleep=_log_retry,
    )
    return retrying(operation)
