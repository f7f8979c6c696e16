"""
Evolution Data Server calendar acting as the remote calendar.
"""

import logging
import uuid
from typing import Any

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from timetable_sync.ical import payload_to_vevent
from timetable_sync.ical import vevent_to_payload
from timetable_sync.models import PreconditionFailed
from timetable_sync.models import RemoteAuthError
from timetable_sync.models import RemoteNotFound
from timetable_sync.models import RemoteRef
from timetable_sync.models import RemoteTransientError
from timetable_sync.models import TimetableSyncError
from timetable_sync.remote import call_with_retry

logger = logging.getLogger(__name__)

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend (e-m365-error-quark) embeds the Exchange EWS error name in the
# message string rather than mapping it to a fixed quark code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"

_AUTH_KEYWORDS = frozenset(
    {
        "authentication failed",
        "authentication required",
        "unauthorized",
        "forbidden",
        "invalid credentials",
        "token expired",
    }
)


def is_not_found_error(e: GLib.Error) -> bool:
    """Return True when EDS reports that a calendar object does not exist.

    Covers both the generic EDS client quark (e-cal-client-error-quark code 1)
    and the M365 backend quark, which embeds "ErrorItemNotFound" in the message.
    """
    domain = e.domain or ""
    if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
        return True
    if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
        return True
    return "object not found" in (e.message or "").lower()


def translate_error(e: GLib.Error, what: str) -> TimetableSyncError:
    """Map a GLib error onto the remote error taxonomy."""
    message = e.message or str(e)
    if is_not_found_error(e):
        return RemoteNotFound(f"{what}: {message}")
    if any(kw in message.lower() for kw in _AUTH_KEYWORDS):
        return RemoteAuthError(f"{what}: {message}")
    return RemoteTransientError(f"{what}: {message}")


class EDSCalendarClient:
    """Remote calendar client backed by one EDS calendar source.

    EDS keeps no version token of its own, so the token is a hash of the
    event content as read back from the store.
    """

    def __init__(
        self,
        registry: EDataServer.SourceRegistry,
        calendar_uid: str,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.client: ECal.Client | None = None

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise RemoteNotFound(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        def _connect():
            try:
                return ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, timeout, None)
            except GLib.Error as e:
                raise translate_error(e, f"connect to {self.calendar_uid}") from e

        self.client = self._retry(_connect, f"connect to {self.calendar_uid}")

    def _retry(self, operation, description: str):
        return call_with_retry(
            operation,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            description=description,
        )

    def _require_client(self) -> ECal.Client:
        if not self.client:
            raise RemoteTransientError("Client not connected")
        return self.client

    def _fetch(self, remote_id: str) -> ICalGLib.Component:
        client = self._require_client()

        def _get():
            try:
                success, icalcomp = client.get_object_sync(remote_id, None, None)
            except GLib.Error as e:
                raise translate_error(e, f"get {remote_id}") from e
            if not success or not icalcomp:
                raise RemoteNotFound(f"get {remote_id}: object not found")
            # Handle both string and Component returns
            if isinstance(icalcomp, str):
                return ICalGLib.Component.new_from_string(icalcomp)
            return icalcomp

        return self._retry(_get, f"get {remote_id}")

    def get(self, remote_id: str) -> dict[str, Any]:
        return vevent_to_payload(self._fetch(remote_id))

    def create(self, payload: dict[str, Any]) -> RemoteRef:
        client = self._require_client()
        component = payload_to_vevent(payload, str(uuid.uuid4()))

        def _create():
            try:
                success, out_uid = client.create_object_sync(
                    component, ECal.OperationFlags.NONE, None
                )
            except GLib.Error as e:
                raise translate_error(e, "create") from e
            if not success:
                raise RemoteTransientError("create: backend refused the event")
            return out_uid

        remote_id = self._retry(_create, "create") or component.get_uid()
        logger.debug(f"Server assigned UID: {remote_id}")

        # Read back what the backend actually stored to derive the version.
        stored = self.get(remote_id)
        return RemoteRef(remote_id=remote_id, version=stored["etag"])

    def update(
        self, remote_id: str, payload: dict[str, Any], expected_version: str | None = None
    ) -> RemoteRef:
        client = self._require_client()
        current = self.get(remote_id)
        if expected_version is not None and current["etag"] != expected_version:
            raise PreconditionFailed(
                f"update {remote_id}: held version {expected_version} is stale",
                current_version=current["etag"],
            )

        component = payload_to_vevent(payload, remote_id)

        def _modify():
            try:
                success = client.modify_object_sync(
                    component, ECal.ObjModType.ALL, ECal.OperationFlags.NONE, None
                )
            except GLib.Error as e:
                raise translate_error(e, f"update {remote_id}") from e
            if not success:
                raise RemoteTransientError(f"update {remote_id}: backend refused the change")

        self._retry(_modify, f"update {remote_id}")
        stored = self.get(remote_id)
        return RemoteRef(remote_id=remote_id, version=stored["etag"])


def connect_remote(
    calendar_uid: str, max_retries: int = 3, retry_base_delay: float = 1.0
) -> EDSCalendarClient:
    """Open the EDS registry and connect a client to ``calendar_uid``."""
    logger.info("Connecting to Evolution Data Server...")
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        raise RemoteTransientError(f"EDS registry unreachable: {e.message}") from e
    client = EDSCalendarClient(registry, calendar_uid, max_retries, retry_base_delay)
    client.connect()
    return client
