"""
Client-side mirror of the authoritative dataset.

Inbound snapshots replace the local collections wholesale; nothing is merged
with unsynced local edits, so an edit made between the last push and the next
inbound snapshot is lost. Outbound traffic is either a whole-dataset push
(``bulk`` mode) or a targeted operation (``targeted`` mode) whose response is
matched by a per-request id.
"""

import logging
import threading
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

import errors
import protocol
import reconcile
import settings
from schemas import Dataset

logger = logging.getLogger(__name__)

BULK = "bulk"
TARGETED = "targeted"

Send = Callable[[dict], None]


def _resolved(value: Any) -> Future:
    future = Future()
    future.set_result(value)
    return future


def _failed(exc: BaseException) -> Future:
    future = Future()
    future.set_exception(exc)
    return future


def _wire(value: Any) -> Any:
    if hasattr(value, "to_wire"):
        return value.to_wire()
    if isinstance(value, tuple):
        return tuple(_wire(v) for v in value)
    return value


class SyncClient:
    def __init__(
        self,
        mode: str = TARGETED,
        max_sessions: int = settings.MAX_SESSIONS,
        device: Optional[Dict[str, Any]] = None,
    ):
        if mode not in (BULK, TARGETED):
            raise ValueError(f"unknown sync mode {mode!r}")
        self.mode = mode
        self.max_sessions = max_sessions
        self.device = device or {"deviceType": "desktop", "deviceName": "Python client"}
        self.dataset = Dataset()
        self.roster: Dict[str, Any] = {"count": 0, "clients": []}
        self.scanned = []
        self.connected = False
        self._send: Optional[Send] = None
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()

    # ----------------------- Connection -----------------------

    def connect(self, send: Send) -> None:
        self._send = send
        self.connected = True
        self._emit(protocol.IDENTIFY_DEVICE, self.device)

    def disconnect(self) -> None:
        self.connected = False
        self._send = None
        with self._lock:
            pending, self._pending = self._pending, {}
        for future in pending.values():
            future.set_exception(ConnectionError("Disconnected from server"))

    def heartbeat(self) -> None:
        if self.connected:
            self._emit(protocol.HEARTBEAT, None)

    def _emit(self, event: str, data: Any, request_id: Optional[str] = None) -> None:
        message = {"event": event, "data": data}
        if request_id is not None:
            message["requestId"] = request_id
        self._send(message)

    def _request(self, event: str, data: Any) -> Future:
        request_id = uuid.uuid4().hex
        future = Future()
        with self._lock:
            self._pending[request_id] = future
        self._emit(event, data, request_id)
        return future

    def _settle(self, request_id: Optional[str], result: Any = None, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            future = self._pending.pop(request_id, None) if request_id else None
        if future is None:
            logger.debug("No pending request for response %s", request_id)
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    # ----------------------- Inbound -----------------------

    def handle(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        data = message.get("data") or {}

        if event in (protocol.INITIAL_SNAPSHOT, protocol.WHOLE_DATASET_SYNC):
            self.apply_snapshot(data)
        elif event == protocol.OPERATION_SUCCESS:
            self._settle(data.get("requestId"), data.get("data"))
        elif event == protocol.OPERATION_ERROR:
            self._settle(data.get("requestId"), exc=errors.from_payload(data))
        elif event == protocol.QR_SCAN_RESULT:
            if data.get("success"):
                self._settle(data.get("requestId"), data.get("student"))
            else:
                self._settle(data.get("requestId"), exc=errors.from_payload(data))
        elif event == protocol.UPDATE_CONFIRMED:
            self._settle(data.get("requestId"), data)
        elif event == protocol.CLIENT_ROSTER_UPDATE:
            self.roster = data
        elif event == protocol.STUDENT_SCANNED:
            self.scanned.append(data)
        else:
            logger.debug("Ignoring unknown event %r", event)

    def apply_snapshot(self, data: Any) -> None:
        """Replace the four local collections with the server's, no merge."""
        try:
            self.dataset = reconcile.decode_dataset(data, self.max_sessions)
        except errors.SyncError as exc:
            logger.error("Discarding unreadable snapshot: %s", exc.message)

    # ----------------------- Outbound -----------------------

    def push_dataset(self) -> Future:
        if not self.connected:
            return _failed(ConnectionError("Not connected to server"))
        wire = self.dataset.to_wire()
        payload = {key: wire[key] for key in reconcile.COLLECTIONS}
        return self._request(protocol.PUSH_WHOLE_DATASET, payload)

    def _operate(self, event: str, payload: Any, apply_locally: Callable[[Dataset], Any]) -> Future:
        if self.connected and self.mode == TARGETED:
            return self._request(event, payload)
        try:
            result = apply_locally(self.dataset)
        except errors.SyncError as exc:
            return _failed(exc)
        if self.connected:
            self.push_dataset()
        return _resolved(_wire(result))

    def add_student(self, payload: Dict[str, Any]) -> Future:
        return self._operate(
            protocol.ADD_STUDENT,
            payload,
            lambda ds: reconcile.add_student(ds, payload, self.max_sessions),
        )

    def update_student(self, student_id: Any, updates: Dict[str, Any]) -> Future:
        return self._operate(
            protocol.UPDATE_STUDENT,
            {"studentId": student_id, "updates": updates},
            lambda ds: reconcile.update_student(ds, student_id, updates),
        )

    def mark_attendance(self, payload: Dict[str, Any]) -> Future:
        return self._operate(
            protocol.MARK_ATTENDANCE,
            payload,
            lambda ds: reconcile.mark_attendance(ds, payload, self.max_sessions),
        )

    def delete_student(self, student_id: Any, permanent: bool = False) -> Future:
        if permanent:
            local = lambda ds: dict(zip(("student", "source"), _wire(reconcile.delete_permanent(ds, student_id))))
        else:
            local = lambda ds: reconcile.soft_delete(ds, student_id)
        return self._operate(
            protocol.DELETE_STUDENT,
            {"studentId": student_id, "permanent": permanent},
            local,
        )

    def restore_student(self, student_id: Any) -> Future:
        return self._operate(
            protocol.RESTORE_STUDENT,
            {"studentId": student_id},
            lambda ds: reconcile.restore_student(ds, student_id, self.max_sessions),
        )

    def scan(self, student_id: Any) -> Future:
        """
        Ask the server to resolve a scanned id, attaching the local copy of
        the student (if any) so the server can adopt it on a miss.
        """
        try:
            sid = reconcile.canonical_id(student_id)
        except errors.SyncError as exc:
            return _failed(exc)
        cached = reconcile.find_student(self.dataset, sid)
        if not self.connected:
            if cached is None:
                return _failed(errors.StudentNotFound(sid, "Student not found"))
            return _resolved(cached.to_wire())

        payload = {"studentId": sid}
        if cached is not None:
            payload["student"] = cached.to_wire()
        return self._request(protocol.QR_SCAN, payload)
