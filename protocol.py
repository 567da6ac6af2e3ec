"""
Message vocabulary and dispatch for the sync connection.

``SyncProtocol`` turns one inbound message into a list of ``Outbound``
deliveries; it never touches sockets. Each delivery names an audience:
the sender only, every other connection, or all connections. Requests may
carry a ``requestId`` which every direct response echoes, so a client can
match responses to the exact request that produced them.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

from pydantic import ValidationError

from errors import SyncError, StudentNotFound
from reconcile import validate
from schemas import DeleteStudentInput, Envelope, QrScanInput, StudentRef, UpdateStudentInput, utcnow
from store import SessionStore

logger = logging.getLogger(__name__)

# Audiences
SENDER = "sender"
OTHERS = "others"
ALL = "all"

# Client -> server
IDENTIFY_DEVICE = "identify-device"
PUSH_WHOLE_DATASET = "push-whole-dataset"
ADD_STUDENT = "add-student"
UPDATE_STUDENT = "update-student"
MARK_ATTENDANCE = "mark-attendance"
QR_SCAN = "qr-scan"
DELETE_STUDENT = "delete-student"
RESTORE_STUDENT = "restore-student"
CLEAR_DELETED = "clear-deleted"
HEARTBEAT = "heartbeat"

# Server -> client
INITIAL_SNAPSHOT = "initial-snapshot"
WHOLE_DATASET_SYNC = "whole-dataset-sync"
UPDATE_CONFIRMED = "update-confirmed"
OPERATION_SUCCESS = "operation-success"
OPERATION_ERROR = "operation-error"
QR_SCAN_RESULT = "qr-scan-result"
STUDENT_SCANNED = "student-scanned"
CLIENT_ROSTER_UPDATE = "client-roster-update"


class Outbound(NamedTuple):
    audience: str
    event: str
    data: Any

    def message(self) -> dict:
        return {"event": self.event, "data": self.data}


def recipients(audience: str, sender_id: Optional[str], conn_ids: Iterable[str]) -> List[str]:
    if audience == SENDER:
        return [c for c in conn_ids if c == sender_id]
    if audience == OTHERS:
        return [c for c in conn_ids if c != sender_id]
    return list(conn_ids)


class SyncProtocol:
    def __init__(self, store: SessionStore):
        self.store = store
        self._handlers: Dict[str, Callable[[str, Any, Optional[str]], List[Outbound]]] = {
            IDENTIFY_DEVICE: self._identify_device,
            PUSH_WHOLE_DATASET: self._push_whole_dataset,
            ADD_STUDENT: self._add_student,
            UPDATE_STUDENT: self._update_student,
            MARK_ATTENDANCE: self._mark_attendance,
            QR_SCAN: self._qr_scan,
            DELETE_STUDENT: self._delete_student,
            RESTORE_STUDENT: self._restore_student,
            CLEAR_DELETED: self._clear_deleted,
            HEARTBEAT: self._heartbeat,
        }

    # ----------------------- Connection lifecycle -----------------------

    def on_connect(self, conn_id: str) -> List[Outbound]:
        self.store.on_connect(conn_id)
        return [
            Outbound(SENDER, INITIAL_SNAPSHOT, self.store.snapshot().to_wire()),
            self.roster_update(),
        ]

    def on_disconnect(self, conn_id: str) -> List[Outbound]:
        self.store.on_disconnect(conn_id)
        return [self.roster_update()]

    def roster_update(self) -> Outbound:
        return Outbound(ALL, CLIENT_ROSTER_UPDATE, self.store.roster())

    def dataset_sync(self, snapshot, audience: str = ALL) -> Outbound:
        return Outbound(audience, WHOLE_DATASET_SYNC, snapshot.to_wire())

    # ----------------------- Dispatch -----------------------

    def on_message(self, conn_id: str, message: Any) -> List[Outbound]:
        try:
            envelope = Envelope.model_validate(message)
        except ValidationError:
            logger.warning("Malformed message from %s", conn_id)
            return [Outbound(SENDER, OPERATION_ERROR, {"operation": None, "error": "Malformed message", "kind": "VALIDATION"})]

        handler = self._handlers.get(envelope.event)
        if handler is None:
            logger.warning("Unknown event %r from %s", envelope.event, conn_id)
            return [self._error(envelope, SyncError(f"Unknown event: {envelope.event}"))]

        try:
            return handler(conn_id, envelope.data, envelope.request_id)
        except SyncError as exc:
            logger.warning("%s from %s rejected: %s", envelope.event, conn_id, exc.message)
            return [self._error(envelope, exc)]
        except Exception:
            logger.exception("Unhandled error processing %s from %s", envelope.event, conn_id)
            return [self._error(envelope, SyncError("Internal server error"))]

    def _error(self, envelope: Envelope, exc: SyncError) -> Outbound:
        payload = {"operation": envelope.event, **exc.to_payload(), "requestId": envelope.request_id}
        student_id = getattr(exc, "student_id", None)
        if student_id:
            payload["studentId"] = student_id
        return Outbound(SENDER, OPERATION_ERROR, payload)

    def _success(self, operation: str, data: Any, request_id: Optional[str]) -> Outbound:
        return Outbound(SENDER, OPERATION_SUCCESS, {"operation": operation, "data": data, "requestId": request_id})

    # ----------------------- Handlers -----------------------

    def _identify_device(self, conn_id, data, request_id):
        self.store.on_client_info(conn_id, data)
        return [self.roster_update()]

    def _heartbeat(self, conn_id, data, request_id):
        self.store.on_heartbeat(conn_id)
        return []

    def _push_whole_dataset(self, conn_id, data, request_id):
        logger.info("Whole dataset received from %s", conn_id)
        snapshot = self.store.replace(data)
        return [
            self.dataset_sync(snapshot, OTHERS),
            Outbound(SENDER, UPDATE_CONFIRMED, {
                "success": True,
                "timestamp": snapshot.last_updated.isoformat(),
                "requestId": request_id,
            }),
        ]

    def _add_student(self, conn_id, data, request_id):
        student, snapshot = self.store.add_student(data)
        return [self.dataset_sync(snapshot), self._success(ADD_STUDENT, student.to_wire(), request_id)]

    def _update_student(self, conn_id, data, request_id):
        ref = validate(UpdateStudentInput, data)
        student, snapshot = self.store.update_student(ref.student_id, ref.updates)
        return [self.dataset_sync(snapshot), self._success(UPDATE_STUDENT, student.to_wire(), request_id)]

    def _mark_attendance(self, conn_id, data, request_id):
        entry, snapshot = self.store.mark_attendance(data)
        return [self.dataset_sync(snapshot), self._success(MARK_ATTENDANCE, entry.to_wire(), request_id)]

    def _delete_student(self, conn_id, data, request_id):
        ref = validate(DeleteStudentInput, data)
        if ref.permanent:
            (student, source), snapshot = self.store.delete_permanent(ref.student_id)
            result = {"student": student.to_wire(), "source": source}
        else:
            tombstone, snapshot = self.store.soft_delete(ref.student_id, ref.deleted_by)
            result = tombstone.to_wire()
        return [self.dataset_sync(snapshot), self._success(DELETE_STUDENT, result, request_id)]

    def _restore_student(self, conn_id, data, request_id):
        ref = validate(StudentRef, data)
        student, snapshot = self.store.restore_student(ref.student_id)
        return [self.dataset_sync(snapshot), self._success(RESTORE_STUDENT, student.to_wire(), request_id)]

    def _clear_deleted(self, conn_id, data, request_id):
        count, snapshot = self.store.clear_deleted()
        return [self.dataset_sync(snapshot), self._success(CLEAR_DELETED, {"cleared": count}, request_id)]

    def _qr_scan(self, conn_id, data, request_id):
        try:
            scan = validate(QrScanInput, data)
            (student, adopted), snapshot = self.store.qr_scan(scan.student_id, scan.student)
        except SyncError as exc:
            if not isinstance(exc, StudentNotFound):
                logger.warning("qr-scan from %s rejected: %s", conn_id, exc.message)
            return [Outbound(SENDER, QR_SCAN_RESULT, {"success": False, **exc.to_payload(), "requestId": request_id})]

        out = [self.dataset_sync(snapshot)] if adopted else []
        out.append(Outbound(SENDER, QR_SCAN_RESULT, {
            "success": True,
            "student": student.to_wire(),
            "adopted": adopted,
            "requestId": request_id,
        }))
        out.append(Outbound(ALL, STUDENT_SCANNED, {
            "studentId": student.id,
            "studentName": student.full_name,
            "timestamp": utcnow().isoformat(),
        }))
        return out
