"""
Authoritative in-memory state for the sync server.

``SessionStore`` owns the one true ``Dataset`` and the registry of connected
clients. Every mutation, whether a targeted operation or a whole-dataset
replace, runs under a single lock against a working copy that is committed
only when the operation returns, so a failed operation leaves the dataset
untouched and readers never see a half-applied change.
"""

import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import reconcile
import settings
from schemas import ClientInfo, Dataset, DeviceInfo, utcnow

logger = logging.getLogger(__name__)

# set by the server, never by the client's device report
REGISTRY_FIELDS = frozenset(["id", "connectedAt", "connected_at", "lastActivity", "last_activity"])


class SessionStore:
    def __init__(self, max_sessions: int = settings.MAX_SESSIONS, version: str = settings.APP_VERSION):
        self.max_sessions = max_sessions
        self.started_at = time.monotonic()
        self._lock = threading.RLock()
        self._dataset = Dataset(version=version)
        self._clients: Dict[str, ClientInfo] = {}

    # ----------------------- Dataset -----------------------

    def snapshot(self) -> Dataset:
        with self._lock:
            return self._dataset.model_copy(deep=True)

    def mutate(self, fn: Callable[..., Any], *args, **kwargs) -> Tuple[Any, Dataset]:
        """
        Apply ``fn(dataset, *args, **kwargs)`` atomically.

        Returns the operation's result and a snapshot taken at commit time.
        Exceptions propagate and nothing is committed.
        """
        with self._lock:
            working = self._dataset.model_copy(deep=True)
            result = fn(working, *args, **kwargs)
            self._dataset = working
            return copy.deepcopy(result), working.model_copy(deep=True)

    def replace(self, payload: Any) -> Dataset:
        """Whole-dataset replace: the incoming snapshot wins outright."""
        dataset = reconcile.replace_dataset(payload, self.max_sessions)
        with self._lock:
            self._dataset = dataset
            logger.info(
                "Dataset replaced: %d students, %d records, %d logs",
                len(dataset.students),
                len(dataset.student_records),
                len(dataset.attendance_logs),
            )
            return dataset.model_copy(deep=True)

    def add_student(self, payload: Any):
        return self.mutate(reconcile.add_student, payload, self.max_sessions)

    def update_student(self, student_id: Any, updates: Dict[str, Any]):
        return self.mutate(reconcile.update_student, student_id, updates)

    def mark_attendance(self, payload: Any):
        return self.mutate(reconcile.mark_attendance, payload, self.max_sessions)

    def qr_scan(self, student_id: Any, client_copy: Optional[Any] = None):
        return self.mutate(reconcile.qr_scan, student_id, client_copy, self.max_sessions)

    def soft_delete(self, student_id: Any, deleted_by: str = "system"):
        return self.mutate(reconcile.soft_delete, student_id, deleted_by)

    def restore_student(self, student_id: Any):
        return self.mutate(reconcile.restore_student, student_id, self.max_sessions)

    def delete_permanent(self, student_id: Any):
        return self.mutate(reconcile.delete_permanent, student_id)

    def clear_deleted(self):
        return self.mutate(reconcile.clear_deleted)

    def next_available_id(self) -> str:
        with self._lock:
            return reconcile.next_available_id(self._dataset)

    def statistics(self) -> dict:
        with self._lock:
            return reconcile.statistics(self._dataset, self.max_sessions)

    # ----------------------- Clients -----------------------

    def on_connect(self, conn_id: str) -> ClientInfo:
        info = ClientInfo(id=conn_id)
        with self._lock:
            self._clients[conn_id] = info
            logger.info("Client connected: %s (%d total)", conn_id, len(self._clients))
            return info.model_copy()

    def on_client_info(self, conn_id: str, info: Any) -> Optional[ClientInfo]:
        device = reconcile.validate(DeviceInfo, info or {})
        with self._lock:
            client = self._clients.get(conn_id)
            if client is None:
                return None
            extra = {k: v for k, v in (device.model_extra or {}).items() if k not in REGISTRY_FIELDS}
            merged = {**client.model_dump(by_alias=True), **extra}
            merged["deviceType"] = device.device_type or "unknown"
            merged["deviceName"] = device.device_name or "Unknown Device"
            merged["lastActivity"] = utcnow()
            client = ClientInfo.model_validate(merged)
            self._clients[conn_id] = client
            return client.model_copy()

    def on_heartbeat(self, conn_id: str) -> bool:
        with self._lock:
            client = self._clients.get(conn_id)
            if client is None:
                return False
            client.last_activity = utcnow()
            return True

    def on_disconnect(self, conn_id: str) -> Optional[ClientInfo]:
        with self._lock:
            client = self._clients.pop(conn_id, None)
            logger.info("Client disconnected: %s (%d remaining)", conn_id, len(self._clients))
            return client

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def roster(self) -> dict:
        with self._lock:
            clients = [c.to_wire() for c in self._clients.values()]
        return {"count": len(clients), "clients": clients}

    def uptime(self) -> float:
        return time.monotonic() - self.started_at
