"""
Error taxonomy shared by the store, the wire protocol and the client mirror.

Every error carries a short ``kind`` so clients can tell a duplicate id apart
from a generic validation failure without parsing the message.
"""

from typing import Optional

from pydantic import ValidationError


class SyncError(Exception):
    kind = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class ValidationFailed(SyncError):
    kind = "VALIDATION"


class StudentNotFound(SyncError):
    kind = "NOT_FOUND"

    def __init__(self, student_id: str, message: Optional[str] = None):
        super().__init__(message or f"Student with ID {student_id} not found")
        self.student_id = student_id


class DuplicateStudent(SyncError):
    kind = "DUPLICATE_ID"
    prefix = "DUPLICATE_ID|"

    def __init__(self, student_id: str, existing_name: str = "", suggested_id: Optional[str] = None):
        detail = f'Student with ID "{student_id}" already exists'
        if existing_name:
            detail += f" ({existing_name})"
        if suggested_id:
            detail += f". Suggested next ID: {suggested_id}"
        super().__init__(self.prefix + detail)
        self.student_id = student_id
        self.suggested_id = suggested_id

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.suggested_id:
            payload["suggestedId"] = self.suggested_id
        return payload


def from_validation_error(exc: ValidationError) -> ValidationFailed:
    """Collapse a pydantic error into one short human-readable line."""
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return ValidationFailed("Invalid data: " + "; ".join(parts))


_KINDS = {cls.kind: cls for cls in (ValidationFailed, StudentNotFound, DuplicateStudent)}


def from_payload(payload: dict) -> SyncError:
    """Rebuild an exception from an ``operation-error`` payload."""
    kind = payload.get("kind")
    message = payload.get("error") or "Operation failed"
    if kind == DuplicateStudent.kind:
        exc = DuplicateStudent.__new__(DuplicateStudent)
        SyncError.__init__(exc, message)
        exc.student_id = payload.get("studentId", "")
        exc.suggested_id = payload.get("suggestedId")
        return exc
    if kind == StudentNotFound.kind:
        return StudentNotFound(payload.get("studentId", ""), message)
    return _KINDS.get(kind, SyncError)(message)
