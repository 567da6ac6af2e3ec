"""
Merge rules for the authoritative dataset.

Two strategies live side by side:

* whole-dataset replace: the incoming snapshot wins outright, no conflict
  detection and no version check (``lastUpdated`` is informational only);
* targeted operations scoped to one student or one attendance event.

Every function here mutates the ``Dataset`` it is handed. Locking and
commit/rollback belong to ``store.SessionStore``.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ValidationError

import settings
from errors import DuplicateStudent, StudentNotFound, ValidationFailed, from_validation_error
from schemas import (
    AttendanceLog,
    Dataset,
    MarkAttendanceInput,
    Student,
    StudentInput,
    StudentRecord,
    Tombstone,
    empty_sessions,
    normalize_id,
    utcnow,
)

logger = logging.getLogger(__name__)

COLLECTIONS = ("students", "studentRecords", "attendanceLogs", "deletedStudents")
SESSION_FIELDS = ("attendance", "homework", "quiz")

_NUMERIC_SUFFIX = re.compile(r"^(.*?)(\d+)$")


# ----------------------- Helpers -----------------------

def canonical_id(value: Any) -> str:
    try:
        return normalize_id(value)
    except ValueError:
        raise ValidationFailed("Student ID is required")


def today_text(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{now.month}/{now.day}/{now.year}"


def time_text(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return now.strftime("%I:%M:%S %p").lstrip("0")


def validate(model, payload: Any):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise from_validation_error(exc)


def touch(dataset: Dataset) -> None:
    dataset.last_updated = utcnow()


def find_student(dataset: Dataset, student_id: str) -> Optional[Student]:
    return next((s for s in dataset.students if s.id == student_id), None)


def find_record(dataset: Dataset, student_id: str) -> Optional[StudentRecord]:
    return next((r for r in dataset.student_records if r.id == student_id), None)


def _student_index(dataset: Dataset, student_id: str) -> int:
    return next((i for i, s in enumerate(dataset.students) if s.id == student_id), -1)


def _tombstone_index(dataset: Dataset, student_id: str) -> int:
    return next((i for i, t in enumerate(dataset.deleted_students) if t.student.id == student_id), -1)


def ensure_record(dataset: Dataset, student: Student, max_sessions: int = settings.MAX_SESSIONS) -> StudentRecord:
    """Return the companion record for ``student``, creating an empty one if needed."""
    record = find_record(dataset, student.id)
    if record is not None:
        return record.ensure_slots(max_sessions)
    now = utcnow()
    record = StudentRecord(
        id=student.id,
        full_name=student.full_name,
        parent_phone=student.parent_phone,
        sessions=empty_sessions(max_sessions),
        created_at=now,
        updated_at=now,
    )
    dataset.student_records.append(record)
    return record


def next_available_id(dataset: Dataset) -> str:
    """
    Suggest an unused id: highest numeric suffix in use plus one, keeping the
    prefix and zero padding of the most recently added student's id.
    """
    numbers = []
    for student in dataset.students:
        match = _NUMERIC_SUFFIX.match(student.id)
        if match and int(match.group(2)) > 0:
            numbers.append(int(match.group(2)))
    if not numbers:
        return settings.DEFAULT_FIRST_ID

    last = _NUMERIC_SUFFIX.match(dataset.students[-1].id)
    prefix, width = (last.group(1), len(last.group(2))) if last else ("", 4)
    taken = {s.id for s in dataset.students}
    number = max(numbers) + 1
    while f"{prefix}{number:0{width}d}" in taken:
        number += 1
    return f"{prefix}{number:0{width}d}"


# ----------------------- Whole dataset -----------------------

def decode_dataset(payload: Any, max_sessions: int = settings.MAX_SESSIONS) -> Dataset:
    """
    Validate an incoming snapshot. Every collection must be array-shaped
    (``students`` is mandatory); tombstones are normalized on the way in.
    """
    if isinstance(payload, Dataset):
        payload = payload.to_wire()
    if not isinstance(payload, dict) or not isinstance(payload.get("students"), list):
        raise ValidationFailed("Invalid data format")
    for key in COLLECTIONS[1:]:
        if payload.get(key) is not None and not isinstance(payload[key], list):
            raise ValidationFailed(f"Invalid or missing {key} array")

    dataset = validate(Dataset, payload)
    for record in dataset.student_records:
        record.ensure_slots(max_sessions)
    return dataset


def replace_dataset(payload: Any, max_sessions: int = settings.MAX_SESSIONS) -> Dataset:
    dataset = decode_dataset(payload, max_sessions)
    touch(dataset)
    return dataset


# ----------------------- Students -----------------------

def add_student(dataset: Dataset, payload: Any, max_sessions: int = settings.MAX_SESSIONS) -> Student:
    data = validate(StudentInput, payload)
    existing = find_student(dataset, data.id)
    if existing is not None:
        raise DuplicateStudent(data.id, existing.full_name, next_available_id(dataset))

    now = utcnow()
    student = Student.model_validate({**data.model_dump(by_alias=True), "createdAt": now, "updatedAt": now})
    dataset.students.append(student)
    ensure_record(dataset, student, max_sessions)
    touch(dataset)
    logger.info("Added student %s (%s)", student.id, student.full_name)
    return student


def update_student(dataset: Dataset, student_id: Any, updates: Dict[str, Any]) -> Student:
    sid = canonical_id(student_id)
    index = _student_index(dataset, sid)
    if index < 0:
        raise StudentNotFound(sid)

    current = dataset.students[index]
    data = validate(StudentInput, {**current.to_wire(), **(updates or {}), "id": sid})
    student = Student.model_validate(
        {**data.model_dump(by_alias=True), "createdAt": current.created_at, "updatedAt": utcnow()}
    )
    dataset.students[index] = student

    record = find_record(dataset, sid)
    if record is not None:
        record.full_name = student.full_name
        record.parent_phone = student.parent_phone
        record.updated_at = student.updated_at
    touch(dataset)
    return student


def soft_delete(dataset: Dataset, student_id: Any, deleted_by: str = "system") -> Tombstone:
    """Move a student, its record and its logs into a tombstone."""
    sid = canonical_id(student_id)
    index = _student_index(dataset, sid)
    if index < 0:
        raise StudentNotFound(sid)

    student = dataset.students.pop(index)
    tombstone = Tombstone(
        student=student,
        record=find_record(dataset, sid),
        logs=[log for log in dataset.attendance_logs if log.student_id == sid],
        deleted_at=utcnow(),
        deleted_by=deleted_by or "system",
    )
    dataset.deleted_students.append(tombstone)
    dataset.student_records = [r for r in dataset.student_records if r.id != sid]
    dataset.attendance_logs = [log for log in dataset.attendance_logs if log.student_id != sid]
    touch(dataset)
    logger.info("Moved student %s to deleted students (%d logs kept)", sid, len(tombstone.logs))
    return tombstone


def restore_student(dataset: Dataset, student_id: Any, max_sessions: int = settings.MAX_SESSIONS) -> Student:
    sid = canonical_id(student_id)
    index = _tombstone_index(dataset, sid)
    if index < 0:
        raise StudentNotFound(sid, f"Deleted student with ID {sid} not found")

    tombstone = dataset.deleted_students[index]
    existing = find_student(dataset, sid)
    if existing is not None:
        raise DuplicateStudent(sid, existing.full_name)

    del dataset.deleted_students[index]
    dataset.students.append(tombstone.student)

    if tombstone.record is not None:
        record = tombstone.record.ensure_slots(max_sessions)
        position = next((i for i, r in enumerate(dataset.student_records) if r.id == sid), -1)
        if position >= 0:
            dataset.student_records[position] = record
        else:
            dataset.student_records.append(record)
    else:
        ensure_record(dataset, tombstone.student, max_sessions)

    for log in tombstone.logs:
        position = next(
            (i for i, e in enumerate(dataset.attendance_logs) if e.matches(log.student_id, log.date, log.session)),
            -1,
        )
        if position >= 0:
            dataset.attendance_logs[position] = log
        else:
            dataset.attendance_logs.append(log)

    touch(dataset)
    logger.info("Restored student %s", sid)
    return tombstone.student


def delete_permanent(dataset: Dataset, student_id: Any) -> Tuple[Student, str]:
    """Erase a student from the active list or from the tombstones."""
    sid = canonical_id(student_id)
    index = _student_index(dataset, sid)
    if index >= 0:
        student = dataset.students.pop(index)
        dataset.student_records = [r for r in dataset.student_records if r.id != sid]
        dataset.attendance_logs = [log for log in dataset.attendance_logs if log.student_id != sid]
        touch(dataset)
        return student, "active"

    index = _tombstone_index(dataset, sid)
    if index >= 0:
        tombstone = dataset.deleted_students.pop(index)
        touch(dataset)
        return tombstone.student, "deleted"

    raise StudentNotFound(sid, f"Student with ID {sid} not found in active or deleted records")


def clear_deleted(dataset: Dataset) -> int:
    count = len(dataset.deleted_students)
    dataset.deleted_students = []
    if count:
        touch(dataset)
    return count


# ----------------------- Attendance -----------------------

def update_session(
    dataset: Dataset,
    student_id: Any,
    session: int,
    changes: Dict[str, Any],
    max_sessions: int = settings.MAX_SESSIONS,
) -> StudentRecord:
    """
    Merge ``changes`` into one session slot. Fields not present in
    ``changes`` keep their value; ``date`` falls back to the slot's existing
    date and then to today.
    """
    sid = canonical_id(student_id)
    if not 1 <= session <= max_sessions:
        raise ValidationFailed(f"Session number must be between 1 and {max_sessions}")

    record = find_record(dataset, sid)
    if record is None:
        student = find_student(dataset, sid)
        if student is None:
            raise StudentNotFound(sid)
        record = ensure_record(dataset, student, max_sessions)
    record.ensure_slots(max_sessions)

    slot = record.sessions[session]
    update = {k: v for k, v in changes.items() if k in SESSION_FIELDS}
    update["date"] = changes.get("date") or slot.date or today_text()
    record.sessions[session] = slot.model_copy(update=update)
    record.updated_at = utcnow()
    return record


def mark_attendance(dataset: Dataset, payload: Any, max_sessions: int = settings.MAX_SESSIONS) -> AttendanceLog:
    """
    Write one session slot and upsert the matching attendance log.

    The log is keyed by (studentId, date, session): a repeat mark overwrites
    the supplied fields in place and keeps the original id and createdAt,
    otherwise a new entry goes to the front of the log.
    """
    data = validate(MarkAttendanceInput, payload)
    supplied = {name: getattr(data, name) for name in SESSION_FIELDS if name in data.model_fields_set}
    day = data.date or today_text()

    record = update_session(dataset, data.student_id, data.session, {**supplied, "date": data.date}, max_sessions)
    student = find_student(dataset, data.student_id)
    name = data.student_name or (student.full_name if student is not None else record.full_name)
    now = utcnow()

    entry = next((log for log in dataset.attendance_logs if log.matches(data.student_id, day, data.session)), None)
    if entry is not None:
        for field, value in supplied.items():
            setattr(entry, field, value)
        entry.student_name = name
        entry.time = data.time or time_text()
        entry.updated_at = now
    else:
        entry = AttendanceLog(
            date=day,
            time=data.time or time_text(),
            student_id=data.student_id,
            student_name=name,
            session=data.session,
            created_at=now,
            updated_at=now,
            **supplied,
        )
        dataset.attendance_logs.insert(0, entry)

    touch(dataset)
    return entry


# ----------------------- QR scan -----------------------

def qr_scan(
    dataset: Dataset,
    student_id: Any,
    client_copy: Optional[Any] = None,
    max_sessions: int = settings.MAX_SESSIONS,
) -> Tuple[Student, bool]:
    """
    Resolve a scanned id. A miss on the server is answered from the
    scanning client's cached copy, which is adopted as authoritative.
    Returns ``(student, adopted)``.
    """
    sid = canonical_id(student_id)
    student = find_student(dataset, sid)
    if student is not None:
        return student, False
    if not client_copy:
        raise StudentNotFound(sid, "Student not found")

    if isinstance(client_copy, BaseModel):
        client_copy = client_copy.model_dump(by_alias=True)
    if not isinstance(client_copy, dict):
        raise ValidationFailed("Invalid student data supplied with scan")
    now = utcnow()
    adopted = validate(Student, {**client_copy, "syncedFromClient": True, "createdAt": now, "updatedAt": now})
    if adopted.id != sid:
        raise ValidationFailed(f"Scanned ID {sid} does not match the supplied student {adopted.id}")

    dataset.students.append(adopted)
    ensure_record(dataset, adopted, max_sessions)
    touch(dataset)
    logger.info("Student %s missing on server, adopted client copy", sid)
    return adopted, True


# ----------------------- Statistics -----------------------

def statistics(dataset: Dataset, max_sessions: int = settings.MAX_SESSIONS, today: Optional[str] = None) -> dict:
    today = today or today_text()
    todays = [log for log in dataset.attendance_logs if log.date == today]
    return {
        "totalStudents": len(dataset.students),
        "deletedStudents": len(dataset.deleted_students),
        "totalRecords": len(dataset.attendance_logs),
        "todayPresent": sum(1 for log in todays if log.attendance == "present"),
        "todayAbsent": sum(1 for log in todays if log.attendance == "absent"),
        "totalSessions": max_sessions,
        "lastUpdated": dataset.last_updated.isoformat(),
    }
