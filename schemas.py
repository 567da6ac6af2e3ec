"""
Record schemas for the roster sync server (Pydantic models).

Every model speaks camelCase on the wire (``fullName``, ``studentRecords``)
and accepts either spelling on input. Ids are normalized to strings at this
boundary so the rest of the code compares plain strings.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

import settings

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^[+\-\s()\d]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_id(value: Any) -> str:
    """Canonical string form of a student or log id (2024001 == "2024001")."""
    if value is None or isinstance(value, bool):
        raise ValueError("id is required")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if not text:
        raise ValueError("id is required")
    return text


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    text = _text(value)
    return text or None


def _code_parser(codes: Dict[str, str], label: str):
    def parse(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().lower()
        if text in ("", "-"):
            return None
        try:
            return codes[text]
        except KeyError:
            raise ValueError(f"unknown {label} value {value!r}")

    return parse


ATTENDANCE_CODES = {"p": "present", "present": "present", "a": "absent", "absent": "absent"}
HOMEWORK_CODES = {
    "c": "complete",
    "complete": "complete",
    "p": "partial",
    "partial": "partial",
    "n": "not-done",
    "not-done": "not-done",
    "not done": "not-done",
}

parse_attendance = _code_parser(ATTENDANCE_CODES, "attendance")
parse_homework = _code_parser(HOMEWORK_CODES, "homework")


def parse_quiz(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if text in ("", "-"):
            return None
        try:
            value = float(text)
        except ValueError:
            raise ValueError(f"quiz score must be a number, got {text!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"quiz score must be a whole number, got {value!r}")
        return int(value)
    if isinstance(value, int):
        return value
    raise ValueError(f"quiz score must be a number, got {value!r}")


Id = Annotated[str, BeforeValidator(normalize_id)]
Text = Annotated[str, BeforeValidator(_text)]
OptionalText = Annotated[Optional[str], BeforeValidator(_optional_text)]
Attendance = Annotated[Optional[Literal["present", "absent"]], BeforeValidator(parse_attendance)]
Homework = Annotated[Optional[Literal["complete", "partial", "not-done"]], BeforeValidator(parse_homework)]
Quiz = Annotated[Optional[int], BeforeValidator(parse_quiz)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ----------------------- Records -----------------------

class Session(CamelModel):
    """One numbered class meeting for one student. Every field may be unset."""
    attendance: Attendance = None
    homework: Homework = None
    quiz: Quiz = None
    date: OptionalText = None


def empty_sessions(max_sessions: int) -> Dict[int, Session]:
    return {n: Session() for n in range(1, max_sessions + 1)}


class Student(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: Id
    full_name: Text = ""
    phone_number: Text = ""
    email: Text = ""
    contact_method: Text = "phone"
    parent_phone: Text = ""
    grade_level: Text = ""
    center: Text = ""
    school: Text = ""
    qr_code_url: OptionalText = None
    qr_generated_at: OptionalText = None
    synced_from_client: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StudentInput(Student):
    """Payload accepted by add-student / update-student."""
    full_name: Annotated[str, BeforeValidator(_text), Field(min_length=2)]
    email: Annotated[Optional[EmailStr], BeforeValidator(_optional_text)] = None

    @field_validator("phone_number")
    @classmethod
    def _phone_format(cls, value: str) -> str:
        if value and not PHONE_PATTERN.match(value):
            raise ValueError("phone number format is invalid")
        return value


class StudentRecord(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: Id
    full_name: Text = ""
    parent_phone: Text = ""
    sessions: Dict[int, Session] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("sessions", mode="before")
    @classmethod
    def _null_slots(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {k: (v if v is not None else {}) for k, v in value.items()}
        return value

    def ensure_slots(self, max_sessions: int) -> "StudentRecord":
        for n in range(1, max_sessions + 1):
            self.sessions.setdefault(n, Session())
        return self


class AttendanceLog(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: Id = Field(default_factory=lambda: uuid.uuid4().hex)
    date: Text
    time: Text = ""
    student_id: Id
    student_name: Text = ""
    session: int
    attendance: Attendance = None
    homework: Homework = None
    quiz: Quiz = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def matches(self, student_id: str, date: str, session: int) -> bool:
        return self.student_id == student_id and self.date == date and self.session == session


class Tombstone(CamelModel):
    student: Student
    record: Optional[StudentRecord] = None
    logs: List[AttendanceLog] = Field(default_factory=list)
    deleted_at: datetime = Field(default_factory=utcnow)
    deleted_by: str = "system"

    @field_validator("logs", mode="before")
    @classmethod
    def _null_logs(cls, value: Any) -> Any:
        return [] if value is None else value


def _repair_record(value: Any, student_id: str) -> Optional[StudentRecord]:
    if value is None:
        return None
    try:
        return StudentRecord.model_validate(value)
    except ValidationError as exc:
        logger.warning("Dropping unreadable record of deleted student %s: %s", student_id, exc.errors()[:1])
        return None


def _repair_logs(value: Any, student_id: str) -> List[AttendanceLog]:
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("Dropping non-list logs of deleted student %s", student_id)
        return []
    logs = []
    for item in value:
        try:
            logs.append(AttendanceLog.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping unreadable log of deleted student %s: %s", student_id, exc.errors()[:1])
    return logs


def decode_tombstone(item: Any) -> Optional[Tombstone]:
    """
    Normalize one deleted-students entry to the canonical tombstone shape.

    Accepted variants: the nested ``{student: {...}, record, logs, ...}``
    shape and a bare student object (as written by older exports), which only
    needs an ``id`` or ``studentId``. An unreadable record or log is dropped
    on its own and the student is kept. Entries without a usable student are
    dropped and logged.
    """
    if isinstance(item, Tombstone):
        return item
    if not isinstance(item, dict):
        logger.warning("Dropping deleted-student entry of type %s", type(item).__name__)
        return None

    if isinstance(item.get("student"), dict):
        candidate = {"deletedBy": "imported", **{k: v for k, v in item.items() if v is not None}}
    elif item.get("id") is not None or item.get("studentId") is not None:
        student = dict(item)
        if student.get("id") is None:
            student["id"] = item["studentId"]
        if not student.get("fullName") and item.get("name"):
            student["fullName"] = item["name"]
        candidate = {"student": student, "deletedBy": "imported"}
    else:
        logger.warning("Dropping deleted-student entry without a usable student: keys=%s", sorted(item))
        return None

    try:
        student = Student.model_validate(candidate["student"])
    except ValidationError as exc:
        logger.warning("Dropping deleted-student entry with an unreadable student: %s", exc.errors()[:1])
        return None
    candidate["student"] = student
    candidate["record"] = _repair_record(candidate.get("record"), student.id)
    candidate["logs"] = _repair_logs(candidate.get("logs"), student.id)

    try:
        return Tombstone.model_validate(candidate)
    except ValidationError as exc:
        logger.warning("Dropping malformed deleted-student entry %s: %s", student.id, exc.errors()[:1])
        return None


class Dataset(CamelModel):
    """Point-in-time snapshot of the four collections; the unit of wire transfer."""
    model_config = ConfigDict(extra="ignore")

    students: List[Student] = Field(default_factory=list)
    student_records: List[StudentRecord] = Field(default_factory=list)
    attendance_logs: List[AttendanceLog] = Field(default_factory=list)
    deleted_students: List[Tombstone] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)
    version: str = settings.APP_VERSION

    @field_validator("students", "student_records", "attendance_logs", mode="before")
    @classmethod
    def _null_collection(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("deleted_students", mode="before")
    @classmethod
    def _decode_tombstones(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        return [t for t in (decode_tombstone(item) for item in value) if t is not None]

    @field_validator("last_updated", mode="before")
    @classmethod
    def _null_timestamp(cls, value: Any) -> Any:
        return utcnow() if value is None else value


# ----------------------- Connections -----------------------

class ClientInfo(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: str
    connected_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    device_type: str = "unknown"
    device_name: Optional[str] = None


class DeviceInfo(CamelModel):
    model_config = ConfigDict(extra="allow")

    device_type: OptionalText = None
    device_name: OptionalText = None


# ----------------------- Operations -----------------------

class Envelope(CamelModel):
    event: str = Field(..., min_length=1)
    data: Any = None
    request_id: OptionalText = None


class MarkAttendanceInput(CamelModel):
    student_id: Id
    student_name: OptionalText = None
    session: int
    attendance: Attendance = None
    homework: Homework = None
    quiz: Quiz = None
    date: OptionalText = None
    time: OptionalText = None


class QrScanInput(CamelModel):
    student_id: Id
    student: Optional[Dict[str, Any]] = None


class StudentRef(CamelModel):
    student_id: Id


class UpdateStudentInput(StudentRef):
    updates: Dict[str, Any] = Field(default_factory=dict)


class DeleteStudentInput(StudentRef):
    permanent: bool = False
    deleted_by: Text = "system"
