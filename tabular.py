"""
Row-level import of roster spreadsheets.

Rows arrive as dicts keyed by header text (file parsing happens elsewhere).
Headers vary between exports, so every field is looked up through an ordered
alias list and the first non-empty match wins. Session columns are found per
session number through ``{n}`` templates.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import reconcile
import settings
from errors import SyncError, ValidationFailed
from schemas import Dataset, parse_attendance, parse_homework, parse_quiz

logger = logging.getLogger(__name__)

STUDENT_COLUMNS = {
    "id": ("ID", "id", "Student ID"),
    "fullName": ("Full Name", "fullName", "name"),
    "phoneNumber": ("Phone Number", "phoneNumber", "phone"),
    "email": ("Email", "email"),
    "contactMethod": ("Preferred Contact Method", "contactMethod"),
    "parentPhone": ("Parent's Phone Number", "parentPhone", "parent_phone"),
    "gradeLevel": ("Grade/Year Level", "gradeLevel", "grade"),
    "center": ("Center?", "Center", "center"),
    "school": ("School", "school"),
    "qrCodeUrl": ("QR Code URL", "qrCodeUrl"),
}

SESSION_COLUMNS = {
    "attendance": ("Session {n} Attendance", "S{n} Att", "Session{n}_Attendance", "Session {n} Att", "S{n} Attendance"),
    "homework": ("Session {n} HW", "S{n} HW", "Session{n}_HW", "Session {n} Homework", "S{n} Homework"),
    "quiz": ("Session {n} Quiz", "S{n} Quiz", "Session{n}_Quiz", "Session {n} Score", "S{n} Score"),
    "date": ("Session {n} Date", "S{n} Date", "Session{n}_Date"),
}

EXCEL_EPOCH = datetime(1899, 12, 30)
NOT_GENERATED = "Not Generated"


def find_column(row: Dict[str, Any], aliases: Sequence[str], session: Optional[int] = None) -> Any:
    for alias in aliases:
        key = alias.replace("{n}", str(session)) if session is not None else alias
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def _us_date(value: date) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def parse_date_cell(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        return _us_date(EXCEL_EPOCH + timedelta(days=value))
    if isinstance(value, (date, datetime)):
        return _us_date(value)
    text = str(value).strip()
    try:
        return _us_date(date.fromisoformat(text[:10]))
    except ValueError:
        return text


def _lenient(parser, value: Any) -> Any:
    try:
        return parser(value)
    except ValueError:
        logger.debug("Ignoring unreadable cell value %r", value)
        return None


def parse_quiz_cell(value: Any) -> Optional[int]:
    score = _lenient(parse_quiz, value)
    if score is None or not settings.QUIZ_MIN_SCORE <= score <= settings.QUIZ_MAX_SCORE:
        return None
    return score


def extract_student(row: Dict[str, Any]) -> Dict[str, Any]:
    data = {}
    for field, aliases in STUDENT_COLUMNS.items():
        value = find_column(row, aliases)
        if value is not None:
            data[field] = value
    if data.get("qrCodeUrl") == NOT_GENERATED:
        del data["qrCodeUrl"]

    missing = [label for label, field in (("Full Name", "fullName"), ("Phone Number", "phoneNumber"))
               if not str(data.get(field, "")).strip()]
    if missing:
        raise ValidationFailed("Missing required fields: " + ", ".join(missing))
    return data


def extract_sessions(row: Dict[str, Any], max_sessions: int = settings.MAX_SESSIONS) -> Dict[int, Dict[str, Any]]:
    sessions = {}
    for n in range(1, max_sessions + 1):
        cells = {field: find_column(row, aliases, n) for field, aliases in SESSION_COLUMNS.items()}
        if not any(v is not None for v in cells.values()):
            continue
        sessions[n] = {
            "attendance": _lenient(parse_attendance, cells["attendance"]),
            "homework": _lenient(parse_homework, cells["homework"]),
            "quiz": parse_quiz_cell(cells["quiz"]),
            "date": parse_date_cell(cells["date"]),
        }
    return sessions


def import_rows(dataset: Dataset, rows: List[Any], max_sessions: int = settings.MAX_SESSIONS) -> dict:
    """Add every importable row as a student with its session history."""
    if not isinstance(rows, list) or not rows:
        raise ValidationFailed("No data found in the imported rows")

    results = {"successful": [], "failed": [], "studentsImported": 0, "recordsImported": 0, "errors": []}
    for index, row in enumerate(rows, start=1):
        try:
            if not isinstance(row, dict):
                raise ValidationFailed("Row is not an object")
            data = extract_student(row)
            if data.get("id") is None:
                data["id"] = reconcile.next_available_id(dataset)
            student = reconcile.add_student(dataset, data, max_sessions)

            sessions = extract_sessions(row, max_sessions)
            for number, cells in sessions.items():
                if cells["attendance"] or cells["homework"] or cells["quiz"] is not None:
                    reconcile.update_session(dataset, student.id, number, cells, max_sessions)
        except SyncError as exc:
            results["failed"].append({"row": index, "error": exc.message})
            results["errors"].append(f"Row {index}: {exc.message}")
            continue

        results["successful"].append(student.to_wire())
        results["studentsImported"] += 1
        results["recordsImported"] += len(sessions)

    logger.info("Imported %d of %d rows", results["studentsImported"], len(rows))
    return results
