"""Education node handlers - Attendance, Assignments, Class schedule."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from core.logging import get_logger
from models.nodes import AttendanceTrackParams, AssignmentCreateParams, ScheduleCheckParams
from services.execution.conditions import get_nested_value, to_decision
from services.execution.exceptions import NodeExecutionError
from services.execution.models import NodeExecutionContext

logger = get_logger(__name__)


async def handle_attendance_track(
    node_id: str,
    node_type: str,
    parameters: AttendanceTrackParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """Compute an attendance percentage and compare it with the threshold.

    Records are read from config, or from the input path in recordsField.
    When studentId is set only that student's records count.
    """
    records = parameters.records
    if parameters.records_field:
        found = get_nested_value(context.input, parameters.records_field)
        if not isinstance(found, list):
            raise NodeExecutionError(
                f"No attendance records found at '{parameters.records_field}'"
            )
        records = found

    if parameters.student_id:
        records = [r for r in records if str(r.get("studentId")) == parameters.student_id]
    if parameters.class_id:
        records = [r for r in records if r.get("classId") in (None, parameters.class_id)]

    total = len(records)
    present = sum(1 for r in records if to_decision(r.get("present")) is True)
    percentage = round(present / total * 100, 2) if total else None
    below = percentage is not None and percentage < parameters.threshold

    logger.info("[Attendance] Checked", node_id=node_id, student_id=parameters.student_id,
                class_id=parameters.class_id, total=total, percentage=percentage)

    return {
        "studentId": parameters.student_id,
        "classId": parameters.class_id,
        "totalSessions": total,
        "presentSessions": present,
        "attendancePercentage": percentage,
        "threshold": parameters.threshold,
        "belowThreshold": below,
        "action": parameters.action if below else None,
    }


async def handle_assignment_create(
    node_id: str,
    node_type: str,
    parameters: AssignmentCreateParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """Build an assignment record."""
    assignment = {
        "assignmentId": f"assign_{uuid.uuid4().hex[:12]}",
        "title": parameters.title,
        "description": parameters.description,
        "dueDate": parameters.due_date,
        "classId": parameters.class_id,
        "notifyStudents": parameters.notify_students,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    logger.info("[Assignment] Created", node_id=node_id, title=parameters.title,
                due_date=parameters.due_date)
    return assignment


def _class_sort_key(entry: Dict[str, Any]) -> str:
    return str(entry.get("time", ""))


async def handle_schedule_check(
    node_id: str,
    node_type: str,
    parameters: ScheduleCheckParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """List classes on a date (default today, UTC) with a reminder window.

    Classes without a date recur daily. Entries are sorted by HH:MM time.
    """
    day = parameters.date or datetime.now(timezone.utc).date().isoformat()

    upcoming: List[Dict[str, Any]] = []
    for entry in parameters.classes:
        if entry.get("date") not in (None, day):
            continue
        if parameters.class_id and entry.get("id") != parameters.class_id:
            continue
        if parameters.teacher_id and entry.get("teacherId") != parameters.teacher_id:
            continue
        upcoming.append(entry)
    upcoming.sort(key=_class_sort_key)

    return {
        "date": day,
        "upcomingClasses": upcoming,
        "classCount": len(upcoming),
        "reminderMinutes": parameters.reminder_minutes,
        "classId": parameters.class_id,
        "teacherId": parameters.teacher_id,
    }
