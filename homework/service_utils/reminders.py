"""Pre-deadline reminder sweep.

A homework needs a reminder when ``reminder_time <= now``, ``reminder_sent``
is false and the deadline is still ahead.  Each homework is handled in its own
transaction: the row is locked (rows already locked by a concurrent sweep are
skipped), the predicate re-checked, every enrolled non-submitter notified and
``reminder_sent`` flipped before commit.  A crash before the commit means the
next sweep sends again; duplicates are tolerated, dropped reminders are not.
A cancel request is honoured between recipients and leaves the flag unset.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
from typing import Callable, List, Optional

from django.db import transaction
from django.utils import timezone

from accounts import roster
from homework import notifications
from homework.models import Homework

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    homeworks: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: List[str] = field(default_factory=list)


def find_due_homeworks(now: Optional[datetime] = None):
    now = now or timezone.now()
    return (
        Homework.objects.filter(
            reminder_time__isnull=False,
            reminder_time__lte=now,
            reminder_sent=False,
            deadline__gt=now,
        )
        .select_related("study_class")
        .order_by("reminder_time", "id")
    )


def _remind(
    homework: Homework,
    sender: Callable,
    report: SweepReport,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Notify every enrolled non-submitter; ``False`` when cancelled midway."""

    submitted = homework.type_config.submitted_student_ids(homework)
    pending = [
        student
        for student in roster.enrolled_students(homework.study_class)
        if student.pk not in submitted
    ]
    logger.info("Homework %s (%r): %d student(s) without a submission", homework.pk, homework.title, len(pending))
    sent = 0
    for student in pending:
        if cancel is not None and cancel.is_set():
            report.sent += sent
            logger.info(
                "Homework %s reminders interrupted after %d/%d", homework.pk, sent, len(pending)
            )
            return False
        report.attempted += 1
        if not student.email:
            logger.warning("Student %s has no e-mail address, reminder skipped", student.pk)
            report.failed += 1
            report.failures.append(f"{homework.pk}:{student.pk}")
            continue
        try:
            sender(
                student.email,
                roster.display_name(student),
                homework.title,
                homework.deadline,
                homework.study_class.name,
            )
        except Exception:
            logger.exception("Reminder for homework %s to %s failed", homework.pk, student.email)
            report.failed += 1
            report.failures.append(f"{homework.pk}:{student.pk}")
            continue
        sent += 1
    report.sent += sent
    logger.info("Homework %s reminders sent: %d/%d", homework.pk, sent, len(pending))
    return True


def send_due_reminders(
    now: Optional[datetime] = None,
    sender: Optional[Callable] = None,
    cancel: Optional[threading.Event] = None,
) -> SweepReport:
    now = now or timezone.now()
    sender = sender or notifications.send_homework_reminder
    report = SweepReport()
    due_ids = list(find_due_homeworks(now).values_list("pk", flat=True))
    logger.info("Reminder sweep at %s: %d homework(s) due", now.isoformat(), len(due_ids))

    for homework_id in due_ids:
        if cancel is not None and cancel.is_set():
            report.cancelled = True
            logger.info("Reminder sweep cancelled after %d homework(s)", report.homeworks)
            break
        with transaction.atomic():
            homework = (
                find_due_homeworks(now)
                .select_for_update(skip_locked=True, of=("self",))
                .filter(pk=homework_id)
                .first()
            )
            if homework is None:
                continue
            completed = _remind(homework, sender, report, cancel)
            if completed:
                Homework.objects.filter(pk=homework.pk).update(reminder_sent=True)
        if not completed:
            report.cancelled = True
            logger.info("Reminder sweep cancelled while notifying homework %s", homework_id)
            break
        report.homeworks += 1
    return report
