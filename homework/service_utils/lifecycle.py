"""Homework creation, update, deletion and derived state.

Services raise DRF exceptions so the API views stay thin: ``ValidationError``
for bad input, ``PermissionDenied`` when the caller does not own the class and
``NotFound`` for unknown ids.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, List, Mapping, Optional

from django.db import transaction
from django.db.models import Count, Prefetch
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import exceptions

from accounts import roster
from accounts.models import StudyClass
from homework.configs import CONFIG_FIELDS, HomeworkType, decode_config
from homework.exceptions import Conflict
from homework.models import Homework, Submission
from homework.storage import CleanupReport, FileCleanup, SubmissionStorage

logger = logging.getLogger(__name__)

TITLE_MIN_LENGTH = 2
TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 5000
MAX_SCORE_LIMIT = 1000
REMINDER_HOURS_MIN = 1
REMINDER_HOURS_MAX = 168


@dataclass(frozen=True)
class HomeworkDeletion:
    homework_id: int
    title: str
    submissions: int
    cleanup: CleanupReport


@dataclass(frozen=True)
class StudentHomework:
    homework: Homework
    submission: Optional[Submission]
    state: str
    is_overdue: bool

    @property
    def is_submitted(self) -> bool:
        return self.submission is not None


@dataclass(frozen=True)
class HomeworkDetail:
    homework: Homework
    submissions: List[Submission]
    is_teacher: bool


def get_homework_or_404(homework_id: int, *, for_update: bool = False) -> Homework:
    queryset = Homework.objects.select_related("study_class")
    if for_update:
        queryset = queryset.select_for_update(of=("self",))
    try:
        return queryset.get(pk=homework_id)
    except Homework.DoesNotExist as exc:
        raise exceptions.NotFound("作业不存在") from exc


def ensure_class_teacher(user, homework: Homework, message: str = "无权管理此作业") -> None:
    if not roster.is_class_teacher(user, homework.study_class):
        raise exceptions.PermissionDenied(message)


def homework_state(homework: Homework, now: Optional[datetime] = None) -> str:
    """NOT_STARTED / OPEN / CLOSED / LATE_OPEN, derived from the clock only."""

    return homework.state_at(now)


def _invalid(field: str, message: str) -> exceptions.ValidationError:
    return exceptions.ValidationError({field: [message]})


def _clean_title(value) -> str:
    if not isinstance(value, str):
        raise _invalid("title", "标题必须是字符串")
    title = value.strip()
    if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        raise _invalid(
            "title", f"标题长度必须在 {TITLE_MIN_LENGTH} 到 {TITLE_MAX_LENGTH} 个字符之间"
        )
    return title


def _clean_description(value) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _invalid("description", "描述必须是字符串")
    if len(value) > DESCRIPTION_MAX_LENGTH:
        raise _invalid("description", f"描述不能超过 {DESCRIPTION_MAX_LENGTH} 个字符")
    return value


def _clean_time(field: str, value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = parse_datetime(value)
        if parsed is None:
            raise _invalid(field, "时间格式不正确")
    else:
        raise _invalid(field, "该字段为必填项")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _clean_int(field: str, value, minimum: int, maximum: int, message: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise _invalid(field, message)
    try:
        number = int(value)
    except ValueError:
        raise _invalid(field, message) from None
    if not minimum <= number <= maximum:
        raise _invalid(field, message)
    return number


def _clean_max_score(value) -> int:
    return _clean_int(
        "max_score", value, 1, MAX_SCORE_LIMIT, f"满分必须是 1 到 {MAX_SCORE_LIMIT} 之间的整数"
    )


def _clean_reminder_hours(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return _clean_int(
        "reminder_hours",
        value,
        REMINDER_HOURS_MIN,
        REMINDER_HOURS_MAX,
        f"提醒时间必须是截止前 {REMINDER_HOURS_MIN} 到 {REMINDER_HOURS_MAX} 小时",
    )


def _clean_bool(field: str, value) -> bool:
    if not isinstance(value, bool):
        raise _invalid(field, "必须是布尔值")
    return value


def _check_window(start_time: datetime, deadline: datetime) -> None:
    if start_time >= deadline:
        raise _invalid("deadline", "截止时间必须晚于开始时间")


def _clean_type(value) -> str:
    if value in (None, ""):
        return HomeworkType.STANDARD
    if value not in HomeworkType.values:
        raise _invalid("type", f"未知的作业类型: {value}")
    return value


def _config_from_payload(kind: str, data: Mapping[str, Any]):
    own_field = CONFIG_FIELDS.get(kind)
    for config_type, config_field in CONFIG_FIELDS.items():
        if config_type != kind and data.get(config_field) is not None:
            raise _invalid(
                config_field, f"该配置仅适用于{HomeworkType(config_type).label}"
            )
    return decode_config(kind, data.get(own_field) if own_field else None)


def create_homework(teacher, data: Mapping[str, Any]) -> Homework:
    """Publish a homework to one of ``teacher``'s classes."""

    class_id = data.get("class_id")
    if class_id in (None, ""):
        raise _invalid("class_id", "该字段为必填项")
    try:
        study_class = StudyClass.objects.get(pk=class_id)
    except (StudyClass.DoesNotExist, ValueError, TypeError) as exc:
        raise exceptions.NotFound("班级不存在") from exc
    if not roster.is_class_teacher(teacher, study_class):
        raise exceptions.PermissionDenied("无权在此班级发布作业")

    kind = _clean_type(data.get("type"))
    config = _config_from_payload(kind, data)
    start_time = _clean_time("start_time", data.get("start_time"))
    deadline = _clean_time("deadline", data.get("deadline"))
    _check_window(start_time, deadline)
    if deadline <= timezone.now():
        raise _invalid("deadline", "截止时间不能早于当前时间")
    reminder_hours = _clean_reminder_hours(data.get("reminder_hours"))

    homework = Homework(
        study_class=study_class,
        title=_clean_title(data.get("title")),
        description=_clean_description(data.get("description")),
        start_time=start_time,
        deadline=deadline,
        max_score=_clean_max_score(data.get("max_score", 100)),
        allow_late=_clean_bool("allow_late", data.get("allow_late", False)),
    )
    homework.set_type_config(config)
    if reminder_hours:
        homework.reminder_time = deadline - timedelta(hours=reminder_hours)
    homework.save()
    logger.info(
        "Homework %s (%s) created in class %s by %s",
        homework.pk,
        homework.type,
        study_class.pk,
        teacher.pk,
    )
    return homework


def update_homework(teacher, homework_id: int, patch: Mapping[str, Any]) -> Homework:
    """Apply a partial update.

    The timing check runs against the effective post-patch window.  The
    reminder is only re-derived when ``reminder_hours`` is part of the patch.
    """

    with transaction.atomic():
        homework = get_homework_or_404(homework_id, for_update=True)
        ensure_class_teacher(teacher, homework)

        if "title" in patch:
            homework.title = _clean_title(patch["title"])
        if "description" in patch:
            homework.description = _clean_description(patch["description"])
        if "start_time" in patch:
            homework.start_time = _clean_time("start_time", patch["start_time"])
        if "deadline" in patch:
            homework.deadline = _clean_time("deadline", patch["deadline"])
        _check_window(homework.start_time, homework.deadline)
        if "max_score" in patch:
            homework.max_score = _clean_max_score(patch["max_score"])
        if "allow_late" in patch:
            homework.allow_late = _clean_bool("allow_late", patch["allow_late"])

        kind = _clean_type(patch.get("type", homework.type))
        config_touched = any(field in patch for field in CONFIG_FIELDS.values())
        if kind != homework.type:
            if homework.submissions.exists() or homework.groups.exists():
                raise Conflict("已有提交或小组的作业不能更改类型")
            homework.set_type_config(_config_from_payload(kind, patch))
        elif config_touched:
            homework.set_type_config(_config_from_payload(kind, patch))

        if "reminder_hours" in patch:
            hours = _clean_reminder_hours(patch["reminder_hours"])
            homework.reminder_time = (
                homework.deadline - timedelta(hours=hours) if hours else None
            )
            homework.reminder_sent = False

        homework.save()
    logger.info("Homework %s updated by %s (%s)", homework.pk, teacher.pk, ", ".join(sorted(patch)))
    return homework


def delete_homework(teacher, homework_id: int, *, storage: Optional[SubmissionStorage] = None) -> HomeworkDeletion:
    """Delete a homework with its groups and submissions.

    Storage keys are gathered inside the transaction and released only after
    it commits; release failures end up in the returned report.
    """

    cleanup = FileCleanup(storage)
    with transaction.atomic():
        homework = get_homework_or_404(homework_id, for_update=True)
        ensure_class_teacher(teacher, homework)
        submissions = list(homework.submissions.values_list("files", flat=True))
        for files in submissions:
            cleanup.extend(files or [])
        title = homework.title
        homework.group_memberships.all().delete()
        homework.groups.all().delete()
        homework.delete()
        file_count = len(cleanup.keys)
        report = cleanup.schedule()

    logger.info(
        "Homework %s deleted by %s: %d submission(s), %d file(s) queued for release",
        homework_id,
        teacher.pk,
        len(submissions),
        file_count,
    )
    return HomeworkDeletion(
        homework_id=homework_id, title=title, submissions=len(submissions), cleanup=report
    )


def list_teacher_homeworks(teacher):
    return (
        Homework.objects.filter(study_class__teacher=teacher)
        .select_related("study_class")
        .annotate(submission_count=Count("submissions"))
        .order_by("-created_at", "-id")
    )


def list_student_homeworks(student, now: Optional[datetime] = None) -> List[StudentHomework]:
    """Started homework of every class ``student`` is enrolled in."""

    now = now or timezone.now()
    homeworks = (
        Homework.objects.filter(
            study_class__student_memberships__student=student, start_time__lte=now
        )
        .select_related("study_class")
        .prefetch_related(
            Prefetch(
                "submissions",
                queryset=Submission.objects.filter(student=student),
                to_attr="own_submissions",
            )
        )
        .order_by("deadline", "id")
        .distinct()
    )
    result = []
    for homework in homeworks:
        submission = homework.own_submissions[0] if homework.own_submissions else None
        result.append(
            StudentHomework(
                homework=homework,
                submission=submission,
                state=homework.state_at(now),
                is_overdue=submission is None and now > homework.deadline,
            )
        )
    return result


def get_homework_for_user(user, homework_id: int) -> HomeworkDetail:
    homework = get_homework_or_404(homework_id)
    submissions = homework.submissions.select_related("student", "group").order_by(
        "student_id"
    )
    if roster.is_class_teacher(user, homework.study_class):
        return HomeworkDetail(homework=homework, submissions=list(submissions), is_teacher=True)
    if roster.is_enrolled(user, homework.study_class):
        return HomeworkDetail(
            homework=homework, submissions=list(submissions.filter(student=user)), is_teacher=False
        )
    raise exceptions.PermissionDenied("无权查看此作业")

