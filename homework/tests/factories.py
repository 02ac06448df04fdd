from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.utils import timezone

from accounts.models import ClassStudentMembership, StudyClass
from homework.configs import GroupProjectConfig, SelfPracticeConfig, StandardConfig
from homework.models import AssignmentGroup, AssignmentGroupMember, Homework, Submission

IN_MEMORY_STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.InMemoryStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}


def create_user(*, username: str | None = None, email: str | None = None, **extra):
    username = username or f"user_{uuid4().hex[:10]}"
    email = f"{username}@example.com" if email is None else email
    return get_user_model().objects.create_user(
        username=username, email=email, password="pass12345", **extra
    )


def create_teacher(**kwargs):
    kwargs.setdefault("username", f"teacher_{uuid4().hex[:10]}")
    return create_user(**kwargs)


def create_student(**kwargs):
    kwargs.setdefault("username", f"student_{uuid4().hex[:10]}")
    return create_user(**kwargs)


def create_class(*, teacher=None, name: str | None = None) -> StudyClass:
    return StudyClass.objects.create(
        teacher=teacher or create_teacher(), name=name or f"班级 {uuid4().hex[:6]}"
    )


def enroll(study_class: StudyClass, *students) -> None:
    for student in students:
        ClassStudentMembership.objects.create(study_class=study_class, student=student)


def create_students(study_class: StudyClass, count: int):
    students = [create_student() for _ in range(count)]
    enroll(study_class, *students)
    return students


def create_homework(
    *,
    study_class: StudyClass | None = None,
    title: str = "线性代数作业",
    config=None,
    start_time=None,
    deadline=None,
    max_score: int = 100,
    allow_late: bool = False,
    reminder_time=None,
    reminder_sent: bool = False,
) -> Homework:
    now = timezone.now()
    homework = Homework(
        study_class=study_class or create_class(),
        title=title,
        start_time=start_time or now - timedelta(days=1),
        deadline=deadline or now + timedelta(days=7),
        max_score=max_score,
        allow_late=allow_late,
        reminder_time=reminder_time,
        reminder_sent=reminder_sent,
    )
    homework.set_type_config(config or StandardConfig())
    homework.save()
    return homework


def create_group_homework(*, study_class=None, **config_options) -> Homework:
    return create_homework(
        study_class=study_class,
        title="项目实践",
        config=GroupProjectConfig(**config_options),
    )


def create_self_practice_homework(*, study_class=None, **config_options) -> Homework:
    return create_homework(
        study_class=study_class,
        title="自主练习",
        config=SelfPracticeConfig(**config_options),
    )


def create_group(homework: Homework, leader, *members, name: str | None = None) -> AssignmentGroup:
    group = AssignmentGroup.objects.create(
        homework=homework, name=name or f"小组 {uuid4().hex[:6]}", leader=leader
    )
    base = timezone.now()
    AssignmentGroupMember.objects.create(
        group=group,
        homework=homework,
        student=leader,
        role=AssignmentGroupMember.Role.LEADER,
        joined_at=base,
    )
    for offset, member in enumerate(members, start=1):
        AssignmentGroupMember.objects.create(
            group=group,
            homework=homework,
            student=member,
            role=AssignmentGroupMember.Role.MEMBER,
            joined_at=base + timedelta(seconds=offset),
        )
    return group


def create_submission(homework: Homework, student, *, files=None, score=None, group=None) -> Submission:
    return Submission.objects.create(
        homework=homework,
        student=student,
        group=group,
        files=list(files or [f"homework/{homework.pk}/{student.pk}/{uuid4().hex}/report.pdf"]),
        score=score,
    )


def upload(name: str = "report.pdf", content: bytes = b"%PDF-1.4 test") -> SimpleUploadedFile:
    return SimpleUploadedFile(name, content, content_type="application/octet-stream")


__all__ = [
    "IN_MEMORY_STORAGES",
    "create_user",
    "create_teacher",
    "create_student",
    "create_class",
    "enroll",
    "create_students",
    "create_homework",
    "create_group_homework",
    "create_self_practice_homework",
    "create_group",
    "create_submission",
    "upload",
]
