"""Read-only class roster queries used by the homework engine."""
from __future__ import annotations

from typing import List

from .models import ClassStudentMembership, StudyClass


def display_name(user) -> str:
    full_name = user.get_full_name().strip() if hasattr(user, "get_full_name") else ""
    return full_name or user.get_username()


def enrolled_students(study_class: StudyClass | int, *, order_by_name: bool = False) -> List:
    """Return students enrolled in ``study_class``.

    Students come back in enrolment order unless ``order_by_name`` is set.
    """

    class_id = study_class.pk if isinstance(study_class, StudyClass) else study_class
    memberships = ClassStudentMembership.objects.filter(
        study_class_id=class_id
    ).select_related("student")
    if order_by_name:
        memberships = memberships.order_by(
            "student__last_name", "student__first_name", "student__username", "student_id"
        )
    else:
        memberships = memberships.order_by("joined_at", "id")
    return [membership.student for membership in memberships]


def enrolled_student_ids(study_class: StudyClass | int) -> List[int]:
    class_id = study_class.pk if isinstance(study_class, StudyClass) else study_class
    return list(
        ClassStudentMembership.objects.filter(study_class_id=class_id)
        .order_by("joined_at", "id")
        .values_list("student_id", flat=True)
    )


def is_enrolled(student, study_class: StudyClass | int) -> bool:
    if student is None or getattr(student, "pk", None) is None:
        return False
    class_id = study_class.pk if isinstance(study_class, StudyClass) else study_class
    return ClassStudentMembership.objects.filter(
        study_class_id=class_id, student_id=student.pk
    ).exists()


def is_class_teacher(user, study_class: StudyClass) -> bool:
    return bool(user and user.pk and study_class.teacher_id == user.pk)
