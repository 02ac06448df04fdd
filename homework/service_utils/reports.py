"""Grade extracts and read-only statistics derived from submissions."""
from __future__ import annotations

import csv
import io
import statistics
from typing import Any, Dict, List, Optional, Tuple

from rest_framework import exceptions

from accounts import roster
from accounts.models import StudyClass
from homework.models import AssignmentGroupMember, Homework, Submission

from .lifecycle import ensure_class_teacher, get_homework_or_404

GRADE_COLUMNS = ("学号", "姓名", "邮箱", "提交状态", "提交时间", "分数", "评语")
MISSING = "-"

SCORE_BANDS = (
    ("优秀 (90-100%)", 90, None),
    ("良好 (80-89%)", 80, 90),
    ("中等 (70-79%)", 70, 80),
    ("及格 (60-69%)", 60, 70),
    ("不及格 (<60%)", None, 60),
)
TOP_STUDENTS = 10
ATTENTION_SUBMISSION_RATIO = 0.5


def _rate(part: int, total: int) -> int:
    return round(part * 100 / total) if total else 0


def _submissions_by_student(homework: Homework) -> Dict[int, Submission]:
    """Map every student to the submission that covers them.

    Members of a group that submitted are covered by the leader's row.
    """

    submissions = list(homework.submissions.all())
    by_student = {submission.student_id: submission for submission in submissions}
    group_rows = {s.group_id: s for s in submissions if s.group_id is not None}
    if group_rows:
        members = AssignmentGroupMember.objects.filter(group_id__in=group_rows).values_list(
            "group_id", "student_id"
        )
        for group_id, student_id in members:
            by_student.setdefault(student_id, group_rows[group_id])
    return by_student


def _teacher_homework(teacher, homework_id: int) -> Homework:
    homework = get_homework_or_404(homework_id)
    ensure_class_teacher(teacher, homework, "无权查看此作业成绩")
    return homework


def build_grade_rows(teacher, homework_id: int) -> Tuple[Homework, List[Dict[str, Any]]]:
    homework = _teacher_homework(teacher, homework_id)
    by_student = _submissions_by_student(homework)
    rows = []
    for student in roster.enrolled_students(homework.study_class, order_by_name=True):
        submission = by_student.get(student.pk)
        score = submission.score if submission is not None else None
        rows.append(
            {
                "学号": str(student.pk)[:8],
                "姓名": roster.display_name(student),
                "邮箱": student.email or MISSING,
                "提交状态": "已提交" if submission is not None else "未提交",
                "提交时间": submission.submitted_at.isoformat() if submission is not None else MISSING,
                "分数": score if score is not None else MISSING,
                "评语": (submission.feedback or MISSING) if submission is not None else MISSING,
            }
        )
    return homework, rows


def export_grades_csv(teacher, homework_id: int) -> Tuple[str, str]:
    """Return ``(filename, content)``; the content starts with a BOM for Excel."""

    homework, rows = build_grade_rows(teacher, homework_id)
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer, fieldnames=GRADE_COLUMNS, quoting=csv.QUOTE_ALL, lineterminator="\n"
    )
    writer.writeheader()
    writer.writerows(rows)
    return f"{homework.title}_成绩单.csv", "\ufeff" + buffer.getvalue()


def export_grades_json(teacher, homework_id: int) -> Dict[str, Any]:
    homework, rows = build_grade_rows(teacher, homework_id)
    submitted = sum(1 for row in rows if row["提交状态"] == "已提交")
    scores = [row["分数"] for row in rows if row["分数"] != MISSING]
    return {
        "homework": {
            "id": homework.pk,
            "title": homework.title,
            "max_score": homework.max_score,
            "deadline": homework.deadline.isoformat(),
        },
        "grades": rows,
        "statistics": {
            "total": len(rows),
            "submitted": submitted,
            "not_submitted": len(rows) - submitted,
            "submission_rate": _rate(submitted, len(rows)),
            "average_score": round(statistics.mean(scores), 1) if scores else MISSING,
        },
    }


def score_band(score: int, max_score: int) -> str:
    percent = score * 100 / max_score
    for label, lower, _upper in SCORE_BANDS:
        if lower is None or percent >= lower:
            return label
    return SCORE_BANDS[-1][0]


def homework_statistics(teacher, homework_id: int) -> Dict[str, Any]:
    homework = _teacher_homework(teacher, homework_id)
    enrolled = set(roster.enrolled_student_ids(homework.study_class))
    submitted = homework.type_config.submitted_student_ids(homework) & enrolled
    scores = sorted(
        score
        for score in homework.submissions.filter(score__isnull=False).values_list("score", flat=True)
    )
    counts = {label: 0 for label, _lower, _upper in SCORE_BANDS}
    for score in scores:
        counts[score_band(score, homework.max_score)] += 1

    summary: Dict[str, Any] = {
        "total_students": len(enrolled),
        "submitted": len(submitted),
        "not_submitted": len(enrolled) - len(submitted),
        "submission_rate": _rate(len(submitted), len(enrolled)),
        "graded": len(scores),
    }
    if scores:
        summary.update(
            highest_score=scores[-1],
            lowest_score=scores[0],
            average_score=round(statistics.mean(scores), 1),
            median_score=statistics.median(scores),
        )
    return {
        "homework": {"id": homework.pk, "title": homework.title, "max_score": homework.max_score},
        "distribution": [
            {"label": label, "count": counts[label], "percentage": _rate(counts[label], len(scores))}
            for label, _lower, _upper in SCORE_BANDS
        ],
        "statistics": summary,
    }


def class_overview(teacher, class_id: int) -> Dict[str, Any]:
    """Class-wide submission rate, averages, top students and laggards.

    Scores are compared as a percentage of each homework's ``max_score``.
    """

    try:
        study_class = StudyClass.objects.get(pk=class_id)
    except StudyClass.DoesNotExist as exc:
        raise exceptions.NotFound("班级不存在") from exc
    if not roster.is_class_teacher(teacher, study_class):
        raise exceptions.PermissionDenied("无权查看此班级数据")

    students = roster.enrolled_students(study_class, order_by_name=True)
    homeworks = list(
        Homework.objects.filter(study_class=study_class).prefetch_related("submissions")
    )
    submitted_count = {student.pk: 0 for student in students}
    percentages: Dict[int, List[float]] = {student.pk: [] for student in students}
    for homework in homeworks:
        covered = homework.type_config.submitted_student_ids(homework)
        for student_id in covered:
            if student_id in submitted_count:
                submitted_count[student_id] += 1
        for submission in homework.submissions.all():
            if submission.score is not None and submission.student_id in percentages:
                percentages[submission.student_id].append(
                    submission.score * 100 / homework.max_score
                )

    def average(values: List[float]) -> Optional[float]:
        return round(statistics.mean(values), 1) if values else None

    ranking = []
    for student in students:
        ranking.append(
            {
                "student_id": student.pk,
                "name": roster.display_name(student),
                "submitted": submitted_count[student.pk],
                "average_percentage": average(percentages[student.pk]),
            }
        )
    top_students = sorted(
        (row for row in ranking if row["average_percentage"] is not None),
        key=lambda row: (-row["average_percentage"], row["student_id"]),
    )[:TOP_STUDENTS]
    needs_attention = [
        row
        for row in ranking
        if homeworks and row["submitted"] < len(homeworks) * ATTENTION_SUBMISSION_RATIO
    ]
    all_percentages = [value for values in percentages.values() for value in values]
    return {
        "class": {"id": study_class.pk, "name": study_class.name},
        "homework_count": len(homeworks),
        "student_count": len(students),
        "submission_rate": _rate(sum(submitted_count.values()), len(students) * len(homeworks)),
        "average_percentage": average(all_percentages),
        "top_students": top_students,
        "needs_attention": needs_attention,
    }
