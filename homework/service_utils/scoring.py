"""Score audit ledger and per-member score adjustments for group projects."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, List, Mapping, Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from rest_framework import exceptions

from accounts import roster
from homework.models import ScoreAdjustment, ScoreAuditLog, Submission

logger = logging.getLogger(__name__)

GRADING_REASON = "教师评分"
ADJUSTMENT_REASON = "项目小组成绩调整"


@dataclass(frozen=True)
class AdjustmentError:
    student_id: Any
    detail: Any


@dataclass
class AdjustmentResult:
    attempted: int = 0
    succeeded: List[ScoreAdjustment] = field(default_factory=list)
    errors: List[AdjustmentError] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)


def record_score_change(
    *,
    submission: Submission,
    student_id: int,
    old_score: Optional[int],
    new_score: int,
    operator,
    reason: Optional[str] = None,
    default_reason: str = GRADING_REASON,
) -> ScoreAuditLog:
    """Append one ledger entry.

    This is the only writer of ``ScoreAuditLog``; call it in the same
    transaction as the score mutation it describes.
    """

    return ScoreAuditLog.objects.create(
        submission=submission,
        student_id=student_id,
        old_score=old_score,
        new_score=new_score,
        reason=(reason or "").strip() or default_reason,
        operator=operator,
    )


def _get_submission(submission_id: int) -> Submission:
    try:
        return Submission.objects.select_related(
            "homework", "homework__study_class", "group"
        ).get(pk=submission_id)
    except Submission.DoesNotExist as exc:
        raise exceptions.NotFound("提交记录不存在") from exc


def _score_value(name: str, value, *, minimum=None, maximum=None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise exceptions.ValidationError({name: ["必须是整数"]})
    if minimum is not None and value < minimum or maximum is not None and value > maximum:
        raise exceptions.ValidationError({name: [f"必须在 {minimum} 到 {maximum} 之间"]})
    return value


def _apply_adjustment(teacher, submission: Submission, item: Mapping[str, Any], member_ids) -> ScoreAdjustment:
    student_id = item.get("student_id")
    if student_id not in member_ids:
        raise exceptions.ValidationError({"student_id": ["该学生不属于提交小组"]})
    max_score = submission.homework.max_score
    base_score = _score_value("base_score", item.get("base_score"), minimum=0, maximum=max_score)
    adjust_score = _score_value("adjust_score", item.get("adjust_score"))
    final_score = _score_value(
        "final_score", item.get("final_score"), minimum=0, maximum=max_score
    )
    reason = (item.get("reason") or "").strip()

    with transaction.atomic():
        existing = (
            ScoreAdjustment.objects.select_for_update()
            .filter(submission=submission, student_id=student_id)
            .first()
        )
        old_score = existing.final_score if existing else None
        adjustment, _ = ScoreAdjustment.objects.update_or_create(
            submission=submission,
            student_id=student_id,
            defaults={
                "base_score": base_score,
                "adjust_score": adjust_score,
                "final_score": final_score,
                "reason": reason,
            },
        )
        record_score_change(
            submission=submission,
            student_id=student_id,
            old_score=old_score,
            new_score=final_score,
            operator=teacher,
            reason=reason,
            default_reason=ADJUSTMENT_REASON,
        )
    return adjustment


def adjust_scores(teacher, submission_id: int, adjustments: Iterable[Mapping[str, Any]]) -> AdjustmentResult:
    """Upsert per-member scores of a group submission.

    Every tuple is committed together with its audit entry and independently
    of the others; rejected tuples are reported back instead of aborting the
    batch.
    """

    submission = _get_submission(submission_id)
    homework = submission.homework
    if not roster.is_class_teacher(teacher, homework.study_class):
        raise exceptions.PermissionDenied("无权调整此作业成绩")
    if not homework.type_config.supports_groups:
        raise exceptions.ValidationError({"submission_id": ["只有项目小组作业支持成绩调整"]})
    adjustments = list(adjustments or [])
    if not adjustments:
        raise exceptions.ValidationError({"adjustments": ["请至少提供一条成绩调整"]})

    if submission.group_id is not None:
        member_ids = set(submission.group.members.values_list("student_id", flat=True))
    else:
        member_ids = {submission.student_id}

    result = AdjustmentResult()
    for item in adjustments:
        result.attempted += 1
        if not isinstance(item, Mapping):
            result.errors.append(AdjustmentError(None, "格式不正确"))
            continue
        try:
            result.succeeded.append(_apply_adjustment(teacher, submission, item, member_ids))
        except exceptions.APIException as exc:
            result.errors.append(AdjustmentError(item.get("student_id"), exc.detail))
    logger.info(
        "Score adjustments on submission %s by %s: %d/%d succeeded",
        submission.pk,
        teacher.pk,
        result.succeeded_count,
        result.attempted,
    )
    return result


def audit_log_for_submission(user, submission_id: int):
    submission = _get_submission(submission_id)
    if not (
        roster.is_class_teacher(user, submission.homework.study_class)
        or submission.student_id == user.pk
    ):
        raise exceptions.PermissionDenied("无权查看此成绩记录")
    return (
        ScoreAuditLog.objects.filter(submission_id=submission.pk)
        .select_related("operator", "student")
        .order_by("created_at", "id")
    )


def audit_log_for_student(user, student_id: int):
    """A student sees their own history; a teacher the entries of their classes."""

    if not get_user_model().objects.filter(pk=student_id).exists():
        raise exceptions.NotFound("学生不存在")
    entries = ScoreAuditLog.objects.filter(student_id=student_id).select_related(
        "operator", "student"
    )
    if user.pk != student_id:
        entries = entries.filter(submission__homework__study_class__teacher=user)
        if not entries.exists():
            raise exceptions.PermissionDenied("无权查看此学生的成绩记录")
    return entries.order_by("created_at", "id")
