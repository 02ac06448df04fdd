"""Versioned submissions, grading and signed file access."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import posixpath
from typing import List, Optional, Sequence, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework import exceptions

from accounts import roster
from homework.exceptions import Conflict
from homework.models import AssignmentGroupMember, Homework, HomeworkState, Submission
from homework.storage import CleanupReport, FileCleanup, SubmissionStorage, display_name

from . import scoring
from .lifecycle import ensure_class_teacher, get_homework_or_404

logger = logging.getLogger(__name__)

FEEDBACK_MAX_LENGTH = 2000
PREVIEW_EXTENSIONS = (".pdf", ".ipynb")
MAX_SIGNED_URL_TTL = 7 * 24 * 3600


@dataclass(frozen=True)
class SubmitResult:
    submission: Submission
    created: bool
    cleanup: CleanupReport


@dataclass(frozen=True)
class FileAccess:
    url: str
    name: str
    expires_in: int
    preview: bool


def clean_files(files: Optional[Sequence]) -> List:
    files = [upload for upload in (files or []) if upload]
    if not files:
        raise exceptions.ValidationError({"files": ["请至少上传一个文件"]})
    limit = settings.HOMEWORK_MAX_FILES
    if len(files) > limit:
        raise exceptions.ValidationError({"files": [f"最多只能上传 {limit} 个文件"]})
    return files


def storage_prefix(homework: Homework, student) -> str:
    return posixpath.join(settings.HOMEWORK_STORAGE_PREFIX, str(homework.pk), str(student.pk))


def store_files(files: Sequence, prefix: str, storage: SubmissionStorage) -> List[str]:
    """Save every upload or none of them."""

    keys: List[str] = []
    try:
        for upload in files:
            keys.append(storage.save(upload, prefix))
    except Exception:
        storage.release(keys)
        raise
    return keys


def ensure_accepts_submissions(homework: Homework, now: Optional[datetime] = None) -> None:
    state = homework.state_at(now)
    if state == HomeworkState.NOT_STARTED:
        raise Conflict("作业尚未开始，暂不能提交")
    if state == HomeworkState.CLOSED:
        raise Conflict("作业已截止，且不允许迟交")


def _locked_submission(homework: Homework, student_id: int) -> Optional[Submission]:
    return (
        Submission.objects.select_for_update()
        .filter(homework=homework, student_id=student_id)
        .first()
    )


def upsert_submission(
    homework: Homework,
    student,
    keys: List[str],
    *,
    now: datetime,
    group=None,
    labor_division=None,
) -> Tuple[Submission, bool, List[str]]:
    """Create or overwrite the single submission of ``student``.

    Must run inside a transaction.  Returns the row, whether it was created and
    the storage keys it referenced before the overwrite.
    """

    submission = _locked_submission(homework, student.pk)
    if submission is None:
        try:
            with transaction.atomic():
                submission = Submission.objects.create(
                    homework=homework,
                    student=student,
                    group=group,
                    files=keys,
                    labor_division=labor_division or [],
                    submitted_at=now,
                )
            return submission, True, []
        except IntegrityError:
            # Lost the race against a concurrent first submission.
            submission = _locked_submission(homework, student.pk)

    limit = homework.type_config.submission_limit
    if limit is not None and submission.version >= limit:
        raise Conflict(f"本作业最多允许提交 {limit} 次")
    previous = list(submission.files or [])
    submission.files = keys
    submission.group = group
    submission.labor_division = labor_division or []
    submission.version += 1
    submission.submitted_at = now
    submission.save(
        update_fields=["files", "group", "labor_division", "version", "submitted_at"]
    )
    return submission, False, previous


def submit_homework(
    student,
    homework_id: int,
    files: Sequence,
    *,
    storage: Optional[SubmissionStorage] = None,
    now: Optional[datetime] = None,
) -> SubmitResult:
    """Store ``files`` and point the student's submission at them.

    Files reach storage before any row is written, so a storage failure leaves
    no trace in the database.  Keys of an overwritten version are released
    only after the new version has committed.
    """

    storage = storage or SubmissionStorage()
    files = clean_files(files)
    homework = get_homework_or_404(homework_id)
    if not roster.is_enrolled(student, homework.study_class):
        raise exceptions.PermissionDenied("你不是该班级的学生")
    if not homework.type_config.accepts_individual_submission:
        raise Conflict("本作业需要以小组形式提交")
    ensure_accepts_submissions(homework, now)

    keys = store_files(files, storage_prefix(homework, student), storage)
    cleanup = FileCleanup(storage)
    try:
        with transaction.atomic():
            submission, created, previous = upsert_submission(
                homework, student, keys, now=now or timezone.now()
            )
            cleanup.extend(previous)
            report = cleanup.schedule()
    except Exception:
        storage.release(keys)
        raise

    logger.info(
        "Student %s %s homework %s (version %d, %d file(s))",
        student.pk,
        "submitted" if created else "resubmitted",
        homework.pk,
        submission.version,
        len(keys),
    )
    return SubmitResult(submission=submission, created=created, cleanup=report)


def _clean_score(score, max_score: int) -> int:
    if isinstance(score, bool) or not isinstance(score, (int, float)) or score != int(score):
        raise exceptions.ValidationError({"score": ["分数必须是整数"]})
    score = int(score)
    if not 0 <= score <= max_score:
        raise exceptions.ValidationError({"score": [f"分数必须在 0 到 {max_score} 之间"]})
    return score


def grade_submission(
    teacher,
    homework_id: int,
    submission_id: int,
    score,
    feedback: Optional[str] = None,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """Set the score and append the matching audit entry in one transaction."""

    if feedback is not None and len(feedback) > FEEDBACK_MAX_LENGTH:
        raise exceptions.ValidationError(
            {"feedback": [f"评语不能超过 {FEEDBACK_MAX_LENGTH} 个字符"]}
        )
    with transaction.atomic():
        homework = get_homework_or_404(homework_id)
        ensure_class_teacher(teacher, homework, "无权批改此作业")
        score = _clean_score(score, homework.max_score)
        try:
            submission = Submission.objects.select_for_update().get(
                pk=submission_id, homework=homework
            )
        except Submission.DoesNotExist as exc:
            raise exceptions.NotFound("提交记录不存在") from exc

        old_score = submission.score
        submission.score = score
        if feedback is not None:
            submission.feedback = feedback
        submission.graded_at = now or timezone.now()
        submission.graded_by = teacher
        submission.save(update_fields=["score", "feedback", "graded_at", "graded_by"])
        scoring.record_score_change(
            submission=submission,
            student_id=submission.student_id,
            old_score=old_score,
            new_score=score,
            operator=teacher,
            reason=reason,
        )
    logger.info(
        "Submission %s graded %s -> %s by %s", submission.pk, old_score, score, teacher.pk
    )
    return submission


def _can_read_submission(user, submission: Submission) -> bool:
    if submission.student_id == user.pk:
        return True
    if submission.group_id is None:
        return False
    return AssignmentGroupMember.objects.filter(
        group_id=submission.group_id, student_id=user.pk
    ).exists()


def file_access_url(
    user,
    homework_id: int,
    key: str,
    *,
    ttl: Optional[int] = None,
    preview: bool = False,
    storage: Optional[SubmissionStorage] = None,
) -> FileAccess:
    """Hand out a time-bounded link to one submitted file.

    The class teacher may read any file of the homework; a student only files
    of a submission they own or share through their group.
    """

    storage = storage or SubmissionStorage()
    if not key:
        raise exceptions.ValidationError({"key": ["该字段为必填项"]})
    if preview and posixpath.splitext(key)[1].lower() not in PREVIEW_EXTENSIONS:
        raise exceptions.ValidationError({"key": ["仅支持预览 PDF 和 ipynb 文件"]})
    ttl = int(ttl or settings.HOMEWORK_SIGNED_URL_TTL)
    if not 0 < ttl <= MAX_SIGNED_URL_TTL:
        raise exceptions.ValidationError({"ttl": ["链接有效期超出允许范围"]})

    homework = get_homework_or_404(homework_id)
    owners = [
        submission
        for submission in homework.submissions.only("id", "student_id", "group_id", "files")
        if key in (submission.files or [])
    ]
    if not owners:
        raise exceptions.NotFound("文件不存在")
    is_teacher = roster.is_class_teacher(user, homework.study_class)
    if not is_teacher and not any(_can_read_submission(user, item) for item in owners):
        raise exceptions.PermissionDenied("无权访问此文件")

    return FileAccess(
        url=storage.signed_url(key, ttl, inline=preview),
        name=display_name(key),
        expires_in=ttl,
        preview=preview,
    )
