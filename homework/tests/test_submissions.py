from __future__ import annotations

from datetime import timedelta
from unittest import mock

from django.core import signing
from django.db import DatabaseError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import exceptions

from homework.exceptions import Conflict, StorageFailure
from homework.models import ScoreAuditLog, Submission
from homework.service_utils import scoring
from homework.service_utils import submissions as submission_service
from homework.storage import SubmissionStorage, resolve_token
from homework.tests import factories


class FailingSaveStorage(SubmissionStorage):
    """Accepts the first upload, then refuses the rest."""

    def __init__(self):
        super().__init__()
        self.calls = 0
        self.saved = []

    def save(self, uploaded, prefix):
        self.calls += 1
        if self.calls > 1:
            raise StorageFailure("文件上传失败")
        key = super().save(uploaded, prefix)
        self.saved.append(key)
        return key


@override_settings(STORAGES=factories.IN_MEMORY_STORAGES)
class SubmitHomeworkTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher)
        self.student = factories.create_student()
        factories.enroll(self.study_class, self.student)
        self.homework = factories.create_homework(study_class=self.study_class)
        self.storage = SubmissionStorage()

    def test_first_submission_creates_version_one(self):
        result = submission_service.submit_homework(
            self.student, self.homework.pk, [factories.upload("a.pdf")]
        )

        self.assertTrue(result.created)
        submission = result.submission
        self.assertEqual(submission.version, 1)
        self.assertEqual(len(submission.files), 1)
        self.assertTrue(submission.files[0].endswith("/a.pdf"))
        self.assertTrue(self.storage.backend.exists(submission.files[0]))

    def test_resubmission_overwrites_in_place_and_releases_old_files(self):
        first = submission_service.submit_homework(
            self.student, self.homework.pk, [factories.upload("a.pdf")]
        )
        old_key = first.submission.files[0]

        with self.captureOnCommitCallbacks(execute=True):
            second = submission_service.submit_homework(
                self.student, self.homework.pk, [factories.upload("b.pdf")]
            )

        self.assertFalse(second.created)
        self.assertEqual(Submission.objects.filter(homework=self.homework).count(), 1)
        submission = Submission.objects.get(homework=self.homework, student=self.student)
        self.assertEqual(submission.pk, first.submission.pk)
        self.assertEqual(submission.version, 2)
        self.assertEqual(len(submission.files), 1)
        self.assertTrue(submission.files[0].endswith("/b.pdf"))
        self.assertEqual(second.cleanup.released, [old_key])
        self.assertFalse(self.storage.backend.exists(old_key))

    def test_enclosing_rollback_keeps_previous_files(self):
        first = submission_service.submit_homework(
            self.student, self.homework.pk, [factories.upload("a.pdf")]
        )
        old_key = first.submission.files[0]

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(RuntimeError):
                with transaction.atomic():
                    submission_service.submit_homework(
                        self.student, self.homework.pk, [factories.upload("b.pdf")]
                    )
                    raise RuntimeError("request aborted")

        self.assertEqual(callbacks, [])
        submission = Submission.objects.get(homework=self.homework, student=self.student)
        self.assertEqual(submission.files, [old_key])
        self.assertEqual(submission.version, 1)
        self.assertTrue(self.storage.backend.exists(old_key))

    def test_file_count_is_bounded(self):
        with self.assertRaises(exceptions.ValidationError):
            submission_service.submit_homework(self.student, self.homework.pk, [])
        with self.assertRaises(exceptions.ValidationError):
            submission_service.submit_homework(
                self.student,
                self.homework.pk,
                [factories.upload(f"{index}.pdf") for index in range(6)],
            )

    def test_outsider_cannot_submit(self):
        with self.assertRaises(exceptions.PermissionDenied):
            submission_service.submit_homework(
                factories.create_student(), self.homework.pk, [factories.upload()]
            )

    def test_closed_homework_rejects_submission(self):
        now = timezone.now()
        closed = factories.create_homework(
            study_class=self.study_class,
            start_time=now - timedelta(days=3),
            deadline=now - timedelta(days=1),
        )
        with self.assertRaises(Conflict):
            submission_service.submit_homework(self.student, closed.pk, [factories.upload()])
        self.assertFalse(Submission.objects.filter(homework=closed).exists())

    def test_late_submission_allowed_when_enabled(self):
        now = timezone.now()
        late = factories.create_homework(
            study_class=self.study_class,
            start_time=now - timedelta(days=3),
            deadline=now - timedelta(days=1),
            allow_late=True,
        )
        result = submission_service.submit_homework(self.student, late.pk, [factories.upload()])
        self.assertTrue(result.created)

    def test_storage_failure_writes_nothing(self):
        storage = FailingSaveStorage()
        with self.assertRaises(StorageFailure):
            submission_service.submit_homework(
                self.student,
                self.homework.pk,
                [factories.upload("a.pdf"), factories.upload("b.pdf")],
                storage=storage,
            )
        self.assertFalse(Submission.objects.exists())
        self.assertEqual(len(storage.saved), 1)
        self.assertFalse(storage.backend.exists(storage.saved[0]))

    def test_group_required_project_refuses_individual_submission(self):
        group_homework = factories.create_group_homework(study_class=self.study_class)
        with self.assertRaises(Conflict):
            submission_service.submit_homework(
                self.student, group_homework.pk, [factories.upload()]
            )

    def test_self_practice_count_limit_caps_versions(self):
        practice = factories.create_self_practice_homework(
            study_class=self.study_class, count_limit=2
        )
        submission_service.submit_homework(self.student, practice.pk, [factories.upload()])
        submission_service.submit_homework(self.student, practice.pk, [factories.upload()])

        with self.assertRaises(Conflict):
            submission_service.submit_homework(self.student, practice.pk, [factories.upload()])
        self.assertEqual(Submission.objects.get(homework=practice).version, 2)


class GradeSubmissionTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher)
        self.student = factories.create_student()
        factories.enroll(self.study_class, self.student)
        self.homework = factories.create_homework(study_class=self.study_class, max_score=100)
        self.submission = factories.create_submission(self.homework, self.student)

    def test_out_of_range_score_is_rejected(self):
        with self.assertRaises(exceptions.ValidationError) as ctx:
            submission_service.grade_submission(
                self.teacher, self.homework.pk, self.submission.pk, 150
            )
        self.assertIn("score", ctx.exception.detail)
        self.submission.refresh_from_db()
        self.assertIsNone(self.submission.score)
        self.assertFalse(ScoreAuditLog.objects.exists())

    def test_grading_writes_exactly_one_audit_entry(self):
        submission = submission_service.grade_submission(
            self.teacher, self.homework.pk, self.submission.pk, 85, "不错"
        )

        self.assertEqual(submission.score, 85)
        self.assertIsNotNone(submission.graded_at)
        self.assertEqual(submission.feedback, "不错")
        entries = list(ScoreAuditLog.objects.filter(submission=submission))
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertIsNone(entry.old_score)
        self.assertEqual(entry.new_score, 85)
        self.assertEqual(entry.operator, self.teacher)
        self.assertEqual(entry.reason, "教师评分")

    def test_regrade_records_previous_score(self):
        submission_service.grade_submission(self.teacher, self.homework.pk, self.submission.pk, 60)
        submission_service.grade_submission(
            self.teacher, self.homework.pk, self.submission.pk, 75, reason="复核加分"
        )

        entries = list(
            ScoreAuditLog.objects.filter(submission=self.submission).values_list(
                "old_score", "new_score", "reason"
            )
        )
        self.assertEqual(entries, [(None, 60, "教师评分"), (60, 75, "复核加分")])

    def test_failed_audit_write_discards_the_grade(self):
        with mock.patch.object(
            scoring, "record_score_change", side_effect=DatabaseError("ledger unavailable")
        ):
            with self.assertRaises(DatabaseError):
                submission_service.grade_submission(
                    self.teacher, self.homework.pk, self.submission.pk, 90, "很好"
                )

        self.submission.refresh_from_db()
        self.assertIsNone(self.submission.score)
        self.assertIsNone(self.submission.graded_at)
        self.assertEqual(self.submission.feedback, "")
        self.assertFalse(ScoreAuditLog.objects.exists())

    def test_feedback_length_is_bounded(self):
        with self.assertRaises(exceptions.ValidationError):
            submission_service.grade_submission(
                self.teacher, self.homework.pk, self.submission.pk, 80, "长" * 2001
            )

    def test_only_class_teacher_can_grade(self):
        with self.assertRaises(exceptions.PermissionDenied):
            submission_service.grade_submission(
                factories.create_teacher(), self.homework.pk, self.submission.pk, 80
            )

    def test_submission_of_other_homework_is_not_found(self):
        other = factories.create_homework(study_class=self.study_class)
        with self.assertRaises(exceptions.NotFound):
            submission_service.grade_submission(self.teacher, other.pk, self.submission.pk, 80)

    def test_audit_entries_cannot_be_rewritten(self):
        submission_service.grade_submission(self.teacher, self.homework.pk, self.submission.pk, 70)
        entry = ScoreAuditLog.objects.get()
        entry.new_score = 100
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()


@override_settings(STORAGES=factories.IN_MEMORY_STORAGES)
class FileAccessTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher)
        self.student, self.classmate = factories.create_students(self.study_class, 2)
        self.homework = factories.create_homework(study_class=self.study_class)
        result = submission_service.submit_homework(
            self.student,
            self.homework.pk,
            [factories.upload("report.pdf"), factories.upload("notes.docx")],
        )
        self.pdf_key, self.docx_key = result.submission.files

    def test_owner_and_teacher_get_signed_links(self):
        for user in (self.student, self.teacher):
            with self.subTest(user=user.username):
                access = submission_service.file_access_url(user, self.homework.pk, self.pdf_key)
                self.assertEqual(access.name, "report.pdf")
                payload = resolve_token(access.url.rstrip("/").rsplit("/", 1)[-1])
                self.assertEqual(payload["key"], self.pdf_key)

    def test_classmate_is_denied(self):
        with self.assertRaises(exceptions.PermissionDenied):
            submission_service.file_access_url(self.classmate, self.homework.pk, self.pdf_key)

    def test_unknown_key_is_not_found(self):
        with self.assertRaises(exceptions.NotFound):
            submission_service.file_access_url(self.teacher, self.homework.pk, "homework/nope.pdf")

    def test_preview_limited_to_pdf_and_notebooks(self):
        access = submission_service.file_access_url(
            self.student, self.homework.pk, self.pdf_key, preview=True
        )
        self.assertTrue(access.preview)
        with self.assertRaises(exceptions.ValidationError):
            submission_service.file_access_url(
                self.student, self.homework.pk, self.docx_key, preview=True
            )

    def test_signed_link_serves_file_until_expiry(self):
        access = submission_service.file_access_url(
            self.student, self.homework.pk, self.pdf_key, ttl=60
        )
        response = self.client.get(access.url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(b"".join(response.streaming_content), b"%PDF-1.4 test")

        with self.settings(SECRET_KEY="another-secret-key-for-tests-only-0000000000"):
            self.assertEqual(self.client.get(access.url).status_code, 404)
        expired = signing.TimestampSigner(salt="homework.storage.file-access").sign_object(
            {"key": self.pdf_key, "ttl": -1, "inline": False}
        )
        response = self.client.get(reverse("homework:signed-file", kwargs={"token": expired}))
        self.assertEqual(response.status_code, 410)
