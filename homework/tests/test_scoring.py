from __future__ import annotations

from unittest import mock

from django.db import DatabaseError
from django.db.models import ProtectedError
from django.test import TestCase
from rest_framework import exceptions

from homework.models import ScoreAdjustment, ScoreAuditLog
from homework.service_utils import scoring
from homework.service_utils.submissions import grade_submission
from homework.tests import factories


class AdjustScoresTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher)
        self.leader, self.member, self.outsider = factories.create_students(self.study_class, 3)
        self.homework = factories.create_group_homework(study_class=self.study_class)
        self.group = factories.create_group(self.homework, self.leader, self.member)
        self.submission = factories.create_submission(self.homework, self.leader, group=self.group)

    def _item(self, student, final_score, **extra):
        item = {
            "student_id": student.pk,
            "base_score": 80,
            "adjust_score": final_score - 80,
            "final_score": final_score,
        }
        item.update(extra)
        return item

    def test_each_member_gets_own_score_and_audit_entry(self):
        result = scoring.adjust_scores(
            self.teacher,
            self.submission.pk,
            [self._item(self.leader, 90, reason="主要贡献"), self._item(self.member, 75)],
        )

        self.assertEqual(result.attempted, 2)
        self.assertEqual(result.succeeded_count, 2)
        self.assertEqual(result.errors, [])
        scores = dict(
            ScoreAdjustment.objects.filter(submission=self.submission).values_list(
                "student_id", "final_score"
            )
        )
        self.assertEqual(scores, {self.leader.pk: 90, self.member.pk: 75})
        reasons = dict(
            ScoreAuditLog.objects.filter(submission=self.submission).values_list(
                "student_id", "reason"
            )
        )
        self.assertEqual(reasons, {self.leader.pk: "主要贡献", self.member.pk: "项目小组成绩调整"})

    def test_readjusting_records_previous_final_score(self):
        scoring.adjust_scores(self.teacher, self.submission.pk, [self._item(self.member, 70)])
        scoring.adjust_scores(self.teacher, self.submission.pk, [self._item(self.member, 85)])

        self.assertEqual(
            ScoreAdjustment.objects.get(submission=self.submission, student=self.member).final_score,
            85,
        )
        history = list(
            ScoreAuditLog.objects.filter(student=self.member).values_list("old_score", "new_score")
        )
        self.assertEqual(history, [(None, 70), (70, 85)])

    def test_partial_success_reports_rejected_entries(self):
        result = scoring.adjust_scores(
            self.teacher,
            self.submission.pk,
            [
                self._item(self.leader, 88),
                self._item(self.outsider, 60),
                self._item(self.member, 150),
            ],
        )

        self.assertEqual(result.succeeded_count, 1)
        self.assertEqual(
            [error.student_id for error in result.errors], [self.outsider.pk, self.member.pk]
        )
        self.assertEqual(ScoreAdjustment.objects.count(), 1)
        self.assertEqual(ScoreAuditLog.objects.count(), 1)

    def test_failed_audit_write_drops_that_adjustment(self):
        record = scoring.record_score_change

        def flaky_record(**kwargs):
            if kwargs["student_id"] == self.member.pk:
                raise DatabaseError("ledger unavailable")
            return record(**kwargs)

        with mock.patch.object(scoring, "record_score_change", side_effect=flaky_record):
            with self.assertRaises(DatabaseError):
                scoring.adjust_scores(
                    self.teacher,
                    self.submission.pk,
                    [self._item(self.leader, 90), self._item(self.member, 75)],
                )

        self.assertEqual(
            list(
                ScoreAdjustment.objects.filter(submission=self.submission).values_list(
                    "student_id", flat=True
                )
            ),
            [self.leader.pk],
        )
        self.assertEqual(
            list(ScoreAuditLog.objects.values_list("student_id", flat=True)), [self.leader.pk]
        )

    def test_empty_batch_is_rejected(self):
        with self.assertRaises(exceptions.ValidationError):
            scoring.adjust_scores(self.teacher, self.submission.pk, [])

    def test_only_group_projects(self):
        standard = factories.create_homework(study_class=self.study_class)
        submission = factories.create_submission(standard, self.leader)
        with self.assertRaises(exceptions.ValidationError):
            scoring.adjust_scores(self.teacher, submission.pk, [self._item(self.leader, 90)])

    def test_only_class_teacher(self):
        with self.assertRaises(exceptions.PermissionDenied):
            scoring.adjust_scores(
                factories.create_teacher(), self.submission.pk, [self._item(self.leader, 90)]
            )

    def test_unknown_submission(self):
        with self.assertRaises(exceptions.NotFound):
            scoring.adjust_scores(self.teacher, 987654, [self._item(self.leader, 90)])


class AuditLogQueryTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher)
        self.student, self.classmate = factories.create_students(self.study_class, 2)
        self.homework = factories.create_homework(study_class=self.study_class)
        self.submission = factories.create_submission(self.homework, self.student)
        grade_submission(self.teacher, self.homework.pk, self.submission.pk, 70)
        grade_submission(self.teacher, self.homework.pk, self.submission.pk, 80, reason="复核")

    def test_submission_history_is_chronological(self):
        entries = scoring.audit_log_for_submission(self.teacher, self.submission.pk)
        self.assertEqual([entry.new_score for entry in entries], [70, 80])
        self.assertEqual(
            [entry.new_score for entry in scoring.audit_log_for_submission(self.student, self.submission.pk)],
            [70, 80],
        )

    def test_classmate_cannot_read_submission_history(self):
        with self.assertRaises(exceptions.PermissionDenied):
            scoring.audit_log_for_submission(self.classmate, self.submission.pk)

    def test_student_history_scoped_to_teacher_classes(self):
        own = scoring.audit_log_for_student(self.student, self.student.pk)
        self.assertEqual(own.count(), 2)
        self.assertEqual(scoring.audit_log_for_student(self.teacher, self.student.pk).count(), 2)
        with self.assertRaises(exceptions.PermissionDenied):
            scoring.audit_log_for_student(factories.create_teacher(), self.student.pk)
        with self.assertRaises(exceptions.NotFound):
            scoring.audit_log_for_student(self.teacher, 987654)

    def test_ledger_entries_block_deleting_the_student(self):
        with self.assertRaises(ProtectedError):
            self.student.delete()
        self.assertEqual(ScoreAuditLog.objects.filter(student=self.student).count(), 2)
