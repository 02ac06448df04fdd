from __future__ import annotations

from datetime import timedelta
import smtplib
import threading
from unittest import mock

from django.core import mail
from django.core.mail import EmailMultiAlternatives
from django.test import TestCase, override_settings
from django.utils import timezone

from homework import notifications
from homework.models import Homework
from homework.service_utils import reminders
from homework.tests import factories


class ReminderSweepTests(TestCase):
    def setUp(self):
        self.teacher = factories.create_teacher()
        self.study_class = factories.create_class(teacher=self.teacher, name="高一(3)班")
        self.t0 = timezone.now()
        self.deadline = self.t0 + timedelta(days=7)
        self.submitter, self.pending, self.other = factories.create_students(self.study_class, 3)
        self.homework = factories.create_homework(
            study_class=self.study_class,
            title="函数练习",
            start_time=self.t0 - timedelta(hours=1),
            deadline=self.deadline,
            reminder_time=self.deadline - timedelta(hours=24),
        )
        factories.create_submission(self.homework, self.submitter)

    def test_sweep_reminds_non_submitters_once(self):
        first_sweep = self.t0 + timedelta(days=6, minutes=1)

        report = reminders.send_due_reminders(now=first_sweep)

        self.assertEqual(report.homeworks, 1)
        self.assertEqual(report.attempted, 2)
        self.assertEqual(report.sent, 2)
        self.assertEqual(report.failed, 0)
        self.assertEqual(
            sorted(message.to[0] for message in mail.outbox),
            sorted([self.pending.email, self.other.email]),
        )
        self.assertIn("函数练习", mail.outbox[0].subject)
        self.homework.refresh_from_db()
        self.assertTrue(self.homework.reminder_sent)

        again = reminders.send_due_reminders(now=first_sweep + timedelta(minutes=1))
        self.assertEqual(again.homeworks, 0)
        self.assertEqual(len(mail.outbox), 2)

    def test_not_due_before_reminder_time(self):
        report = reminders.send_due_reminders(now=self.t0 + timedelta(days=5))
        self.assertEqual(report.homeworks, 0)
        self.assertEqual(mail.outbox, [])

    def test_passed_deadline_is_never_reminded(self):
        report = reminders.send_due_reminders(now=self.deadline + timedelta(minutes=1))
        self.assertEqual(report.homeworks, 0)
        self.homework.refresh_from_db()
        self.assertFalse(self.homework.reminder_sent)

    def test_failed_recipients_are_counted_and_flag_still_flips(self):
        def sender(email, *args):
            if email == self.pending.email:
                raise smtplib.SMTPException("mailbox unavailable")

        report = reminders.send_due_reminders(
            now=self.deadline - timedelta(hours=1), sender=sender
        )

        self.assertEqual((report.attempted, report.sent, report.failed), (2, 1, 1))
        self.assertEqual(report.failures, [f"{self.homework.pk}:{self.pending.pk}"])
        self.assertTrue(Homework.objects.get(pk=self.homework.pk).reminder_sent)

    def test_student_without_email_counts_as_failed(self):
        type(self.other).objects.filter(pk=self.other.pk).update(email="")
        sender = mock.Mock()

        report = reminders.send_due_reminders(now=self.deadline - timedelta(hours=1), sender=sender)

        self.assertEqual(report.failed, 1)
        sender.assert_called_once()
        self.assertEqual(sender.call_args.args[0], self.pending.email)

    def test_group_members_covered_by_leader_submission(self):
        homework = factories.create_group_homework(study_class=self.study_class)
        Homework.objects.filter(pk=homework.pk).update(
            reminder_time=self.t0 - timedelta(minutes=5)
        )
        group = factories.create_group(homework, self.submitter, self.pending)
        factories.create_submission(homework, self.submitter, group=group)
        Homework.objects.filter(pk=self.homework.pk).update(reminder_sent=True)
        sender = mock.Mock()

        reminders.send_due_reminders(now=self.t0, sender=sender)

        self.assertEqual([c.args[0] for c in sender.call_args_list], [self.other.email])

    def test_cancelled_sweep_leaves_homework_due(self):
        cancel = threading.Event()
        cancel.set()

        report = reminders.send_due_reminders(
            now=self.deadline - timedelta(hours=1), cancel=cancel
        )

        self.assertTrue(report.cancelled)
        self.assertFalse(Homework.objects.get(pk=self.homework.pk).reminder_sent)

    def test_cancel_stops_between_recipients(self):
        factories.create_students(self.study_class, 3)
        cancel = threading.Event()
        sender = mock.Mock(side_effect=lambda *args: cancel.set())
        due = self.deadline - timedelta(hours=1)

        report = reminders.send_due_reminders(now=due, sender=sender, cancel=cancel)

        self.assertEqual(sender.call_count, 1)
        self.assertTrue(report.cancelled)
        self.assertEqual((report.homeworks, report.attempted, report.sent), (0, 1, 1))
        self.assertFalse(Homework.objects.get(pk=self.homework.pk).reminder_sent)

        resumed = mock.Mock()
        again = reminders.send_due_reminders(now=due, sender=resumed)
        self.assertEqual(resumed.call_count, 5)
        self.assertEqual(again.homeworks, 1)
        self.assertTrue(Homework.objects.get(pk=self.homework.pk).reminder_sent)


@override_settings(HOMEWORK_REMINDER_RETRIES=3)
class ReminderMailTests(TestCase):
    def test_message_carries_text_and_html(self):
        notifications.send_homework_reminder(
            "student@example.com", "张三", "函数练习", timezone.now(), "高一(3)班"
        )

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.subject, "【作业提醒】函数练习 即将截止")
        self.assertIn("张三", message.body)
        self.assertEqual(message.alternatives[0][1], "text/html")

    def test_transient_failures_are_retried(self):
        with mock.patch.object(
            EmailMultiAlternatives,
            "send",
            side_effect=[smtplib.SMTPServerDisconnected("closed"), 1],
        ) as send:
            notifications.send_homework_reminder(
                "student@example.com", "张三", "函数练习", timezone.now(), "高一(3)班"
            )
        self.assertEqual(send.call_count, 2)

    def test_last_error_is_raised_after_retries(self):
        with mock.patch.object(
            EmailMultiAlternatives, "send", side_effect=OSError("connection refused")
        ) as send:
            with self.assertRaises(OSError):
                notifications.send_homework_reminder(
                    "student@example.com", "张三", "函数练习", timezone.now(), "高一(3)班", retries=2
                )
        self.assertEqual(send.call_count, 2)
