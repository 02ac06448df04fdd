import logging
import smtplib

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils import timezone

logger = logging.getLogger(__name__)


def _deadline_text(deadline) -> str:
    local = timezone.localtime(deadline) if timezone.is_aware(deadline) else deadline
    return local.strftime("%Y年%m月%d日 %H:%M")


def send_homework_reminder(email, student_name, homework_title, deadline, class_name, *, retries=None):
    """Mail a pre-deadline reminder to one student.

    The send is retried up to ``HOMEWORK_REMINDER_RETRIES`` times with a fresh
    connection each time; the last error is re-raised so the caller can count
    the recipient as failed.
    """

    attempts = max(1, int(retries or settings.HOMEWORK_REMINDER_RETRIES))
    context = {
        "student_name": student_name,
        "homework_title": homework_title,
        "class_name": class_name,
        "deadline_text": _deadline_text(deadline),
        "homework_url": f"{settings.FRONTEND_URL.rstrip('/')}/homeworks",
    }
    message = EmailMultiAlternatives(
        subject=f"【作业提醒】{homework_title} 即将截止",
        body=render_to_string("homework/email/reminder.txt", context),
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[email],
    )
    message.attach_alternative(
        render_to_string("homework/email/reminder.html", context), "text/html"
    )

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            message.send()
        except (smtplib.SMTPException, OSError) as exc:
            last_error = exc
            logger.warning(
                "Reminder to %s failed (attempt %d/%d): %s", email, attempt, attempts, exc
            )
            message.connection = None
            continue
        logger.info("Reminder for %r sent to %s", homework_title, email)
        return
    raise last_error
