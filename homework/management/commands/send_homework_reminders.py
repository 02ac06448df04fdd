from __future__ import annotations

import logging
import threading

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from homework.service_utils.reminders import send_due_reminders

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Send pre-deadline reminders to students who have not submitted yet."

    def add_arguments(self, parser):
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep sweeping at a fixed interval instead of running once.",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help=(
                "Seconds between sweeps in --loop mode "
                "(default: HOMEWORK_REMINDER_INTERVAL_SECONDS)."
            ),
        )
        parser.add_argument(
            "--iterations",
            type=int,
            default=0,
            help="Stop --loop after this many sweeps (0 = run until interrupted).",
        )

    def handle(self, *args, **options):
        interval = options["interval"] or settings.HOMEWORK_REMINDER_INTERVAL_SECONDS
        if interval <= 0:
            raise CommandError("--interval must be a positive number of seconds")
        iterations = options["iterations"]
        if iterations < 0:
            raise CommandError("--iterations cannot be negative")

        stop = threading.Event()
        if not options["loop"]:
            self._sweep(stop)
            return

        logger.info("Reminder loop started, sweeping every %d second(s)", interval)
        runs = 0
        try:
            while not stop.is_set():
                self._sweep(stop)
                runs += 1
                if iterations and runs >= iterations:
                    break
                stop.wait(interval)
        except KeyboardInterrupt:
            stop.set()
            self.stdout.write(self.style.WARNING("Interrupted, stopping reminder loop."))
        logger.info("Reminder loop stopped after %d sweep(s)", runs)

    def _sweep(self, stop: threading.Event) -> None:
        report = send_due_reminders(cancel=stop)
        message = (
            f"Reminded {report.homeworks} homework(s): "
            f"{report.sent}/{report.attempted} sent, {report.failed} failed."
        )
        if report.failed:
            self.stdout.write(self.style.WARNING(message))
        else:
            self.stdout.write(self.style.SUCCESS(message))
