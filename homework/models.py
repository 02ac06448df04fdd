from __future__ import annotations

from datetime import datetime
from typing import Optional

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.functional import cached_property

from accounts.models import StudyClass

from .configs import (
    AssignmentConfig,
    GroupProjectConfig,
    HomeworkType,
    encode_config,
    load_stored_config,
)


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class HomeworkState(models.TextChoices):
    NOT_STARTED = "NOT_STARTED", "未开始"
    OPEN = "OPEN", "进行中"
    CLOSED = "CLOSED", "已截止"
    LATE_OPEN = "LATE_OPEN", "可迟交"


class Homework(TimeStampedModel):
    """A gradable unit of work published by an instructor to a class."""

    Type = HomeworkType

    study_class = models.ForeignKey(
        StudyClass, on_delete=models.CASCADE, related_name="homeworks"
    )
    title = models.CharField(max_length=100)
    description = models.TextField(blank=True, max_length=5000)
    type = models.CharField(
        max_length=20, choices=HomeworkType.choices, default=HomeworkType.STANDARD
    )
    start_time = models.DateTimeField()
    deadline = models.DateTimeField()
    reminder_time = models.DateTimeField(null=True, blank=True)
    reminder_sent = models.BooleanField(default=False)
    max_score = models.PositiveIntegerField(default=100)
    allow_late = models.BooleanField(default=False)
    config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Type-specific configuration, stored as {type, options}.",
    )

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["study_class", "deadline"], name="homework_class_deadline_idx"),
            models.Index(
                fields=["reminder_sent", "reminder_time"], name="homework_reminder_due_idx"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(start_time__lt=models.F("deadline")),
                name="homework_start_before_deadline",
            ),
            models.CheckConstraint(
                condition=models.Q(max_score__gte=1), name="homework_max_score_positive"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return self.title

    @cached_property
    def type_config(self) -> AssignmentConfig:
        """The decoded configuration variant for this homework's type."""
        return load_stored_config(self.type, self.config)

    def set_type_config(self, config: AssignmentConfig) -> None:
        self.type = config.kind
        self.config = encode_config(config)
        self.__dict__["type_config"] = config

    def refresh_from_db(self, *args, **kwargs):
        self.__dict__.pop("type_config", None)
        return super().refresh_from_db(*args, **kwargs)

    @property
    def group_config(self) -> Optional[GroupProjectConfig]:
        return self.type_config if self.type_config.supports_groups else None

    def state_at(self, now: Optional[datetime] = None) -> str:
        now = now or timezone.now()
        if now < self.start_time:
            return HomeworkState.NOT_STARTED
        if now <= self.deadline:
            return HomeworkState.OPEN
        if self.allow_late:
            return HomeworkState.LATE_OPEN
        return HomeworkState.CLOSED

    def accepts_submissions(self, now: Optional[datetime] = None) -> bool:
        return self.state_at(now) != HomeworkState.CLOSED

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.state_at(now) == HomeworkState.CLOSED


class AssignmentGroup(models.Model):
    class Status(models.TextChoices):
        FORMING = "FORMING", "组队中"
        LOCKED = "LOCKED", "已锁定"
        SUBMITTED = "SUBMITTED", "已提交"

    homework = models.ForeignKey(
        Homework, on_delete=models.CASCADE, related_name="groups"
    )
    name = models.CharField(max_length=50)
    leader = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="led_homework_groups",
    )
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.FORMING
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [models.Index(fields=["homework", "created_at"], name="homework_group_created_idx")]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.name} ({self.homework})"

    @property
    def is_forming(self) -> bool:
        return self.status == self.Status.FORMING


class AssignmentGroupMember(models.Model):
    class Role(models.TextChoices):
        LEADER = "LEADER", "组长"
        MEMBER = "MEMBER", "组员"

    group = models.ForeignKey(
        AssignmentGroup, on_delete=models.CASCADE, related_name="members"
    )
    # Denormalised so the database can enforce one group per student per homework.
    homework = models.ForeignKey(
        Homework, on_delete=models.CASCADE, related_name="group_memberships"
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="homework_group_memberships",
    )
    role = models.CharField(max_length=8, choices=Role.choices, default=Role.MEMBER)
    joined_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["joined_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["homework", "student"], name="homework_one_group_per_student"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.student} @ {self.group} ({self.role})"


class Submission(models.Model):
    homework = models.ForeignKey(
        Homework, on_delete=models.CASCADE, related_name="submissions"
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="homework_submissions",
    )
    group = models.ForeignKey(
        AssignmentGroup,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="submissions",
    )
    files = models.JSONField(default=list, blank=True)
    labor_division = models.JSONField(default=list, blank=True)
    version = models.PositiveIntegerField(default=1)
    submitted_at = models.DateTimeField(default=timezone.now)
    score = models.IntegerField(null=True, blank=True)
    feedback = models.TextField(blank=True)
    graded_at = models.DateTimeField(null=True, blank=True)
    graded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="graded_homework_submissions",
    )

    class Meta:
        ordering = ["-submitted_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["homework", "student"], name="homework_one_submission_per_student"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.student} -> {self.homework} (v{self.version})"

    @property
    def is_graded(self) -> bool:
        return self.score is not None


class ScoreAuditLog(models.Model):
    """Immutable record of a single score change."""

    # The ledger outlives the submissions it describes.
    submission = models.ForeignKey(
        Submission,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        related_name="audit_logs",
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="score_audit_logs",
    )
    old_score = models.IntegerField(null=True, blank=True)
    new_score = models.IntegerField()
    reason = models.TextField()
    operator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="score_changes_made",
    )
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["submission", "created_at"], name="homework_audit_submission_idx"),
            models.Index(fields=["student", "created_at"], name="homework_audit_student_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.student}: {self.old_score} -> {self.new_score}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Score audit entries are append-only")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Score audit entries are append-only")


class ScoreAdjustment(TimeStampedModel):
    submission = models.ForeignKey(
        Submission, on_delete=models.CASCADE, related_name="adjustments"
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="score_adjustments",
    )
    base_score = models.IntegerField()
    adjust_score = models.IntegerField()
    final_score = models.IntegerField()
    reason = models.TextField(blank=True)

    class Meta:
        ordering = ["submission", "student"]
        constraints = [
            models.UniqueConstraint(
                fields=["submission", "student"], name="homework_one_adjustment_per_student"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.student}: {self.base_score}{self.adjust_score:+d} = {self.final_score}"
