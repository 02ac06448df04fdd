from django.conf import settings
from django.db import models
from django.utils.crypto import get_random_string


class StudyClass(models.Model):
    """A class owned by one instructor; students enrol via a join code.

    Homework is always published to a class, and ownership of the class is
    what authorises an instructor to manage that homework.
    """

    name = models.CharField(max_length=120)
    description = models.TextField(blank=True)
    join_code = models.CharField(max_length=16, unique=True, db_index=True, blank=True)
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="classes_taught",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "name"]
        indexes = [models.Index(fields=["teacher"], name="accounts_class_teacher_idx")]

    def __str__(self) -> str:  # pragma: no cover - representation only
        return self.name

    def save(self, *args, **kwargs):
        if not self.join_code:
            # Human-friendly short code, collision-resistant with uniqueness check
            self.join_code = get_random_string(10).lower()
        return super().save(*args, **kwargs)


class ClassStudentMembership(models.Model):
    class Meta:
        ordering = ["joined_at", "id"]
        unique_together = ("study_class", "student")
        indexes = [
            models.Index(fields=["study_class", "student"], name="accounts_class_student_idx"),
            models.Index(fields=["student"], name="accounts_student_only_idx"),
        ]

    study_class = models.ForeignKey(
        StudyClass, on_delete=models.CASCADE, related_name="student_memberships"
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="class_memberships"
    )
    joined_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:  # pragma: no cover - representation only
        return f"{self.student} -> {self.study_class}"
