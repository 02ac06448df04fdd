from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Homework",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("title", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True, max_length=5000)),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("STANDARD", "标准作业"),
                            ("GROUP_PROJECT", "项目小组作业"),
                            ("SELF_PRACTICE", "自主实践作业"),
                        ],
                        default="STANDARD",
                        max_length=20,
                    ),
                ),
                ("start_time", models.DateTimeField()),
                ("deadline", models.DateTimeField()),
                ("reminder_time", models.DateTimeField(blank=True, null=True)),
                ("reminder_sent", models.BooleanField(default=False)),
                ("max_score", models.PositiveIntegerField(default=100)),
                ("allow_late", models.BooleanField(default=False)),
                (
                    "config",
                    models.JSONField(blank=True, default=dict, help_text="Type-specific configuration, stored as {type, options}."),
                ),
                (
                    "study_class",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="homeworks", to="accounts.studyclass"),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["study_class", "deadline"], name="homework_class_deadline_idx"),
                    models.Index(fields=["reminder_sent", "reminder_time"], name="homework_reminder_due_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("start_time__lt", models.F("deadline"))),
                        name="homework_start_before_deadline",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("max_score__gte", 1)),
                        name="homework_max_score_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AssignmentGroup",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=50)),
                (
                    "status",
                    models.CharField(
                        choices=[("FORMING", "组队中"), ("LOCKED", "已锁定"), ("SUBMITTED", "已提交")],
                        default="FORMING",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "homework",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="groups", to="homework.homework"),
                ),
                (
                    "leader",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="led_homework_groups", to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [models.Index(fields=["homework", "created_at"], name="homework_group_created_idx")],
            },
        ),
        migrations.CreateModel(
            name="AssignmentGroupMember",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "role",
                    models.CharField(choices=[("LEADER", "组长"), ("MEMBER", "组员")], default="MEMBER", max_length=8),
                ),
                ("joined_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "group",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="members", to="homework.assignmentgroup"),
                ),
                (
                    "homework",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="group_memberships", to="homework.homework"),
                ),
                (
                    "student",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="homework_group_memberships", to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["joined_at", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("homework", "student"), name="homework_one_group_per_student"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Submission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("files", models.JSONField(blank=True, default=list)),
                ("labor_division", models.JSONField(blank=True, default=list)),
                ("version", models.PositiveIntegerField(default=1)),
                ("submitted_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("score", models.IntegerField(blank=True, null=True)),
                ("feedback", models.TextField(blank=True)),
                ("graded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "graded_by",
                    models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="graded_homework_submissions", to=settings.AUTH_USER_MODEL),
                ),
                (
                    "group",
                    models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="submissions", to="homework.assignmentgroup"),
                ),
                (
                    "homework",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="submissions", to="homework.homework"),
                ),
                (
                    "student",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="homework_submissions", to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["-submitted_at", "-id"],
                "constraints": [
                    models.UniqueConstraint(fields=("homework", "student"), name="homework_one_submission_per_student"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScoreAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("old_score", models.IntegerField(blank=True, null=True)),
                ("new_score", models.IntegerField()),
                ("reason", models.TextField()),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "operator",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="score_changes_made", to=settings.AUTH_USER_MODEL),
                ),
                (
                    "student",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="score_audit_logs", to=settings.AUTH_USER_MODEL),
                ),
                (
                    "submission",
                    models.ForeignKey(db_constraint=False, on_delete=django.db.models.deletion.DO_NOTHING, related_name="audit_logs", to="homework.submission"),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["submission", "created_at"], name="homework_audit_submission_idx"),
                    models.Index(fields=["student", "created_at"], name="homework_audit_student_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScoreAdjustment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("base_score", models.IntegerField()),
                ("adjust_score", models.IntegerField()),
                ("final_score", models.IntegerField()),
                ("reason", models.TextField(blank=True)),
                (
                    "student",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="score_adjustments", to=settings.AUTH_USER_MODEL),
                ),
                (
                    "submission",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="adjustments", to="homework.submission"),
                ),
            ],
            options={
                "ordering": ["submission", "student"],
                "constraints": [
                    models.UniqueConstraint(fields=("submission", "student"), name="homework_one_adjustment_per_student"),
                ],
            },
        ),
    ]
