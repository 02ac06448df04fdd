from django.db import migrations, models
import django.db.models.deletion
from django.conf import settings


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="StudyClass",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120)),
                ("description", models.TextField(blank=True)),
                ("join_code", models.CharField(blank=True, db_index=True, max_length=16, unique=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "teacher",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="classes_taught", to=settings.AUTH_USER_MODEL),
                ),
            ],
            options={
                "ordering": ["-created_at", "name"],
                "indexes": [models.Index(fields=["teacher"], name="accounts_class_teacher_idx")],
            },
        ),
        migrations.CreateModel(
            name="ClassStudentMembership",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("joined_at", models.DateTimeField(auto_now_add=True)),
                (
                    "student",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="class_memberships", to=settings.AUTH_USER_MODEL),
                ),
                (
                    "study_class",
                    models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="student_memberships", to="accounts.studyclass"),
                ),
            ],
            options={
                "ordering": ["joined_at", "id"],
                "unique_together": {("study_class", "student")},
                "indexes": [
                    models.Index(fields=["study_class", "student"], name="accounts_class_student_idx"),
                    models.Index(fields=["student"], name="accounts_student_only_idx"),
                ],
            },
        ),
    ]
