from django.contrib import admin

from .models import (
    AssignmentGroup,
    AssignmentGroupMember,
    Homework,
    ScoreAdjustment,
    ScoreAuditLog,
    Submission,
)


@admin.register(Homework)
class HomeworkAdmin(admin.ModelAdmin):
    list_display = (
        "title",
        "study_class",
        "type",
        "start_time",
        "deadline",
        "reminder_time",
        "reminder_sent",
        "max_score",
    )
    list_filter = ("type", "allow_late", "reminder_sent")
    search_fields = ("title", "study_class__name")
    readonly_fields = ("reminder_sent", "created_at", "updated_at")


class AssignmentGroupMemberInline(admin.TabularInline):
    model = AssignmentGroupMember
    extra = 0
    raw_id_fields = ("student",)
    readonly_fields = ("joined_at",)


@admin.register(AssignmentGroup)
class AssignmentGroupAdmin(admin.ModelAdmin):
    list_display = ("name", "homework", "leader", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("name", "homework__title")
    inlines = [AssignmentGroupMemberInline]


@admin.register(Submission)
class SubmissionAdmin(admin.ModelAdmin):
    list_display = ("homework", "student", "group", "version", "submitted_at", "score", "graded_at")
    list_filter = ("homework__type",)
    search_fields = ("homework__title", "student__username")
    raw_id_fields = ("student", "group", "graded_by")
    # Scores change through the grading service so every change is audited.
    readonly_fields = ("score", "graded_at", "graded_by", "version", "submitted_at")


@admin.register(ScoreAuditLog)
class ScoreAuditLogAdmin(admin.ModelAdmin):
    list_display = ("submission_id", "student", "old_score", "new_score", "operator", "created_at")
    search_fields = ("student__username", "reason")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ScoreAdjustment)
class ScoreAdjustmentAdmin(admin.ModelAdmin):
    list_display = ("submission", "student", "base_score", "adjust_score", "final_score", "updated_at")
    readonly_fields = ("base_score", "adjust_score", "final_score")
