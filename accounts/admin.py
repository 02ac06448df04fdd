from django.contrib import admin

from .models import ClassStudentMembership, StudyClass


class ClassStudentMembershipInline(admin.TabularInline):
    model = ClassStudentMembership
    extra = 0
    raw_id_fields = ("student",)


@admin.register(StudyClass)
class StudyClassAdmin(admin.ModelAdmin):
    list_display = ("name", "teacher", "join_code", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("name", "join_code", "teacher__username")
    inlines = [ClassStudentMembershipInline]


admin.site.register(ClassStudentMembership)
