from django.urls import path

from .views import (
    ClassOverviewView,
    FileAccessView,
    GradeExportView,
    GroupAssignView,
    GroupAutoAssignView,
    GroupJoinView,
    GroupLeaveView,
    GroupListCreateView,
    GroupLockView,
    GroupSubmitView,
    HomeworkDetailView,
    HomeworkListCreateView,
    HomeworkStatisticsView,
    HomeworkSubmitView,
    ScoreAdjustmentView,
    SignedFileView,
    StudentAuditView,
    StudentHomeworkListView,
    SubmissionAuditView,
    SubmissionGradeView,
)


urlpatterns = [
    path("api/homeworks/", HomeworkListCreateView.as_view(), name="homework-list"),
    path("api/homeworks/student/", StudentHomeworkListView.as_view(), name="student-homework-list"),
    path("api/homeworks/<int:homework_id>/", HomeworkDetailView.as_view(), name="homework-detail"),
    path(
        "api/homeworks/<int:homework_id>/submit/",
        HomeworkSubmitView.as_view(),
        name="homework-submit",
    ),
    path(
        "api/homeworks/<int:homework_id>/submissions/<int:submission_id>/grade/",
        SubmissionGradeView.as_view(),
        name="submission-grade",
    ),
    path("api/homeworks/<int:homework_id>/files/", FileAccessView.as_view(), name="homework-file"),
    path("api/homeworks/<int:homework_id>/export/", GradeExportView.as_view(), name="homework-export"),
    path(
        "api/homeworks/<int:homework_id>/statistics/",
        HomeworkStatisticsView.as_view(),
        name="homework-statistics",
    ),
    path("api/homeworks/<int:homework_id>/groups/", GroupListCreateView.as_view(), name="group-list"),
    path(
        "api/homeworks/<int:homework_id>/groups/auto-assign/",
        GroupAutoAssignView.as_view(),
        name="group-auto-assign",
    ),
    path(
        "api/homeworks/<int:homework_id>/groups/<int:group_id>/submit/",
        GroupSubmitView.as_view(),
        name="group-submit",
    ),
    path("api/groups/<int:group_id>/join/", GroupJoinView.as_view(), name="group-join"),
    path("api/groups/<int:group_id>/leave/", GroupLeaveView.as_view(), name="group-leave"),
    path("api/groups/<int:group_id>/lock/", GroupLockView.as_view(), name="group-lock"),
    path("api/groups/<int:group_id>/assign/", GroupAssignView.as_view(), name="group-assign"),
    path(
        "api/submissions/<int:submission_id>/adjustments/",
        ScoreAdjustmentView.as_view(),
        name="submission-adjustments",
    ),
    path(
        "api/submissions/<int:submission_id>/audit/",
        SubmissionAuditView.as_view(),
        name="submission-audit",
    ),
    path("api/students/<int:student_id>/audit/", StudentAuditView.as_view(), name="student-audit"),
    path("api/classes/<int:class_id>/overview/", ClassOverviewView.as_view(), name="class-overview"),
    path("api/homework-files/<str:token>/", SignedFileView.as_view(), name="signed-file"),
]
