import json
from urllib.parse import quote

from django.core import signing
from django.http import FileResponse, Http404, HttpResponse
from rest_framework import permissions, serializers, status
from rest_framework.response import Response
from rest_framework.views import APIView

from ..service_utils import groups as group_service
from ..service_utils import lifecycle
from ..service_utils import reports
from ..service_utils import scoring
from ..service_utils import submissions as submission_service
from ..storage import SubmissionStorage, display_name, resolve_token
from .serializers import (
    AdjustmentEntrySerializer,
    GradeSerializer,
    GroupSerializer,
    HomeworkSerializer,
    HomeworkWriteSerializer,
    LaborDivisionEntrySerializer,
    ScoreAdjustmentSerializer,
    ScoreAuditLogSerializer,
    StudentHomeworkSerializer,
    StudentSummarySerializer,
    SubmissionSerializer,
)


def _submit_response(result):
    return Response(
        {
            "submission": SubmissionSerializer(result.submission).data,
            "created": result.created,
            "released_files": len(result.cleanup.released),
            "unreleased_files": result.cleanup.failed,
        },
        status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
    )


class HomeworkListCreateView(APIView):
    """Homework of the classes the caller teaches, and publishing new ones."""

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, *args, **kwargs):
        homeworks = lifecycle.list_teacher_homeworks(request.user)
        return Response(HomeworkSerializer(homeworks, many=True).data)

    def post(self, request, *args, **kwargs):
        serializer = HomeworkWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        homework = lifecycle.create_homework(request.user, serializer.validated_data)
        return Response(HomeworkSerializer(homework).data, status=status.HTTP_201_CREATED)


class StudentHomeworkListView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, *args, **kwargs):
        items = lifecycle.list_student_homeworks(request.user)
        return Response(StudentHomeworkSerializer(items, many=True).data)


class HomeworkDetailView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, homework_id: int, *args, **kwargs):
        detail = lifecycle.get_homework_for_user(request.user, homework_id)
        data = HomeworkSerializer(detail.homework).data
        data["is_teacher"] = detail.is_teacher
        data["submissions"] = SubmissionSerializer(detail.submissions, many=True).data
        return Response(data)

    def patch(self, request, homework_id: int, *args, **kwargs):
        serializer = HomeworkWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        homework = lifecycle.update_homework(request.user, homework_id, serializer.validated_data)
        return Response(HomeworkSerializer(homework).data)

    def delete(self, request, homework_id: int, *args, **kwargs):
        deletion = lifecycle.delete_homework(request.user, homework_id)
        return Response(
            {
                "id": deletion.homework_id,
                "submissions": deletion.submissions,
                "released_files": len(deletion.cleanup.released),
                "unreleased_files": deletion.cleanup.failed,
            }
        )


class HomeworkSubmitView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, homework_id: int, *args, **kwargs):
        result = submission_service.submit_homework(
            request.user, homework_id, request.FILES.getlist("files")
        )
        return _submit_response(result)


class SubmissionGradeView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, homework_id: int, submission_id: int, *args, **kwargs):
        serializer = GradeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        submission = submission_service.grade_submission(
            request.user,
            homework_id,
            submission_id,
            data["score"],
            data.get("feedback"),
            reason=data.get("reason"),
        )
        return Response(SubmissionSerializer(submission).data)


class FileAccessView(APIView):
    """Signed link for downloading or previewing a submitted file."""

    permission_classes = [permissions.IsAuthenticated]

    class InputSerializer(serializers.Serializer):
        key = serializers.CharField()
        preview = serializers.BooleanField(required=False, default=False)
        ttl = serializers.IntegerField(required=False, min_value=1)

    def get(self, request, homework_id: int, *args, **kwargs):
        serializer = self.InputSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        access = submission_service.file_access_url(
            request.user,
            homework_id,
            data["key"],
            ttl=data.get("ttl"),
            preview=data["preview"],
        )
        url = access.url
        if url.startswith("/"):
            url = request.build_absolute_uri(url)
        return Response(
            {
                "url": url,
                "name": access.name,
                "expires_in": access.expires_in,
                "preview": access.preview,
            }
        )


class SignedFileView(APIView):
    """Serves a file from non-S3 storage in exchange for a signed token."""

    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def get(self, request, token: str, *args, **kwargs):
        try:
            payload = resolve_token(token)
        except signing.SignatureExpired:
            return Response({"detail": "链接已过期，请重新获取"}, status=status.HTTP_410_GONE)
        except signing.BadSignature:
            raise Http404("无效的文件链接")
        key = payload["key"]
        try:
            handle = SubmissionStorage().open(key)
        except FileNotFoundError:
            raise Http404("文件不存在")
        return FileResponse(
            handle, as_attachment=not payload.get("inline"), filename=display_name(key)
        )


class GradeExportView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, homework_id: int, *args, **kwargs):
        # ``format`` is reserved by DRF for renderer selection.
        file_format = request.query_params.get("file_format", "csv")
        if file_format == "json":
            return Response(reports.export_grades_json(request.user, homework_id))
        if file_format != "csv":
            raise serializers.ValidationError({"file_format": ["仅支持 csv 或 json"]})
        filename, content = reports.export_grades_csv(request.user, homework_id)
        response = HttpResponse(content, content_type="text/csv; charset=utf-8")
        response["Content-Disposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
        return response


class HomeworkStatisticsView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, homework_id: int, *args, **kwargs):
        return Response(reports.homework_statistics(request.user, homework_id))


class ClassOverviewView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, class_id: int, *args, **kwargs):
        return Response(reports.class_overview(request.user, class_id))


class SubmissionAuditView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, submission_id: int, *args, **kwargs):
        entries = scoring.audit_log_for_submission(request.user, submission_id)
        return Response(ScoreAuditLogSerializer(entries, many=True).data)


class StudentAuditView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, student_id: int, *args, **kwargs):
        entries = scoring.audit_log_for_student(request.user, student_id)
        return Response(ScoreAuditLogSerializer(entries, many=True).data)


class ScoreAdjustmentView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    class InputSerializer(serializers.Serializer):
        adjustments = AdjustmentEntrySerializer(many=True, allow_empty=False)

    def post(self, request, submission_id: int, *args, **kwargs):
        serializer = self.InputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = scoring.adjust_scores(
            request.user, submission_id, serializer.validated_data["adjustments"]
        )
        return Response(
            {
                "attempted": result.attempted,
                "succeeded": result.succeeded_count,
                "adjustments": ScoreAdjustmentSerializer(result.succeeded, many=True).data,
                "errors": [
                    {"student_id": error.student_id, "detail": error.detail}
                    for error in result.errors
                ],
            },
            status=status.HTTP_200_OK if not result.errors else status.HTTP_207_MULTI_STATUS,
        )


class GroupListCreateView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    class InputSerializer(serializers.Serializer):
        name = serializers.CharField(allow_blank=True)

    def get(self, request, homework_id: int, *args, **kwargs):
        listing = group_service.list_groups(request.user, homework_id)
        return Response(
            {
                "config": listing.config.to_dict(),
                "groups": GroupSerializer(listing.groups, many=True).data,
                "unassigned": StudentSummarySerializer(listing.unassigned, many=True).data,
            }
        )

    def post(self, request, homework_id: int, *args, **kwargs):
        serializer = self.InputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        group = group_service.create_group(
            request.user, homework_id, serializer.validated_data["name"]
        )
        return Response(GroupSerializer(group).data, status=status.HTTP_201_CREATED)


class GroupJoinView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, group_id: int, *args, **kwargs):
        group = group_service.join_group(request.user, group_id)
        return Response(GroupSerializer(group).data)


class GroupLeaveView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, group_id: int, *args, **kwargs):
        result = group_service.leave_group(request.user, group_id)
        if result.dissolved:
            return Response({"id": group_id, "dissolved": True})
        data = GroupSerializer(result.group).data
        data["dissolved"] = False
        data["new_leader"] = result.new_leader_id
        return Response(data)


class GroupLockView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, group_id: int, *args, **kwargs):
        group = group_service.lock_group(request.user, group_id)
        return Response(GroupSerializer(group).data)


class GroupAssignView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    class InputSerializer(serializers.Serializer):
        student_id = serializers.IntegerField()

    def post(self, request, group_id: int, *args, **kwargs):
        serializer = self.InputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        group = group_service.teacher_assign(
            request.user, group_id, serializer.validated_data["student_id"]
        )
        return Response(GroupSerializer(group).data)


class GroupAutoAssignView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    class InputSerializer(serializers.Serializer):
        preferred_size = serializers.IntegerField(required=False, allow_null=True)

    def post(self, request, homework_id: int, *args, **kwargs):
        serializer = self.InputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = group_service.auto_assign(
            request.user, homework_id, serializer.validated_data.get("preferred_size")
        )
        return Response(
            {
                "assigned": result.assigned,
                "attempted": result.attempted,
                "groups_created": result.groups_created,
                "cancelled": result.cancelled,
            }
        )


class GroupSubmitView(APIView):
    """Leader submits files and the labor division for the whole group."""

    permission_classes = [permissions.IsAuthenticated]

    def _labor_division(self, request):
        raw = request.data.get("labor_division")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raise serializers.ValidationError({"labor_division": ["不是有效的 JSON"]})
        serializer = LaborDivisionEntrySerializer(data=raw or [], many=True)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    def post(self, request, homework_id: int, group_id: int, *args, **kwargs):
        result = group_service.submit_group_project(
            request.user,
            group_id,
            homework_id,
            request.FILES.getlist("files"),
            self._labor_division(request),
        )
        return _submit_response(result)
