from rest_framework import serializers

from accounts import roster

from ..configs import HomeworkType
from ..models import (
    AssignmentGroup,
    AssignmentGroupMember,
    Homework,
    ScoreAdjustment,
    ScoreAuditLog,
    Submission,
)
from ..storage import display_name


class HomeworkWriteSerializer(serializers.Serializer):
    """Shape check only; bounds and ownership are enforced by the services."""

    class_id = serializers.IntegerField(required=False)
    title = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    description = serializers.CharField(required=False, allow_blank=True)
    type = serializers.ChoiceField(choices=HomeworkType.choices, required=False)
    start_time = serializers.DateTimeField(required=False)
    deadline = serializers.DateTimeField(required=False)
    reminder_hours = serializers.IntegerField(required=False, allow_null=True)
    max_score = serializers.IntegerField(required=False)
    allow_late = serializers.BooleanField(required=False)
    group_config = serializers.JSONField(required=False, allow_null=True)
    self_practice_config = serializers.JSONField(required=False, allow_null=True)


class HomeworkSerializer(serializers.ModelSerializer):
    class_id = serializers.IntegerField(source="study_class_id", read_only=True)
    class_name = serializers.CharField(source="study_class.name", read_only=True)
    state = serializers.SerializerMethodField()
    config = serializers.SerializerMethodField()
    submission_count = serializers.IntegerField(read_only=True, required=False)

    class Meta:
        model = Homework
        fields = [
            "id",
            "class_id",
            "class_name",
            "title",
            "description",
            "type",
            "start_time",
            "deadline",
            "reminder_time",
            "reminder_sent",
            "max_score",
            "allow_late",
            "config",
            "state",
            "submission_count",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_state(self, obj):
        return obj.state_at()

    def get_config(self, obj):
        return obj.type_config.to_dict()


class SubmissionSerializer(serializers.ModelSerializer):
    student_name = serializers.SerializerMethodField()
    files = serializers.SerializerMethodField()

    class Meta:
        model = Submission
        fields = [
            "id",
            "homework",
            "student",
            "student_name",
            "group",
            "files",
            "labor_division",
            "version",
            "submitted_at",
            "score",
            "feedback",
            "graded_at",
        ]
        read_only_fields = fields

    def get_student_name(self, obj):
        return roster.display_name(obj.student)

    def get_files(self, obj):
        return [{"key": key, "name": display_name(key)} for key in obj.files or []]


class StudentHomeworkSerializer(serializers.Serializer):
    homework = HomeworkSerializer()
    submission = SubmissionSerializer(allow_null=True)
    state = serializers.CharField()
    is_submitted = serializers.BooleanField()
    is_overdue = serializers.BooleanField()


class GradeSerializer(serializers.Serializer):
    score = serializers.IntegerField()
    feedback = serializers.CharField(required=False, allow_blank=True)
    reason = serializers.CharField(required=False, allow_blank=True)


class GroupMemberSerializer(serializers.ModelSerializer):
    name = serializers.SerializerMethodField()

    class Meta:
        model = AssignmentGroupMember
        fields = ["student", "name", "role", "joined_at"]
        read_only_fields = fields

    def get_name(self, obj):
        return roster.display_name(obj.student)


class GroupSerializer(serializers.ModelSerializer):
    members = GroupMemberSerializer(many=True, read_only=True)

    class Meta:
        model = AssignmentGroup
        fields = ["id", "homework", "name", "leader", "status", "created_at", "members"]
        read_only_fields = fields


class StudentSummarySerializer(serializers.Serializer):
    id = serializers.IntegerField()
    name = serializers.SerializerMethodField()
    email = serializers.EmailField()

    def get_name(self, obj):
        return roster.display_name(obj)


class LaborDivisionEntrySerializer(serializers.Serializer):
    member = serializers.IntegerField()
    task = serializers.CharField()
    contribution_percent = serializers.FloatField(min_value=0, max_value=100)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class AdjustmentEntrySerializer(serializers.Serializer):
    student_id = serializers.IntegerField()
    base_score = serializers.IntegerField()
    adjust_score = serializers.IntegerField()
    final_score = serializers.IntegerField()
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class ScoreAdjustmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = ScoreAdjustment
        fields = [
            "id",
            "submission",
            "student",
            "base_score",
            "adjust_score",
            "final_score",
            "reason",
            "updated_at",
        ]
        read_only_fields = fields


class ScoreAuditLogSerializer(serializers.ModelSerializer):
    submission = serializers.IntegerField(source="submission_id", read_only=True)
    operator_name = serializers.SerializerMethodField()

    class Meta:
        model = ScoreAuditLog
        fields = [
            "id",
            "submission",
            "student",
            "old_score",
            "new_score",
            "reason",
            "operator",
            "operator_name",
            "created_at",
        ]
        read_only_fields = fields

    def get_operator_name(self, obj):
        return roster.display_name(obj.operator)
