"""Group formation for project homework.

Membership mutations run in a transaction with the group row locked.  The
``homework_one_group_per_student`` unique constraint is the final word on
"one group per student per homework": an ``IntegrityError`` from it surfaces
as :class:`~homework.exceptions.Conflict`.

Group status only moves forward::

    FORMING -> LOCKED -> SUBMITTED
    FORMING ----------> SUBMITTED
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Count, Prefetch
from django.utils import timezone
from rest_framework import exceptions

from accounts import roster
from homework.configs import GroupProjectConfig
from homework.exceptions import Conflict
from homework.models import AssignmentGroup, AssignmentGroupMember, Homework
from homework.storage import FileCleanup, SubmissionStorage

from .lifecycle import ensure_class_teacher, get_homework_or_404
from .submissions import (
    SubmitResult,
    clean_files,
    ensure_accepts_submissions,
    storage_prefix,
    store_files,
    upsert_submission,
)

logger = logging.getLogger(__name__)

GROUP_NAME_MAX_LENGTH = 50
AUTO_ASSIGN_MIN_SIZE = 2
AUTO_ASSIGN_MAX_SIZE = 10

STATUS_CONFLICTS = {
    AssignmentGroup.Status.LOCKED: "小组已锁定，成员不可变更",
    AssignmentGroup.Status.SUBMITTED: "小组已提交作业，成员不可变更",
}


@dataclass(frozen=True)
class LeaveResult:
    group: AssignmentGroup
    dissolved: bool
    new_leader_id: Optional[int] = None


@dataclass(frozen=True)
class AutoAssignResult:
    assigned: int
    attempted: int
    groups_created: int
    cancelled: bool = False


@dataclass(frozen=True)
class GroupListing:
    homework: Homework
    config: GroupProjectConfig
    groups: List[AssignmentGroup]
    unassigned: List[Any]


def _group_homework(homework: Homework) -> GroupProjectConfig:
    config = homework.group_config
    if config is None:
        raise exceptions.ValidationError({"homework_id": ["只有项目小组作业支持分组"]})
    return config


def _get_group(group_id: int, *, for_update: bool = False) -> AssignmentGroup:
    queryset = AssignmentGroup.objects.select_related("homework", "homework__study_class")
    if for_update:
        queryset = queryset.select_for_update(of=("self",))
    try:
        return queryset.get(pk=group_id)
    except AssignmentGroup.DoesNotExist as exc:
        raise exceptions.NotFound("小组不存在") from exc


def _ensure_forming(group: AssignmentGroup) -> None:
    if not group.is_forming:
        raise Conflict(STATUS_CONFLICTS[group.status])


def _ensure_not_grouped(homework: Homework, student, message: str = "你已加入本作业的其他小组") -> None:
    if AssignmentGroupMember.objects.filter(homework=homework, student=student).exists():
        raise Conflict(message)


def _add_member(group: AssignmentGroup, student, role: str) -> AssignmentGroupMember:
    try:
        with transaction.atomic():
            return AssignmentGroupMember.objects.create(
                group=group, homework_id=group.homework_id, student=student, role=role
            )
    except IntegrityError as exc:
        raise Conflict("该学生已加入本作业的其他小组") from exc


def _clean_name(name) -> str:
    name = name.strip() if isinstance(name, str) else ""
    if not 1 <= len(name) <= GROUP_NAME_MAX_LENGTH:
        raise exceptions.ValidationError(
            {"name": [f"小组名称长度必须在 1 到 {GROUP_NAME_MAX_LENGTH} 个字符之间"]}
        )
    return name


def create_group(student, homework_id: int, name: str, *, now: Optional[datetime] = None) -> AssignmentGroup:
    """Start a group with ``student`` as its leader and only member."""

    name = _clean_name(name)
    with transaction.atomic():
        homework = get_homework_or_404(homework_id)
        config = _group_homework(homework)
        if not roster.is_enrolled(student, homework.study_class):
            raise exceptions.PermissionDenied("你不是该班级的学生")
        if config.group_formation_closed(now):
            raise Conflict("组队截止时间已过")
        _ensure_not_grouped(homework, student)
        if homework.groups.filter(name=name).exists():
            raise exceptions.ValidationError({"name": ["小组名称已存在"]})
        group = AssignmentGroup.objects.create(homework=homework, name=name, leader=student)
        _add_member(group, student, AssignmentGroupMember.Role.LEADER)
    logger.info("Group %s created for homework %s by %s", group.pk, homework.pk, student.pk)
    return group


def join_group(student, group_id: int, *, now: Optional[datetime] = None) -> AssignmentGroup:
    with transaction.atomic():
        group = _get_group(group_id, for_update=True)
        homework = group.homework
        config = _group_homework(homework)
        _ensure_forming(group)
        if config.group_formation_closed(now):
            raise Conflict("组队截止时间已过")
        if group.members.count() >= config.max_size:
            raise Conflict(f"小组人数已满（最多 {config.max_size} 人）")
        _ensure_not_grouped(homework, student)
        if not roster.is_enrolled(student, homework.study_class):
            raise exceptions.PermissionDenied("你不是该班级的学生")
        _add_member(group, student, AssignmentGroupMember.Role.MEMBER)
    logger.info("Student %s joined group %s", student.pk, group.pk)
    return group


def leave_group(student, group_id: int) -> LeaveResult:
    """Remove ``student`` from the group.

    A departing leader hands over to the earliest-joined remaining member; a
    leader leaving alone dissolves the group.
    """

    with transaction.atomic():
        group = _get_group(group_id, for_update=True)
        config = _group_homework(group.homework)
        _ensure_forming(group)
        if not config.allow_switch:
            raise Conflict("本作业不允许退出或更换小组")
        try:
            membership = group.members.get(student=student)
        except AssignmentGroupMember.DoesNotExist as exc:
            raise exceptions.NotFound("你不是该小组成员") from exc

        remaining = list(group.members.exclude(pk=membership.pk).order_by("joined_at", "id"))
        if membership.role == AssignmentGroupMember.Role.LEADER:
            if not remaining:
                membership.delete()
                group.delete()
                logger.info("Group %s dissolved after its last member left", group_id)
                return LeaveResult(group=group, dissolved=True)
            successor = remaining[0]
            successor.role = AssignmentGroupMember.Role.LEADER
            successor.save(update_fields=["role"])
            group.leader_id = successor.student_id
            group.save(update_fields=["leader"])
            membership.delete()
            logger.info(
                "Group %s leadership moved from %s to %s",
                group.pk,
                student.pk,
                successor.student_id,
            )
            return LeaveResult(group=group, dissolved=False, new_leader_id=successor.student_id)

        membership.delete()
    logger.info("Student %s left group %s", student.pk, group.pk)
    return LeaveResult(group=group, dissolved=False)


def lock_group(teacher, group_id: int) -> AssignmentGroup:
    with transaction.atomic():
        group = _get_group(group_id, for_update=True)
        ensure_class_teacher(teacher, group.homework, "无权锁定此小组")
        if group.status == AssignmentGroup.Status.SUBMITTED:
            raise Conflict("小组已提交作业，无法锁定")
        if group.status == AssignmentGroup.Status.LOCKED:
            return group
        group.status = AssignmentGroup.Status.LOCKED
        group.save(update_fields=["status"])
    logger.info("Group %s locked by %s", group.pk, teacher.pk)
    return group


def teacher_assign(teacher, group_id: int, student_id: int) -> AssignmentGroup:
    """Place an ungrouped student into a group, ignoring the size cap."""

    with transaction.atomic():
        group = _get_group(group_id, for_update=True)
        homework = group.homework
        ensure_class_teacher(teacher, homework, "无权分配此小组成员")
        config = _group_homework(homework)
        if not config.allow_teacher_assign:
            raise Conflict("本作业不允许教师分配小组")
        _ensure_forming(group)
        try:
            student = get_user_model().objects.get(pk=student_id)
        except (get_user_model().DoesNotExist, ValueError, TypeError) as exc:
            raise exceptions.NotFound("学生不存在") from exc
        if not roster.is_enrolled(student, homework.study_class):
            raise exceptions.ValidationError({"student_id": ["该学生不在本班级"]})
        _ensure_not_grouped(homework, student, "该学生已加入本作业的其他小组")
        _add_member(group, student, AssignmentGroupMember.Role.MEMBER)
    logger.info("Student %s assigned to group %s by %s", student.pk, group.pk, teacher.pk)
    return group


def _unassigned_students(homework: Homework) -> List[Any]:
    grouped = set(
        AssignmentGroupMember.objects.filter(homework=homework).values_list("student_id", flat=True)
    )
    return [
        student
        for student in roster.enrolled_students(homework.study_class)
        if student.pk not in grouped
    ]


def _next_group_name(homework: Homework) -> str:
    taken = set(homework.groups.values_list("name", flat=True))
    number = len(taken) + 1
    while f"第{number}组" in taken:
        number += 1
    return f"第{number}组"


def _place_student(homework: Homework, student, target_size: int) -> Optional[bool]:
    """Put one student into the first FORMING group with room.

    Returns ``None`` when the student was grouped meanwhile, otherwise whether
    a new group had to be created.
    """

    with transaction.atomic():
        if AssignmentGroupMember.objects.filter(homework=homework, student=student).exists():
            return None
        sizes: Dict[int, int] = dict(
            AssignmentGroupMember.objects.filter(
                homework=homework, group__status=AssignmentGroup.Status.FORMING
            )
            .values("group_id")
            .annotate(size=Count("id"))
            .values_list("group_id", "size")
        )
        candidates = (
            AssignmentGroup.objects.filter(
                homework=homework, status=AssignmentGroup.Status.FORMING
            )
            .order_by("created_at", "id")
            .values_list("pk", flat=True)
        )
        for group_id in candidates:
            if sizes.get(group_id, 0) >= target_size:
                continue
            group = AssignmentGroup.objects.select_for_update().get(pk=group_id)
            if not group.is_forming or group.members.count() >= target_size:
                continue
            _add_member(group, student, AssignmentGroupMember.Role.MEMBER)
            return False

        group = AssignmentGroup.objects.create(
            homework=homework, name=_next_group_name(homework), leader=student
        )
        _add_member(group, student, AssignmentGroupMember.Role.LEADER)
        return True


def auto_assign(
    teacher,
    homework_id: int,
    preferred_size: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> AutoAssignResult:
    """Distribute ungrouped students over groups of the target size.

    Existing FORMING groups are topped up in creation order before new groups
    named "第N组" are created.  Each placement commits on its own, so a run
    stopped through ``cancel`` keeps what it already did and a rerun only
    touches students that are still ungrouped.
    """

    homework = get_homework_or_404(homework_id)
    ensure_class_teacher(teacher, homework, "无权为此作业自动分组")
    config = _group_homework(homework)
    if preferred_size is not None:
        if (
            isinstance(preferred_size, bool)
            or not isinstance(preferred_size, int)
            or not AUTO_ASSIGN_MIN_SIZE <= preferred_size <= AUTO_ASSIGN_MAX_SIZE
        ):
            raise exceptions.ValidationError(
                {
                    "preferred_size": [
                        f"每组人数必须在 {AUTO_ASSIGN_MIN_SIZE} 到 {AUTO_ASSIGN_MAX_SIZE} 之间"
                    ]
                }
            )
    target_size = config.target_group_size(preferred_size)

    assigned = attempted = created = 0
    cancelled = False
    for student in _unassigned_students(homework):
        if cancel is not None and cancel.is_set():
            cancelled = True
            break
        attempted += 1
        try:
            outcome = _place_student(homework, student, target_size)
        except Conflict:
            logger.info("Student %s was grouped concurrently, skipping", student.pk)
            continue
        if outcome is None:
            continue
        assigned += 1
        created += int(outcome)

    logger.info(
        "Auto-assign for homework %s (target %d): %d/%d placed, %d new group(s)%s",
        homework.pk,
        target_size,
        assigned,
        attempted,
        created,
        ", cancelled" if cancelled else "",
    )
    return AutoAssignResult(
        assigned=assigned, attempted=attempted, groups_created=created, cancelled=cancelled
    )


def _clean_labor_division(labor_division, member_ids) -> List[Dict[str, Any]]:
    if not isinstance(labor_division, (list, tuple)) or not labor_division:
        raise exceptions.ValidationError({"labor_division": ["请填写小组分工"]})
    cleaned = []
    for index, entry in enumerate(labor_division):
        field = f"labor_division[{index}]"
        if not isinstance(entry, Mapping):
            raise exceptions.ValidationError({field: ["格式不正确"]})
        member = entry.get("member")
        if member not in member_ids:
            raise exceptions.ValidationError({field: ["分工成员必须是本小组成员"]})
        task = entry.get("task")
        if not isinstance(task, str) or not task.strip():
            raise exceptions.ValidationError({field: ["请填写任务内容"]})
        percent = entry.get("contribution_percent")
        if isinstance(percent, bool) or not isinstance(percent, (int, float)) or not 0 <= percent <= 100:
            raise exceptions.ValidationError({field: ["贡献百分比必须在 0 到 100 之间"]})
        description = entry.get("description") or ""
        if not isinstance(description, str):
            raise exceptions.ValidationError({field: ["描述必须是字符串"]})
        cleaned.append(
            {
                "member": member,
                "task": task.strip(),
                "contribution_percent": percent,
                "description": description,
            }
        )
    return cleaned


def _ensure_group_submitter(student, group: AssignmentGroup, homework_id: int) -> None:
    if group.homework_id != homework_id:
        raise exceptions.ValidationError({"group_id": ["小组不属于该作业"]})
    if group.leader_id != student.pk:
        raise exceptions.PermissionDenied("只有组长可以提交小组作业")


def submit_group_project(
    student,
    group_id: int,
    homework_id: int,
    files: Sequence,
    labor_division,
    *,
    storage: Optional[SubmissionStorage] = None,
    now: Optional[datetime] = None,
) -> SubmitResult:
    """Leader-only submission on behalf of the whole group."""

    storage = storage or SubmissionStorage()
    files = clean_files(files)
    group = _get_group(group_id)
    _ensure_group_submitter(student, group, homework_id)
    homework = group.homework
    _group_homework(homework)
    ensure_accepts_submissions(homework, now)
    member_ids = set(group.members.values_list("student_id", flat=True))
    division = _clean_labor_division(labor_division, member_ids)

    keys = store_files(files, storage_prefix(homework, student), storage)
    cleanup = FileCleanup(storage)
    try:
        with transaction.atomic():
            group = _get_group(group_id, for_update=True)
            _ensure_group_submitter(student, group, homework_id)
            if set(group.members.values_list("student_id", flat=True)) != member_ids:
                raise Conflict("小组成员已变更，请刷新后重新提交")
            submission, created, previous = upsert_submission(
                homework,
                student,
                keys,
                now=now or timezone.now(),
                group=group,
                labor_division=division,
            )
            cleanup.extend(previous)
            if group.status != AssignmentGroup.Status.SUBMITTED:
                group.status = AssignmentGroup.Status.SUBMITTED
                group.save(update_fields=["status"])
            report = cleanup.schedule()
    except Exception:
        storage.release(keys)
        raise

    logger.info(
        "Group %s submitted homework %s (version %d)", group.pk, homework.pk, submission.version
    )
    return SubmitResult(submission=submission, created=created, cleanup=report)


def list_groups(user, homework_id: int) -> GroupListing:
    homework = get_homework_or_404(homework_id)
    config = _group_homework(homework)
    if not (
        roster.is_class_teacher(user, homework.study_class)
        or roster.is_enrolled(user, homework.study_class)
    ):
        raise exceptions.PermissionDenied("无权查看此作业的小组")
    groups = list(
        homework.groups.select_related("leader")
        .prefetch_related(
            Prefetch(
                "members",
                queryset=AssignmentGroupMember.objects.select_related("student").order_by(
                    "joined_at", "id"
                ),
            )
        )
        .order_by("created_at", "id")
    )
    return GroupListing(
        homework=homework,
        config=config,
        groups=groups,
        unassigned=_unassigned_students(homework),
    )
