"""Type-specific homework configuration.

Every homework carries exactly one configuration variant matching its type::

    AssignmentConfig = StandardConfig | GroupProjectConfig | SelfPracticeConfig

The variant is decoded once from the JSON column when a ``Homework`` is
loaded (see ``Homework.type_config``) and encoded back on save.  Behaviour that
differs between homework types is expressed as methods/properties on the
variants so consumers never branch on the raw type string.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Mapping, Optional, Set, Tuple, Union

from django.db import models
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import exceptions


class HomeworkType(models.TextChoices):
    STANDARD = "STANDARD", "标准作业"
    GROUP_PROJECT = "GROUP_PROJECT", "项目小组作业"
    SELF_PRACTICE = "SELF_PRACTICE", "自主实践作业"


UNGROUPED_POLICIES = ("AUTO_ASSIGN", "TEACHER_ASSIGN", "ALLOW_SOLO")
SCORING_MODELS = ("BASE_PLUS_ADJUST", "INDIVIDUAL", "UNIFORM")
PENALTY_LEVELS = ("LIGHT", "MEDIUM", "HEAVY")
ANONYMOUS_MODES = ("DOUBLE_BLIND", "SINGLE_BLIND", "OPEN")
COVERAGE_STRATEGIES = ("AUTO_SUPPLEMENT", "TEACHER_ASSIGN", "FORCE_TODO")
SELF_PRACTICE_STRATEGIES = ("BONUS", "POINTS_ONLY", "REPLACE_LOWEST")

DEFAULT_MIN_GROUP_SIZE = 2
DEFAULT_MAX_GROUP_SIZE = 6


def _invalid(field_name: str, message: str) -> exceptions.ValidationError:
    return exceptions.ValidationError({field_name: [message]})


def _reject_unknown(field_name: str, raw: Mapping[str, Any], allowed: Set[str]) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise _invalid(field_name, f"未知的配置项: {', '.join(unknown)}")


def _as_int(field_name, value, *, minimum=None, maximum=None, optional=True):
    if value is None:
        if optional:
            return None
        raise _invalid(field_name, "该字段为必填项")
    if isinstance(value, bool):
        raise _invalid(field_name, "必须是整数")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise _invalid(field_name, "必须是整数") from None
    if number != value and not isinstance(value, str):
        raise _invalid(field_name, "必须是整数")
    if minimum is not None and number < minimum:
        raise _invalid(field_name, f"不能小于 {minimum}")
    if maximum is not None and number > maximum:
        raise _invalid(field_name, f"不能大于 {maximum}")
    return number


def _as_bool(field_name, value, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise _invalid(field_name, "必须是布尔值")
    return value


def _as_choice(field_name, value, choices, default=None):
    if value is None:
        return default
    if value not in choices:
        raise _invalid(field_name, f"必须是以下之一: {', '.join(choices)}")
    return value


def _as_datetime(field_name, value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            raise _invalid(field_name, "时间格式不正确")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


@dataclass(frozen=True)
class BaseConfig:
    kind: ClassVar[str]
    supports_groups: ClassVar[bool] = False

    @property
    def accepts_individual_submission(self) -> bool:
        return True

    @property
    def submission_limit(self) -> Optional[int]:
        """Upper bound on submission versions, ``None`` when unlimited."""
        return None

    def submitted_student_ids(self, homework) -> Set[int]:
        return set(homework.submissions.values_list("student_id", flat=True))

    def to_dict(self) -> dict:
        return {key: _encode(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class StandardConfig(BaseConfig):
    kind: ClassVar[str] = HomeworkType.STANDARD

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StandardConfig":
        _reject_unknown("config", raw, set())
        return cls()


@dataclass(frozen=True)
class PeerReviewConfig:
    reviewers_per_submission: int = 3
    review_deadline: Optional[datetime] = None
    penalty_level: Optional[str] = None
    anonymous_mode: str = "DOUBLE_BLIND"
    min_reviews_required: Optional[int] = None
    coverage_strategy: str = "AUTO_SUPPLEMENT"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PeerReviewConfig":
        if not isinstance(raw, Mapping):
            raise _invalid("peer_review", "必须是对象")
        _reject_unknown("peer_review", raw, {f.name for f in fields(cls)})
        return cls(
            reviewers_per_submission=_as_int(
                "peer_review.reviewers_per_submission",
                raw.get("reviewers_per_submission", 3),
                minimum=1,
                maximum=10,
                optional=False,
            ),
            review_deadline=_as_datetime("peer_review.review_deadline", raw.get("review_deadline")),
            penalty_level=_as_choice(
                "peer_review.penalty_level", raw.get("penalty_level"), PENALTY_LEVELS
            ),
            anonymous_mode=_as_choice(
                "peer_review.anonymous_mode",
                raw.get("anonymous_mode"),
                ANONYMOUS_MODES,
                default="DOUBLE_BLIND",
            ),
            min_reviews_required=_as_int(
                "peer_review.min_reviews_required",
                raw.get("min_reviews_required"),
                minimum=0,
            ),
            coverage_strategy=_as_choice(
                "peer_review.coverage_strategy",
                raw.get("coverage_strategy"),
                COVERAGE_STRATEGIES,
                default="AUTO_SUPPLEMENT",
            ),
        )


@dataclass(frozen=True)
class GroupProjectConfig(BaseConfig):
    kind: ClassVar[str] = HomeworkType.GROUP_PROJECT
    supports_groups: ClassVar[bool] = True

    group_required: bool = True
    min_size: int = DEFAULT_MIN_GROUP_SIZE
    max_size: int = DEFAULT_MAX_GROUP_SIZE
    group_deadline: Optional[datetime] = None
    allow_switch: bool = True
    allow_teacher_assign: bool = True
    lock_time: Optional[datetime] = None
    ungrouped_policy: str = "TEACHER_ASSIGN"
    scoring_model: str = "BASE_PLUS_ADJUST"
    peer_review: PeerReviewConfig = field(default_factory=PeerReviewConfig)

    @property
    def accepts_individual_submission(self) -> bool:
        return not self.group_required

    def group_formation_closed(self, now: Optional[datetime] = None) -> bool:
        now = now or timezone.now()
        return bool(self.group_deadline and now > self.group_deadline)

    def target_group_size(self, preferred_size: Optional[int]) -> int:
        return min(self.max_size, max(self.min_size, preferred_size or self.max_size))

    def submitted_student_ids(self, homework) -> Set[int]:
        from .models import AssignmentGroupMember

        submitted = super().submitted_student_ids(homework)
        group_ids = (
            homework.submissions.exclude(group__isnull=True).values_list("group_id", flat=True)
        )
        submitted.update(
            AssignmentGroupMember.objects.filter(group_id__in=list(group_ids)).values_list(
                "student_id", flat=True
            )
        )
        return submitted

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "GroupProjectConfig":
        allowed = {f.name for f in fields(cls)}
        _reject_unknown("group_config", raw, allowed)
        min_size = _as_int(
            "group_config.min_size",
            raw.get("min_size", DEFAULT_MIN_GROUP_SIZE),
            minimum=1,
            maximum=50,
            optional=False,
        )
        max_size = _as_int(
            "group_config.max_size",
            raw.get("max_size", DEFAULT_MAX_GROUP_SIZE),
            minimum=1,
            maximum=50,
            optional=False,
        )
        if max_size < min_size:
            raise _invalid("group_config.max_size", "最大人数不能小于最小人数")
        peer_review_raw = raw.get("peer_review")
        return cls(
            group_required=_as_bool("group_config.group_required", raw.get("group_required"), True),
            min_size=min_size,
            max_size=max_size,
            group_deadline=_as_datetime("group_config.group_deadline", raw.get("group_deadline")),
            allow_switch=_as_bool("group_config.allow_switch", raw.get("allow_switch"), True),
            allow_teacher_assign=_as_bool(
                "group_config.allow_teacher_assign", raw.get("allow_teacher_assign"), True
            ),
            lock_time=_as_datetime("group_config.lock_time", raw.get("lock_time")),
            ungrouped_policy=_as_choice(
                "group_config.ungrouped_policy",
                raw.get("ungrouped_policy"),
                UNGROUPED_POLICIES,
                default="TEACHER_ASSIGN",
            ),
            scoring_model=_as_choice(
                "group_config.scoring_model",
                raw.get("scoring_model"),
                SCORING_MODELS,
                default="BASE_PLUS_ADJUST",
            ),
            peer_review=(
                PeerReviewConfig.from_dict(peer_review_raw)
                if peer_review_raw is not None
                else PeerReviewConfig()
            ),
        )


@dataclass(frozen=True)
class SelfPracticeConfig(BaseConfig):
    kind: ClassVar[str] = HomeworkType.SELF_PRACTICE

    bonus_cap: Optional[int] = None
    count_limit: Optional[int] = None
    quality_threshold: Optional[int] = None
    scoring_strategy: str = "BONUS"
    anti_cheat_rules: Tuple[str, ...] = ()

    @property
    def submission_limit(self) -> Optional[int]:
        return self.count_limit

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SelfPracticeConfig":
        _reject_unknown("self_practice_config", raw, {f.name for f in fields(cls)})
        rules = raw.get("anti_cheat_rules") or ()
        if isinstance(rules, str) or not all(isinstance(rule, str) for rule in rules):
            raise _invalid("self_practice_config.anti_cheat_rules", "必须是字符串列表")
        return cls(
            bonus_cap=_as_int("self_practice_config.bonus_cap", raw.get("bonus_cap"), minimum=0),
            count_limit=_as_int(
                "self_practice_config.count_limit", raw.get("count_limit"), minimum=1
            ),
            quality_threshold=_as_int(
                "self_practice_config.quality_threshold", raw.get("quality_threshold"), minimum=0
            ),
            scoring_strategy=_as_choice(
                "self_practice_config.scoring_strategy",
                raw.get("scoring_strategy"),
                SELF_PRACTICE_STRATEGIES,
                default="BONUS",
            ),
            anti_cheat_rules=tuple(rules),
        )


AssignmentConfig = Union[StandardConfig, GroupProjectConfig, SelfPracticeConfig]

CONFIG_CLASSES = {
    HomeworkType.STANDARD: StandardConfig,
    HomeworkType.GROUP_PROJECT: GroupProjectConfig,
    HomeworkType.SELF_PRACTICE: SelfPracticeConfig,
}

# Request payload key carrying the configuration for each type.
CONFIG_FIELDS = {
    HomeworkType.GROUP_PROJECT: "group_config",
    HomeworkType.SELF_PRACTICE: "self_practice_config",
}


def decode_config(kind: str, raw: Optional[Mapping[str, Any]]) -> AssignmentConfig:
    """Decode the stored/requested blob into the variant for ``kind``."""

    try:
        config_class = CONFIG_CLASSES[HomeworkType(kind)]
    except ValueError:
        raise _invalid("type", f"未知的作业类型: {kind}") from None
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise _invalid(CONFIG_FIELDS.get(kind, "config"), "必须是对象")
    return config_class.from_dict(raw)


def encode_config(config: AssignmentConfig) -> dict:
    return {"type": str(config.kind), "options": config.to_dict()}


def load_stored_config(kind: str, stored: Optional[Mapping[str, Any]]) -> AssignmentConfig:
    """Decode the JSON column; a blob written for another type is ignored."""

    stored = stored or {}
    if stored.get("type") != kind:
        return decode_config(kind, {})
    return decode_config(kind, stored.get("options") or {})
