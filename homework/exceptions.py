"""Errors raised by the homework services on top of DRF's own exceptions.

Validation, permission and lookup failures use ``rest_framework.exceptions``
directly (``ValidationError``, ``PermissionDenied``, ``NotFound``); the two
classes below cover state-machine violations and object storage failures.
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class Conflict(APIException):
    """The target aggregate is in a state that does not allow the operation."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "操作与当前状态冲突"
    default_code = "conflict"


class StorageFailure(APIException):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "文件存储失败"
    default_code = "storage_failure"
