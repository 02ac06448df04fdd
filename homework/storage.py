"""Object storage adapter for submission files.

Files live in Django's ``default`` storage.  On S3/MinIO (django-storages)
download links are presigned by the bucket itself; any other backend gets a
signed token that :class:`homework.api.views.SignedFileView` exchanges for the
file body until the token expires.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import posixpath
from typing import Iterable, List, Optional
import uuid

from django.conf import settings
from django.core import signing
from django.core.files.storage import storages
from django.db import transaction
from django.urls import reverse
from django.utils.text import get_valid_filename
from storages.backends.s3 import S3Storage

from .exceptions import StorageFailure

logger = logging.getLogger(__name__)

TOKEN_SALT = "homework.storage.file-access"


@dataclass
class CleanupReport:
    released: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def display_name(key: str) -> str:
    return posixpath.basename(key)


class SubmissionStorage:
    """``save`` / ``delete`` / ``signed_url`` on top of a Django storage."""

    def __init__(self, backend=None):
        self._backend = backend

    @property
    def backend(self):
        # Resolved per call so ``override_settings(STORAGES=...)`` takes effect.
        return self._backend if self._backend is not None else storages["default"]

    def save(self, uploaded, prefix: str) -> str:
        original = get_valid_filename(os.path.basename(getattr(uploaded, "name", "") or "file"))
        key = posixpath.join(prefix.strip("/"), uuid.uuid4().hex, original)
        try:
            return self.backend.save(key, uploaded)
        except Exception as exc:
            logger.exception("Failed to store %s under %s", original, prefix)
            raise StorageFailure(f"文件 {original} 上传失败") from exc

    def delete(self, key: str) -> None:
        backend = self.backend
        if not backend.exists(key):
            logger.info("Storage key %s already absent, nothing to delete", key)
            return
        backend.delete(key)

    def release(self, keys: Iterable[str]) -> CleanupReport:
        """Delete every key, collecting failures instead of raising."""

        report = CleanupReport()
        for key in keys:
            try:
                self.delete(key)
            except Exception:
                logger.warning("Failed to release storage key %s", key, exc_info=True)
                report.failed.append(key)
            else:
                report.released.append(key)
        if report.failed:
            logger.error(
                "Storage cleanup left %d orphaned object(s): %s",
                len(report.failed),
                ", ".join(report.failed),
            )
        return report

    def signed_url(self, key: str, ttl: Optional[int] = None, *, inline: bool = False) -> str:
        ttl = int(ttl or settings.HOMEWORK_SIGNED_URL_TTL)
        backend = self.backend
        if isinstance(backend, S3Storage):
            disposition = "inline" if inline else "attachment"
            return backend.url(
                key,
                parameters={"ResponseContentDisposition": disposition},
                expire=ttl,
            )
        token = signing.TimestampSigner(salt=TOKEN_SALT).sign_object(
            {"key": key, "ttl": ttl, "inline": inline}
        )
        return reverse("homework:signed-file", kwargs={"token": token})

    def open(self, key: str):
        return self.backend.open(key, "rb")


def resolve_token(token: str) -> dict:
    """Return the payload of a download token.

    Raises ``signing.SignatureExpired`` once the token's ttl has elapsed and
    ``signing.BadSignature`` for anything that was not issued by us.
    """

    signer = signing.TimestampSigner(salt=TOKEN_SALT)
    payload = signer.unsign_object(token)
    return signer.unsign_object(token, max_age=payload["ttl"])


class FileCleanup:
    """Storage keys collected inside a transaction and released once it commits.

    ``report`` stays empty until the outermost transaction commits; on
    rollback the keys are never touched.
    """

    def __init__(self, storage: Optional[SubmissionStorage] = None):
        self.storage = storage or SubmissionStorage()
        self.keys: List[str] = []
        self.report = CleanupReport()

    def extend(self, keys: Iterable[str]) -> None:
        self.keys.extend(key for key in keys if key)

    def run(self) -> CleanupReport:
        keys, self.keys = self.keys, []
        if keys:
            outcome = self.storage.release(keys)
            self.report.released.extend(outcome.released)
            self.report.failed.extend(outcome.failed)
        return self.report

    def schedule(self) -> CleanupReport:
        """Release the collected keys after the current transaction commits."""

        if self.keys:
            transaction.on_commit(self.run)
        return self.report
