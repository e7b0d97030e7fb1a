"""Upload worker pool – bounded-concurrency uploads with per-file retry and dedup.

Each file is fingerprinted, checked against the dedup store, then sent up to
``attempts_allowed`` times.  The executor's worker threads are the only
transmission slots, so no more than ``concurrency`` uploads are ever in flight
however many files are queued.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from album_sync.dedup_store import DedupStore
from album_sync.errors import (
    ConfigurationError,
    DecodeError,
    FileReadError,
    NetworkError,
    StorageError,
    UploadExhaustedError,
    UploadRejectedError,
)
from album_sync.hasher import ContentFingerprint, fingerprint_file

logger = logging.getLogger(__name__)

# Failures that cost one attempt and are worth another try.
RETRYABLE_ERRORS = (NetworkError, DecodeError, UploadRejectedError)


class Transmitter(Protocol):
    def transmit(self, album: str, path: str, fingerprint: ContentFingerprint) -> None:
        """Send one file; return on explicit success, raise a RETRYABLE_ERRORS member otherwise."""


class UploadStatus(enum.Enum):
    UPLOADED = "uploaded"
    SKIPPED_DUPLICATE = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class UploadTask:
    album: str
    local_path: str
    attempts_allowed: int


@dataclass
class UploadOutcome:
    """What happened to one file of a batch."""

    path: str
    status: UploadStatus
    attempts: int = 0
    fingerprint: ContentFingerprint | None = None
    duplicates: frozenset[str] = frozenset()
    error: Exception | None = None
    storage_error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.status in (UploadStatus.UPLOADED, UploadStatus.SKIPPED_DUPLICATE)


@dataclass
class UploadBatchResult:
    """Per-file outcomes of a batch, in the order the files were given."""

    album: str
    outcomes: list[UploadOutcome] = field(default_factory=list)

    def _with(self, status: UploadStatus) -> list[UploadOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def uploaded(self) -> list[UploadOutcome]:
        return self._with(UploadStatus.UPLOADED)

    @property
    def skipped(self) -> list[UploadOutcome]:
        return self._with(UploadStatus.SKIPPED_DUPLICATE)

    @property
    def failed(self) -> list[UploadOutcome]:
        return self._with(UploadStatus.FAILED)

    @property
    def cancelled(self) -> list[UploadOutcome]:
        return self._with(UploadStatus.CANCELLED)

    @property
    def unrecorded(self) -> list[UploadOutcome]:
        """Uploads that reached the server but could not be written to the dedup store."""
        return [o for o in self.outcomes if o.storage_error is not None]

    @property
    def all_ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


def validate_attempts(attempts: int) -> None:
    if attempts < 1:
        raise ConfigurationError(
            f"attempts must be at least 1 (it is the total number of tries), got {attempts}"
        )


class UploadWorkerPool:
    """Uploads files into one album at a time with at most *concurrency* in flight."""

    def __init__(
        self,
        transmitter: Transmitter,
        store: DedupStore,
        concurrency: int,
        allow_duplicates: bool = False,
        retry_delay: float = 0.0,
        cancel_event: threading.Event | None = None,
        reporter: Callable[[UploadOutcome], None] | None = None,
    ):
        if concurrency < 1:
            raise ConfigurationError(f"Must upload at least 1 file at a time, got {concurrency}")
        if retry_delay < 0:
            raise ConfigurationError(f"retry_delay cannot be negative, got {retry_delay}")
        self._transmitter = transmitter
        self._store = store
        self._concurrency = concurrency
        self._allow_duplicates = allow_duplicates
        self._retry_delay = retry_delay
        self._cancel = cancel_event or threading.Event()
        self._reporter = reporter

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def cancel(self) -> None:
        """Stop starting new files; uploads already running finish normally."""
        self._cancel.set()

    # ── batch ───────────────────────────────────────────────────────

    def upload_batch(self, album: str, paths: Iterable[str | Path], attempts: int) -> UploadBatchResult:
        """Upload every path into *album* and wait for all of them to finish."""
        validate_attempts(attempts)
        tasks = [UploadTask(album, str(p), attempts) for p in paths]
        result = UploadBatchResult(album=album)
        if not tasks:
            return result

        logger.info(
            "Uploading %d file(s) to album %s, %d at a time.", len(tasks), album, self._concurrency
        )
        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="upload") as executor:
            futures = [executor.submit(self._run_task, task) for task in tasks]
            # Leaving the with-block joins every worker.
        result.outcomes = [f.result() for f in futures]
        return result

    def _run_task(self, task: UploadTask) -> UploadOutcome:
        try:
            outcome = self.upload_one(task)
        except Exception as exc:
            logger.exception("Unexpected error uploading %s", task.local_path)
            outcome = UploadOutcome(task.local_path, UploadStatus.FAILED, error=exc)
        if self._reporter is not None:
            self._reporter(outcome)
        return outcome

    # ── single file ─────────────────────────────────────────────────

    def upload_one(self, task: UploadTask) -> UploadOutcome:
        """Fingerprint, dedup-check, transmit with retries, then record the upload."""
        validate_attempts(task.attempts_allowed)
        path = task.local_path

        if self._cancel.is_set():
            logger.info("Cancelled before start: %s", path)
            return UploadOutcome(path, UploadStatus.CANCELLED)

        try:
            fingerprint = fingerprint_file(path)
        except FileReadError as exc:
            logger.error("FAIL (unreadable) %s: %s", path, exc.reason)
            return UploadOutcome(path, UploadStatus.FAILED, error=exc)

        if not self._allow_duplicates:
            dupes = self._lookup_duplicates(task.album, fingerprint, path)
            if dupes:
                logger.info(
                    "Not uploading %s, duplicate image(s) in album %s: %s",
                    path, task.album, ", ".join(sorted(dupes)),
                )
                return UploadOutcome(
                    path, UploadStatus.SKIPPED_DUPLICATE, fingerprint=fingerprint, duplicates=dupes
                )

        attempts, last_error = self._transmit_with_retry(task, fingerprint)
        if isinstance(last_error, FileReadError):
            logger.error("FAIL (unreadable) %s: %s", path, last_error.reason)
            return UploadOutcome(
                path, UploadStatus.FAILED, attempts=attempts, fingerprint=fingerprint, error=last_error
            )
        if last_error is not None:
            exhausted = UploadExhaustedError(attempts, last_error)
            logger.error("FAIL %s: %s", path, exhausted)
            return UploadOutcome(
                path, UploadStatus.FAILED, attempts=attempts, fingerprint=fingerprint, error=exhausted
            )

        outcome = UploadOutcome(path, UploadStatus.UPLOADED, attempts=attempts, fingerprint=fingerprint)
        try:
            self._store.record_upload(task.album, fingerprint, path)
        except StorageError as exc:
            # The remote copy exists; only the local bookkeeping is missing.
            logger.error(
                "Uploaded %s but could not record it; a later run may upload it again: %s", path, exc
            )
            outcome.storage_error = exc
        logger.info("OK  %s (%d attempt(s))", path, attempts)
        return outcome

    def _lookup_duplicates(self, album: str, fingerprint: ContentFingerprint, path: str) -> frozenset[str]:
        try:
            return self._store.find_duplicates(album, fingerprint)
        except StorageError as exc:
            logger.warning("Duplicate check failed for %s, uploading anyway: %s", path, exc)
            return frozenset()

    def _transmit_with_retry(
        self, task: UploadTask, fingerprint: ContentFingerprint
    ) -> tuple[int, Exception | None]:
        last_error: Exception | None = None
        name = os.path.basename(task.local_path)
        for attempt in range(1, task.attempts_allowed + 1):
            try:
                self._transmitter.transmit(task.album, task.local_path, fingerprint)
                return attempt, None
            except RETRYABLE_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "Attempt %d/%d for %s failed: %s", attempt, task.attempts_allowed, name, exc
                )
            except FileReadError as exc:
                # The file vanished between hashing and sending; retrying will not bring it back.
                return attempt, exc
            if attempt < task.attempts_allowed and self._retry_delay:
                time.sleep(self._retry_delay)
        return task.attempts_allowed, last_error
