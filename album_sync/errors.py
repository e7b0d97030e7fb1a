"""Error taxonomy shared by the hasher, dedup store, listing and upload pipeline."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by album_sync."""


class ConfigurationError(SyncError, ValueError):
    """Invalid concurrency, retry or configuration values; raised before any work starts."""


class CredentialsError(SyncError):
    """API key or user token files are missing or unreadable."""


class FileReadError(SyncError):
    """A local file could not be opened or read to completion."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class NetworkError(SyncError):
    """The connection failed or dropped before the server answered."""


class DecodeError(SyncError):
    """A response body could not be parsed."""


class UploadRejectedError(SyncError):
    """The server explicitly acknowledged an upload as failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class UploadExhaustedError(SyncError):
    """Every allowed upload attempt failed."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        msg = f"Unable to upload after {attempts} attempt(s)"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)
        self.attempts = attempts
        self.last_error = last_error


class StorageError(SyncError):
    """The dedup store could not be read or written."""


class VersionMismatchError(StorageError):
    """The dedup store was written by an incompatible schema version."""

    def __init__(self, table: str, found: int | None, expected: int):
        if found is None:
            msg = f"Table {table} has no recorded version, expected version {expected}"
        else:
            msg = f"Table {table} version is {found}, but must be version {expected}"
        super().__init__(msg)
        self.table = table
        self.found = found
        self.expected = expected
