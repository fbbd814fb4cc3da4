"""Core value types shared by storages and queues."""

from __future__ import annotations

from dataclasses import dataclass

MSG_SCHEMA_VERSION = "0.0.1"


class StorageError(Exception):
    """An object storage failed to store data."""


class ConfigError(Exception):
    """A configuration could not be parsed or is invalid."""


@dataclass(frozen=True)
class WorkUnit:
    """A chunk of data to be stored under ``prefix/filename``."""

    filename: str
    prefix: str
    data: bytes


@dataclass(frozen=True)
class UploadResult:
    """Where and how much data an object storage stored."""

    bucket: str
    path: str
    url: str
    size_in_bytes: int
    region: str = ""


@dataclass(frozen=True)
class MessageContext:
    """What an external queue is told about a stored object."""

    bucket: str
    region: str
    path: str
    url: str
    size_in_bytes: int
    compression_type: str = ""

    @staticmethod
    def from_upload(upload_result: UploadResult, compression_type: str = "") -> "MessageContext":
        """Build the queue message for an upload result."""
        return MessageContext(
            bucket=upload_result.bucket,
            region=upload_result.region,
            path=upload_result.path,
            url=upload_result.url,
            size_in_bytes=upload_result.size_in_bytes,
            compression_type=compression_type,
        )