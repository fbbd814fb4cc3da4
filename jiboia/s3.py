"""Object storage backed by an S3 bucket."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import yaml

from jiboia.awsclient import S3Client
from jiboia.domain import ConfigError, StorageError, UploadResult, WorkUnit

TYPE = "s3"

# YAML keys holding plain strings; each matches the S3Config field of the same name.
_STRING_FIELDS = (
    "bucket",
    "region",
    "endpoint",
    "access_key",
    "secret_key",
    "prefix",
)


class Uploader(Protocol):
    def upload(self, bucket: str, key: str, body: bytes, timeout: float | None) -> str: ...


@dataclass
class S3Config:
    timeout_in_millis: int = 0
    bucket: str = ""
    region: str = ""
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""
    prefix: str = ""
    force_path_style: bool = False


def parse_config(data) -> S3Config:
    """Parse the YAML settings of an S3 storage."""
    try:
        raw = yaml.safe_load(data) if data else None
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing S3 config: {err}") from err
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("error parsing S3 config: expected a mapping")

    values: dict = {}
    for field_name in _STRING_FIELDS:
        value = raw.get(field_name)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise ConfigError(f"error parsing S3 config: {field_name} must be a scalar")
        values[field_name] = str(value)

    timeout = raw.get("timeout_milliseconds")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, int):
            raise ConfigError("error parsing S3 config: timeout_milliseconds must be an integer")
        values["timeout_in_millis"] = timeout

    force_path_style = raw.get("force_path_style")
    if force_path_style is not None:
        if not isinstance(force_path_style, bool):
            raise ConfigError("error parsing S3 config: force_path_style must be a boolean")
        values["force_path_style"] = force_path_style

    return S3Config(**values)


def merge_parts(fixed_prefix: str, dynamic_prefix: str, key: str) -> str:
    """Join prefixes and key with single slashes and no outer slashes."""
    result = (fixed_prefix.strip("/") + "/" + dynamic_prefix.strip("/")).strip("/")
    result = "/" + result + "/" + key.strip("/")
    return result.strip("/")


class Bucket:
    """Uploads work units as objects of one bucket."""

    storage_type = TYPE

    def __init__(
        self,
        config: S3Config,
        logger: logging.Logger | None = None,
        uploader: Uploader | None = None,
    ) -> None:
        self.name = config.bucket
        self.region = config.region
        self._fixed_prefix = config.prefix
        self._timeout = config.timeout_in_millis / 1000 if config.timeout_in_millis else None
        self._uploader = uploader if uploader is not None else S3Client(
            region=config.region,
            endpoint=config.endpoint,
            access_key=config.access_key,
            secret_key=config.secret_key,
            force_path_style=config.force_path_style,
        )
        self._log = logging.LoggerAdapter(
            logger or logging.getLogger(__name__), {"object_storage_type": TYPE}
        )

    def upload(self, work_unit: WorkUnit) -> UploadResult:
        """Upload the work unit under the merged prefix and filename."""
        key = merge_parts(self._fixed_prefix, work_unit.prefix, work_unit.filename)
        try:
            location = self._uploader.upload(self.name, key, work_unit.data, self._timeout)
        except Exception as err:
            raise StorageError(f"error when uploading to S3: {err}") from err
        self._log.debug("uploaded object to S3, key %s", key)
        return UploadResult(
            bucket=self.name,
            region=self.region,
            path=key,
            url=location,
            size_in_bytes=len(work_unit.data),
        )