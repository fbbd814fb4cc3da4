"""Object storage factory and a wrapper that records upload metrics."""

from __future__ import annotations

import logging
import time
from typing import Protocol

import yaml

from jiboia import httpstorage, localstorage, s3
from jiboia.domain import ConfigError, UploadResult, WorkUnit
from jiboia.metrics import Counter, Histogram, Registry

STORAGE_TYPE_LABEL = "storage_type"
NAME_LABEL = "name"
FLOW_LABEL = "flow"
_NAMESPACE = "jiboia"
_SUBSYSTEM = "object_storage"
_LABELS = (STORAGE_TYPE_LABEL, NAME_LABEL, FLOW_LABEL)
_LATENCY_BUCKETS = (
    0.25, 0.5, 1.0, 1.5, 2.0, 5.0, 10.0, 30.0, 45.0, 60.0, 90.0, 120.0, 180.0, 240.0, 300.0, 600.0,
)


class ObjectStorage(Protocol):
    storage_type: str
    name: str

    def upload(self, work_unit: WorkUnit) -> UploadResult: ...


def _collector(registry: Registry, factory, name: str, help: str, **kwargs):
    full_name = f"{_NAMESPACE}_{_SUBSYSTEM}_{name}"
    try:
        return registry.get(full_name)
    except KeyError:
        metric = factory(name, help, _LABELS, namespace=_NAMESPACE, subsystem=_SUBSYSTEM, **kwargs)
        registry.register(metric)
        return metric


class StorageWithMetrics:
    """Wraps an object storage and records latency, totals, successes and errors."""

    def __init__(self, storage: ObjectStorage, registry: Registry, name: str) -> None:
        self._storage = storage
        self.storage_type = storage.storage_type
        self.name = storage.name
        self.flow = name
        labels = (self.storage_type, self.name, name)

        self._latency = _collector(
            registry,
            Histogram,
            "upload_latency_seconds",
            "the time it took to finish the upload of data to object storage",
            buckets=_LATENCY_BUCKETS,
        ).labels(*labels)
        self._uploads = _collector(
            registry, Counter, "upload_total", "count of uploads to object storage that finished"
        ).labels(*labels)
        self._successes = _collector(
            registry, Counter, "upload_success_total", "count of successes uploading to object storage"
        ).labels(*labels)
        self._errors = _collector(
            registry, Counter, "upload_errors_total", "count of errors uploading to object storage"
        ).labels(*labels)

    def _record(self, started: float, outcome) -> None:
        self._latency.observe(time.perf_counter() - started)
        self._uploads.inc()
        outcome.inc()

    def upload(self, work_unit: WorkUnit) -> UploadResult:
        """Upload through the wrapped storage, recording the outcome."""
        started = time.perf_counter()
        try:
            result = self._storage.upload(work_unit)
        except Exception:
            self._record(started, self._errors)
            raise
        self._record(started, self._successes)
        return result


def _build_s3(settings: bytes, logger):
    return s3.Bucket(s3.parse_config(settings), logger)


def _build_localstorage(settings: bytes, logger):
    return localstorage.LocalStorage(localstorage.parse_config(settings), logger)


def _build_httpstorage(settings: bytes, logger):
    return httpstorage.HttpStorage(httpstorage.parse_config(settings), logger)


_BUILDERS = {
    s3.TYPE: (_build_s3, "S3"),
    localstorage.TYPE: (_build_localstorage, "localstorage"),
    httpstorage.TYPE: (_build_httpstorage, "httpstorage"),
}


def create_storage(
    storage_type: str,
    settings: dict | None,
    registry: Registry,
    flow_name: str,
    logger: logging.Logger | None = None,
) -> StorageWithMetrics:
    """Build the object storage of the given type, wrapped with metrics."""
    try:
        specific = yaml.safe_dump(settings or {}).encode("utf-8")
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing object storage config: {err}") from err

    try:
        builder, label = _BUILDERS[storage_type]
    except KeyError:
        raise ConfigError(f"invalid object storage type {storage_type}") from None

    try:
        storage = builder(specific, logger or logging.getLogger(__name__))
    except ConfigError as err:
        raise ConfigError(f"error creating {label} object storage: {err}") from err

    return StorageWithMetrics(storage, registry, flow_name)