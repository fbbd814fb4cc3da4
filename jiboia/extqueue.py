"""External queue factory and a wrapper that records enqueue metrics."""

from __future__ import annotations

import logging
import time
from typing import Protocol

import yaml

from jiboia import noopqueue, sqs
from jiboia.domain import ConfigError, MessageContext
from jiboia.metrics import Counter, Histogram, Registry

QUEUE_TYPE_LABEL = "queue_type"
NAME_LABEL = "name"
FLOW_LABEL = "flow"
_NAMESPACE = "jiboia"
_SUBSYSTEM = "external_queue"
_LABELS = (QUEUE_TYPE_LABEL, NAME_LABEL, FLOW_LABEL)
_LATENCY_BUCKETS = (0.25, 0.5, 1.0, 1.5, 2.0, 5.0, 10.0, 30.0, 45.0, 60.0)


class ExternalQueue(Protocol):
    queue_type: str
    name: str

    def enqueue(self, message: MessageContext) -> None: ...


def _collector(registry: Registry, factory, name: str, help: str, **kwargs):
    full_name = f"{_NAMESPACE}_{_SUBSYSTEM}_{name}"
    try:
        return registry.get(full_name)
    except KeyError:
        metric = factory(name, help, _LABELS, namespace=_NAMESPACE, subsystem=_SUBSYSTEM, **kwargs)
        registry.register(metric)
        return metric


class ExternalQueueWithMetrics:
    """Wraps an external queue and records puts, errors, successes and latency."""

    def __init__(self, queue: ExternalQueue, registry: Registry, name: str) -> None:
        self._queue = queue
        self.queue_type = queue.queue_type
        self.name = queue.name
        self.flow = name
        labels = (self.queue_type, self.name, name)

        self._latency = _collector(
            registry,
            Histogram,
            "put_latency_seconds",
            "the time it took to finish the put action to a external queue (only successful cases)",
            buckets=_LATENCY_BUCKETS,
        ).labels(*labels)
        self._puts = _collector(
            registry,
            Counter,
            "put_total",
            "count of put actions to external queues that finished (successful or not)",
        ).labels(*labels)
        self._errors = _collector(
            registry, Counter, "put_errors_total", "count of errors putting to external queue"
        ).labels(*labels)
        self._successes = _collector(
            registry, Counter, "put_success_total", "count of successes putting to external queue"
        ).labels(*labels)

    def enqueue(self, message: MessageContext) -> None:
        """Enqueue through the wrapped queue, recording the outcome."""
        self._puts.inc()
        started = time.perf_counter()
        try:
            self._queue.enqueue(message)
        except Exception:
            self._errors.inc()
            raise
        self._latency.observe(time.perf_counter() - started)
        self._successes.inc()


def create_external_queue(
    queue_type: str,
    settings: dict | None,
    registry: Registry,
    flow_name: str,
    logger: logging.Logger | None = None,
) -> ExternalQueueWithMetrics:
    """Build the external queue of the given type, wrapped with metrics."""
    logger = logger or logging.getLogger(__name__)
    try:
        specific = yaml.safe_dump(settings or {}).encode("utf-8")
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing external queue config: {err}") from err

    if queue_type == noopqueue.TYPE:
        queue = noopqueue.NoopExternalQueue(logger)
    elif queue_type == sqs.TYPE:
        try:
            config = sqs.parse_config(specific)
        except ConfigError as err:
            raise ConfigError(f"error parsing SQS-specific config: {err}") from err
        try:
            queue = sqs.SqsQueue(config, flow_name, logger)
        except ConfigError as err:
            raise ConfigError(f"error creating SQS: {err}") from err
    else:
        raise ConfigError(f"invalid external queue type {queue_type}")

    return ExternalQueueWithMetrics(queue, registry, flow_name)