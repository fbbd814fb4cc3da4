"""Accumulates small payloads into larger, separator-joined chunks."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Protocol

from jiboia.metrics import Counter, Gauge, Registry

MIN_QUEUE_CAPACITY = 2
CB_RETRY_SLEEP_SECONDS = 0.01
COMPONENT_NAME = "accumulator"
FLOW_METRIC_KEY = "flow"
_NAMESPACE = "jiboia"
_POLL_SECONDS = 0.005


class AccumulatorError(Exception):
    """Base error of the accumulator."""


class QueueFullError(AccumulatorError):
    """The internal queue has no room for more data."""


class ShuttingDownError(AccumulatorError):
    """The accumulator no longer accepts data."""


class DataEnqueuer(Protocol):
    def enqueue(self, data: bytes) -> None: ...


class CircuitBreaker(Protocol):
    def call(self, func: Callable[[], object]) -> object: ...


def _collector(registry: Registry, factory, name: str, help: str):
    full_name = f"{_NAMESPACE}_{COMPONENT_NAME}_{name}"
    try:
        return registry.get(full_name)
    except KeyError:
        metric = factory(name, help, (FLOW_METRIC_KEY,), namespace=_NAMESPACE, subsystem=COMPONENT_NAME)
        registry.register(metric)
        return metric


class _Metrics:
    def __init__(self, flow_name: str, registry: Registry) -> None:
        def counter(name: str, help: str):
            return _collector(registry, Counter, name, help).labels(flow_name)

        def gauge(name: str, help: str):
            return _collector(registry, Gauge, name, help).labels(flow_name)

        self.enqueue_calls = counter("enqueue_calls_total", "The total number of times that data was enqueued.")
        self.next_calls = counter("next_calls_total", "The total number of times that data was sent to next step.")
        self.capacity = gauge("queue_capacity", "The total capacity of the internal queue.")
        self.items_in_queue = gauge("items_in_queue", "The count of current items in the internal queue.")
        self.data_in_bytes = counter(
            "data_in_bytes", "The amount of data that has been worked by accumulator component, in bytes."
        )
        self.data_out_bytes = counter(
            "data_out_bytes",
            "The amount of data that has been sent forward (to the next component) by accumulator component, in bytes.",
        )
        self.data_in_kbs = counter(
            "data_in_kbs", "The amount of data that has been worked by accumulator component, in KBs."
        )
        self.data_out_kbs = counter(
            "data_out_kbs",
            "The amount of data that has been sent forward (to the next component) by accumulator component, in KBs.",
        )
        self.enqueue_failed = counter("enqueue_failed_total", "Counter for failures when trying to enqueue data on it")

    def data_in(self, size: int) -> None:
        if size > 0:
            self.data_in_bytes.inc(size)
            self.data_in_kbs.inc(size / 1024)

    def data_out(self, size: int) -> None:
        if size > 0:
            self.data_out_bytes.inc(size)
            self.data_out_kbs.inc(size / 1024)


class Accumulator:
    """Buffers payloads and forwards them joined by a separator once a size limit is met.

    ``next_step.enqueue(data)`` receives the merged chunks; a failure is retried
    until it succeeds, going through ``circuit_breaker.call`` when one is given.
    """

    def __init__(
        self,
        flow_name: str,
        limit_of_bytes: int,
        separator: bytes,
        queue_capacity: int,
        next_step: DataEnqueuer,
        circuit_breaker: CircuitBreaker | None = None,
        registry: Registry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        base_logger = logger or logging.getLogger(__name__)
        separator = bytes(separator)

        if limit_of_bytes <= 1:
            base_logger.error("limit of bytes in accumulator should be >= 2 (flow %s)", flow_name)
            raise ValueError("limit of bytes in accumulator should be >= 2")
        if len(separator) >= limit_of_bytes:
            base_logger.error("separator length in bytes should be smaller than limit (flow %s)", flow_name)
            raise ValueError("separator length in bytes should be smaller than limit")
        if queue_capacity < MIN_QUEUE_CAPACITY:
            base_logger.error(
                "the accumulator capacity cannot be less than %d (flow %s)", MIN_QUEUE_CAPACITY, flow_name
            )
            raise ValueError(f"the accumulator capacity cannot be less than {MIN_QUEUE_CAPACITY}")

        self._log = logging.LoggerAdapter(base_logger, {"component": COMPONENT_NAME, "flow": flow_name})
        self._limit = limit_of_bytes
        self._separator = separator
        self._queue: queue.Queue[bytes] = queue.Queue(maxsize=queue_capacity)
        self._current: list[bytes] = []
        self._current_size = 0
        self._next = next_step
        self._breaker = circuit_breaker
        self._lock = threading.Lock()
        self._shutting_down = False
        self._metrics = _Metrics(flow_name, registry if registry is not None else Registry())
        self._metrics.capacity.set(queue_capacity)

    def enqueue(self, data: bytes) -> None:
        """Queue data for accumulation without blocking."""
        with self._lock:
            if self._shutting_down:
                raise ShuttingDownError("accumulator shutting down")
            self._metrics.enqueue_calls.inc()
            try:
                self._queue.put_nowait(bytes(data))
            except queue.Full:
                self._metrics.enqueue_failed.inc()
                raise QueueFullError("enqueueing data on the accumulator failed, queue is full") from None
            self._update_queue_gauge()

    def run(self, stop_event: threading.Event) -> None:
        """Process queued data until stop_event is set, then drain and flush."""
        self._log.info("starting non-blocking accumulator")
        while not stop_event.is_set():
            try:
                data = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            self._append(data)
            self._update_queue_gauge()
        self._log.debug("accumulator starting shutdown")
        self._shutdown()
        self._log.info("accumulator shutdown finished")

    def _buffer_len(self) -> int:
        return self._current_size + len(self._separator) * (len(self._current) - 1)

    def _append(self, data: bytes) -> None:
        if not data:
            return
        size = len(data)
        self._metrics.data_in(size)

        if size >= self._limit:
            self._flush()
            self._enqueue_on_next(data)
            return

        len_after_append = self._buffer_len() + len(self._separator) + size
        if len_after_append > self._limit:
            self._flush()

        self._current.append(data)
        self._current_size += size

        if len_after_append == self._limit:
            self._flush()

    def _flush(self) -> None:
        if not self._current:
            return
        merged = self._separator.join(self._current)
        self._current = []
        self._current_size = 0
        self._enqueue_on_next(merged)

    def _send(self, data: bytes) -> None:
        if self._breaker is None:
            self._next.enqueue(data)
        else:
            self._breaker.call(lambda: self._next.enqueue(data))

    def _enqueue_on_next(self, data: bytes) -> None:
        while True:
            try:
                self._send(data)
                break
            except Exception as err:  # any failure of the next step is retried
                self._log.debug("sending data to next step failed, retrying: %s", err)
                time.sleep(CB_RETRY_SLEEP_SECONDS)
        self._metrics.data_out(len(data))
        self._metrics.next_calls.inc()

    def _update_queue_gauge(self) -> None:
        self._metrics.items_in_queue.set(self._queue.qsize())

    def _shutdown(self) -> None:
        with self._lock:
            self._shutting_down = True
        while True:
            try:
                data = self._queue.get_nowait()
            except queue.Empty:
                break
            self._append(data)
            self._update_queue_gauge()
        self._flush()