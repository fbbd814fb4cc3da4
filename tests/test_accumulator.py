import threading
import time
from contextlib import contextmanager

import pytest

from jiboia.accumulator import (
    CB_RETRY_SLEEP_SECONDS,
    MIN_QUEUE_CAPACITY,
    Accumulator,
    QueueFullError,
    ShuttingDownError,
)
from jiboia.metrics import Registry

QUEUE_CAPACITY = 30
SETTLE = 0.05


class RecordingNext:
    def __init__(self, fail=False):
        self._lock = threading.Lock()
        self.written = []
        self.fail = fail

    def enqueue(self, data):
        with self._lock:
            self.written.append(data)
            if self.fail:
                raise RuntimeError("i always fail")

    def set_fail(self, value):
        with self._lock:
            self.fail = value

    def snapshot(self):
        with self._lock:
            return list(self.written)


class OpeningBreaker:
    """Opens on any failure and lets one call through after the interval."""

    def __init__(self, open_interval):
        self.open_interval = open_interval
        self._open_until = 0.0

    def call(self, func):
        if time.monotonic() < self._open_until:
            raise RuntimeError("circuit open")
        try:
            return func()
        except Exception:
            self._open_until = time.monotonic() + self.open_interval
            raise


def make(limit, separator, next_step, capacity=QUEUE_CAPACITY, breaker=None, registry=None):
    return Accumulator("someflow", limit, separator, capacity, next_step, breaker, registry or Registry())


@contextmanager
def running(acc):
    stop = threading.Event()
    thread = threading.Thread(target=acc.run, args=(stop,), daemon=True)
    thread.start()
    try:
        yield stop
    finally:
        stop.set()
        thread.join(timeout=2)


def sleep_until(start, offset):
    remaining = start + offset - time.monotonic()
    if remaining > 0:
        time.sleep(remaining)


@pytest.mark.parametrize("limit", [0, 1])
def test_rejects_limit_of_one_or_less(limit):
    with pytest.raises(ValueError):
        make(limit, b"", RecordingNext())


def test_limit_of_two_is_allowed():
    acc = make(2, b"", RecordingNext())
    acc.enqueue(b"a")
    with pytest.raises(QueueFullError):
        for _ in range(QUEUE_CAPACITY):
            acc.enqueue(b"a")


@pytest.mark.parametrize("separator", [b"abcdefghij", b"abcdefghijk"])
def test_rejects_separator_equal_or_bigger_than_limit(separator):
    with pytest.raises(ValueError):
        make(10, separator, RecordingNext())


@pytest.mark.parametrize("capacity", [0, 1])
def test_rejects_queue_capacity_below_minimum(capacity):
    with pytest.raises(ValueError):
        make(11, b"", RecordingNext(), capacity=capacity)


def test_queue_capacity_of_two_is_allowed_and_fixed():
    next_step = RecordingNext()
    acc = make(6000, b"", next_step, capacity=2)
    for i in range(MIN_QUEUE_CAPACITY):
        acc.enqueue(str(i).encode())
    assert next_step.snapshot() == []
    with pytest.raises(QueueFullError):
        acc.enqueue(b"a")
    with pytest.raises(QueueFullError):
        acc.enqueue(b"b")


@pytest.mark.parametrize(
    "limit,separator,data",
    [
        (10, b"b", b"1"),
        (10, b"__sep__", b"22"),
        (10, b"", b""),
        (10, b"", b"999999999"),
        (2, b"a", b""),
        (1073741824, b"aaaaaaasadasda", b"12345678910111213"),
    ],
)
def test_does_not_pass_data_if_limit_not_reached(limit, separator, data):
    next_step = RecordingNext()
    acc = make(limit, separator, next_step)
    with running(acc):
        acc.enqueue(data)
        time.sleep(SETTLE)
        assert next_step.snapshot() == []


@pytest.mark.parametrize(
    "limit,separator,data",
    [
        (2, b"", b"aa"),
        (2, b"", b"aaa"),
        (10, b"", b"aaaaaaaaaa"),
        (10, b"", b"asdfasdfasdfasdfasdf"),
        (3, b"ii", b"asdfasdfasdfasdfasdf"),
        (2, b"i", b"as"),
    ],
)
def test_writes_data_if_size_equal_or_bigger_than_limit(limit, separator, data):
    next_step = RecordingNext()
    acc = make(limit, separator, next_step)
    with running(acc):
        acc.enqueue(data)
        time.sleep(SETTLE)
        assert next_step.snapshot() == [data]


@pytest.mark.parametrize(
    "limit,separator,data,want",
    [
        (6, b"_", [b"55555", b"1"], [b"55555"]),
        (6, b"", [b"4444", b"22"], [b"444422"]),
        (6, b"__v__", [b"4444", b"55555"], [b"4444"]),
        (6, b"__v__", [b"4444", b"55555", b"1"], [b"4444", b"55555"]),
        (6, b"__v__", [b"4444", b"666666", b"1"], [b"4444", b"666666"]),
        (6, b"__v__", [b"4444", b"7777777", b"1"], [b"4444", b"7777777"]),
        (6, b"_", [b"1", b"4444"], [b"1_4444"]),
        (6, b"_", [b"1", b"22", b"333"], [b"1_22"]),
        (16, b"__", [b"1", b"22", b"a", b"b", b"c", b"88888888"], [b"1__22__a__b__c"]),
        (
            16,
            b"__",
            [b"1", b"22", b"a", b"b", b"c", b"88888888", b"22", b"asd"],
            [b"1__22__a__b__c", b"88888888__22"],
        ),
        (16, b"__v__v__", [b"88888888", b"22"], [b"88888888"]),
        (16, b"__v__v__", [b"666666", b"22"], [b"666666__v__v__22"]),
        (16, b"__v__v__", [b"666666", b"1", b"22"], [b"666666__v__v__1"]),
        (6, b"_", [b"1", b"55555"], [b"1"]),
        (6, b"_", [b"1", b"666666"], [b"1", b"666666"]),
        (6, b"_", [b"1", b"7777777"], [b"1", b"7777777"]),
    ],
)
def test_writes_data_when_limit_is_hit_after_multiple_calls(limit, separator, data, want):
    next_step = RecordingNext()
    acc = make(limit, separator, next_step)
    with running(acc):
        for item in data:
            acc.enqueue(item)
        time.sleep(SETTLE)
        assert next_step.snapshot() == want


@pytest.mark.parametrize(
    "separator,capacity,count",
    [
        (b"__v__", 30, 31),
        (b"__v__", 30, 92),
        (b"", 30, 92),
        (b"", 90, 91),
    ],
)
def test_rejects_data_if_at_full_capacity(separator, capacity, count):
    next_step = RecordingNext()
    acc = make(6000, separator, next_step, capacity=capacity)
    for i in range(count):
        try:
            acc.enqueue(str(i).encode())
        except QueueFullError:
            pass
    with pytest.raises(QueueFullError):
        acc.enqueue(b"1")
    assert next_step.snapshot() == []


@pytest.mark.parametrize(
    "data,want",
    [
        ([b"1", b"22", b"333"], [b"122333"]),
        ([b"55555", b"1"], [b"555551"]),
        ([b"55555"], [b"55555"]),
        ([b"999999999"], [b"999999999"]),
    ],
)
def test_sends_pending_data_when_stopped(data, want):
    next_step = RecordingNext()
    acc = make(10, b"", next_step)
    with running(acc):
        for item in data:
            acc.enqueue(item)
        assert next_step.snapshot() == []
    assert next_step.snapshot() == want


def test_enqueue_errors_after_stop():
    next_step = RecordingNext()
    acc = make(10, b"", next_step)
    with running(acc):
        time.sleep(0.001)
    assert next_step.snapshot() == []
    with pytest.raises(ShuttingDownError):
        acc.enqueue(b"hi")


def test_uses_circuit_breaker_and_retries_on_failure():
    open_interval = 0.1
    next_step = RecordingNext(fail=True)
    acc = make(3, b"", next_step, breaker=OpeningBreaker(open_interval))
    payload = b"333"
    with running(acc):
        start = time.monotonic()
        acc.enqueue(payload)
        sleep_until(start, 0.05)
        assert next_step.snapshot() == [payload]
        sleep_until(start, open_interval + 0.06 + CB_RETRY_SLEEP_SECONDS)
        assert next_step.snapshot() == [payload, payload]
        sleep_until(start, 2 * open_interval + 0.07 + CB_RETRY_SLEEP_SECONDS)
        assert next_step.snapshot() == [payload, payload, payload]
        next_step.set_fail(False)


def test_stops_retrying_once_data_is_sent():
    open_interval = 0.1
    next_step = RecordingNext(fail=True)
    acc = make(3, b"", next_step, breaker=OpeningBreaker(open_interval))
    payload = b"333"
    payload2 = b"4444"
    with running(acc):
        start = time.monotonic()
        acc.enqueue(payload)
        sleep_until(start, 0.05)
        assert next_step.snapshot() == [payload]

        next_step.set_fail(False)
        sleep_until(start, open_interval + 0.06 + CB_RETRY_SLEEP_SECONDS)
        assert next_step.snapshot() == [payload, payload]

        next_step.set_fail(True)
        acc.enqueue(payload2)
        time.sleep(0.03)
        next_step.set_fail(False)
        time.sleep(open_interval * 5)
        assert next_step.snapshot() == [payload, payload, payload2, payload2]


def test_records_metrics():
    registry = Registry()
    next_step = RecordingNext()
    acc = make(2, b"", next_step, registry=registry)
    with running(acc):
        acc.enqueue(b"aa")
        acc.enqueue(b"bbb")
        time.sleep(SETTLE)
    assert registry.get("jiboia_accumulator_queue_capacity").value("someflow") == QUEUE_CAPACITY
    assert registry.get("jiboia_accumulator_enqueue_calls_total").value("someflow") == 2
    assert registry.get("jiboia_accumulator_next_calls_total").value("someflow") == len(next_step.snapshot())
    assert registry.get("jiboia_accumulator_data_in_bytes").value("someflow") == len(b"aa") + len(b"bbb")
    assert registry.get("jiboia_accumulator_data_out_bytes").value("someflow") == len(b"aa") + len(b"bbb")


def test_failed_enqueue_counted_and_registry_shared_between_flows():
    registry = Registry()
    first = Accumulator("flow-a", 100, b"", 2, RecordingNext(), registry=registry)
    Accumulator("flow-b", 100, b"", 5, RecordingNext(), registry=registry)
    first.enqueue(b"1")
    first.enqueue(b"2")
    with pytest.raises(QueueFullError):
        first.enqueue(b"3")
    failed = registry.get("jiboia_accumulator_enqueue_failed_total")
    assert failed.value("flow-a") == 1
    assert failed.value("flow-b") == 0
    capacity = registry.get("jiboia_accumulator_queue_capacity")
    assert capacity.value("flow-b") == 5