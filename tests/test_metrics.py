import math

import pytest

from jiboia.metrics import Counter, Gauge, Histogram, Registry


def test_counter_full_name_and_labels():
    counter = Counter("enqueue_calls_total", "help", ("flow",), namespace="jiboia", subsystem="accumulator")
    assert counter.name == "jiboia_accumulator_enqueue_calls_total"
    counter.labels("a").inc(2.5)
    assert counter.value("a") == 2.5
    assert counter.value("b") == 0.0


def test_counter_rejects_negative_increment():
    counter = Counter("c_total", "help", ("flow",))
    with pytest.raises(ValueError):
        counter.labels("a").inc(-1)


def test_label_count_mismatch_raises():
    counter = Counter("c_total", "help", ("flow", "path"))
    with pytest.raises(ValueError):
        counter.labels("only-one")


def test_labels_returns_same_child():
    gauge = Gauge("g", "help", ("flow",))
    gauge.labels("x").set(3)
    gauge.labels("x").inc(2)
    assert gauge.value("x") == 5
    assert gauge.value("y") == 0.0


def test_gauge_set_inc_dec():
    gauge = Gauge("g", "help", ("flow",))
    child = gauge.labels("x")
    child.set(7)
    assert gauge.value("x") == 7
    child.inc(3)
    child.dec(3)
    assert gauge.value("x") == 7


def test_histogram_count_sum_and_cumulative_buckets():
    hist = Histogram("h", "help", ("path",), buckets=(1.0, 5.0))
    observations = [0.5, 2.0, 10.0]
    for value in observations:
        hist.labels("/p").observe(value)
    assert hist.count("/p") == len(observations)
    assert hist.sum("/p") == pytest.approx(sum(observations))
    assert math.isinf(hist.buckets[-1])
    buckets = [s for s in hist.collect() if s.name == "h_bucket"]
    values = [s.value for s in buckets]
    assert values == sorted(values)
    assert values[-1] == len(observations)


def test_registry_duplicate_raises():
    registry = Registry()
    registry.register(Counter("x_total", "help"))
    with pytest.raises(ValueError):
        registry.register(Counter("x_total", "help"))


def test_registry_get_missing_raises_key_error():
    with pytest.raises(KeyError):
        Registry().get("missing")


def test_registry_get_returns_registered():
    registry = Registry()
    counter = Counter("x_total", "help")
    registry.register(counter)
    assert registry.get("x_total") is counter
    assert "x_total" in registry


def test_expose_text_format():
    registry = Registry()
    counter = Counter(
        "enqueue_calls_total",
        "The total number of times that data was enqueued.",
        ("flow",),
        namespace="jiboia",
        subsystem="accumulator",
    )
    registry.register(counter)
    counter.labels("someflow").inc()
    text = registry.expose()
    assert "# TYPE jiboia_accumulator_enqueue_calls_total counter" in text
    assert (
        "# HELP jiboia_accumulator_enqueue_calls_total The total number of times that data was enqueued."
        in text
    )
    assert 'jiboia_accumulator_enqueue_calls_total{flow="someflow"} 1' in text