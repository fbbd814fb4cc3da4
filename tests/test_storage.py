import pytest

from jiboia.domain import ConfigError, StorageError, UploadResult, WorkUnit
from jiboia.metrics import Registry
from jiboia.storage import StorageWithMetrics, create_storage

UPLOADS = "jiboia_object_storage_upload_total"
SUCCESSES = "jiboia_object_storage_upload_success_total"
ERRORS = "jiboia_object_storage_upload_errors_total"
LATENCY = "jiboia_object_storage_upload_latency_seconds"


class FakeStorage:
    storage_type = "fake"
    name = "fake-name"

    def __init__(self, fail=False):
        self.fail = fail
        self.received = []

    def upload(self, work_unit):
        self.received.append(work_unit)
        if self.fail:
            raise StorageError("upload broke")
        return UploadResult(
            bucket="fake-bucket", path=work_unit.filename, url="fake-url", size_in_bytes=len(work_unit.data)
        )


def _work():
    return WorkUnit(filename="some-filename", prefix="some-prefix", data=b"some-data")


def test_successful_upload_is_forwarded_and_counted():
    registry = Registry()
    inner = FakeStorage()
    sut = StorageWithMetrics(inner, registry, "flow-a")
    work = _work()

    result = sut.upload(work)

    assert result.path == "some-filename"
    assert inner.received == [work]
    labels = ("fake", "fake-name", "flow-a")
    assert registry.get(UPLOADS).value(*labels) == registry.get(SUCCESSES).value(*labels)
    assert registry.get(LATENCY).count(*labels) == registry.get(UPLOADS).value(*labels)
    assert registry.get(ERRORS).value(*labels) == 0


def test_failed_upload_reraises_and_counts_error():
    registry = Registry()
    sut = StorageWithMetrics(FakeStorage(fail=True), registry, "flow-a")

    with pytest.raises(StorageError, match="upload broke"):
        sut.upload(_work())

    labels = ("fake", "fake-name", "flow-a")
    assert registry.get(ERRORS).value(*labels) == 1
    assert registry.get(UPLOADS).value(*labels) == registry.get(ERRORS).value(*labels)
    assert registry.get(SUCCESSES).value(*labels) == registry.get(SUCCESSES).value("x", "y", "z")


def test_wrapper_exposes_wrapped_type_and_name():
    sut = StorageWithMetrics(FakeStorage(), Registry(), "flow-a")
    assert (sut.storage_type, sut.name, sut.flow) == ("fake", "fake-name", "flow-a")


def test_create_localstorage_writes_file(tmp_path):
    registry = Registry()
    sut = create_storage("localstorage", {"path": str(tmp_path)}, registry, "flow-b")

    result = sut.upload(_work())

    assert sut.storage_type == "localstorage"
    assert (tmp_path / "some-prefix" / "some-filename").read_bytes() == b"some-data"
    assert result.bucket == "localstorage"
    assert registry.get(SUCCESSES).value("localstorage", "localstorage", "flow-b") == 1


def test_create_s3_uses_bucket_name():
    sut = create_storage("s3", {"bucket": "some-s3-bucket-name", "region": "some-s3-region"}, Registry(), "f")
    assert sut.storage_type == "s3"
    assert sut.name == "some-s3-bucket-name"


def test_create_httpstorage_rejects_bad_url():
    with pytest.raises(ConfigError, match="httpstorage"):
        create_storage("httpstorage", {"url": "without-http-start"}, Registry(), "f")


def test_create_localstorage_rejects_missing_directory(tmp_path):
    with pytest.raises(ConfigError, match="localstorage"):
        create_storage("localstorage", {"path": str(tmp_path / "missing")}, Registry(), "f")


def test_invalid_type_raises():
    with pytest.raises(ConfigError, match="invalid object storage type nope"):
        create_storage("nope", {}, Registry(), "f")


def test_registry_is_shared_between_flows(tmp_path):
    registry = Registry()
    first = create_storage("localstorage", {"path": str(tmp_path)}, registry, "flow-1")
    second = create_storage("localstorage", {"path": str(tmp_path)}, registry, "flow-2")

    first.upload(_work())
    first.upload(_work())
    second.upload(_work())

    counter = registry.get(UPLOADS)
    first_count = counter.value("localstorage", "localstorage", "flow-1")
    second_count = counter.value("localstorage", "localstorage", "flow-2")
    assert first_count == 2 * second_count