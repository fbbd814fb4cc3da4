# jiboia

jiboia is a set of building blocks for an ingestion pipeline. Data is
received over HTTP. Small payloads are grouped into larger chunks, and
each chunk is uploaded to an object storage. Each upload is then
announced on an external queue, so consumers fetch fewer, larger files.

## Modules

| Module | What it holds |
| --- | --- |
| `jiboia.httpapi` | `Api` (a WSGI application and server), `IngestionRoute`, `IngestionFlow`, `select_decompression_algorithm`, `decompress` |
| `jiboia.middleware` | WSGI middlewares: `auth(token)`, `LoggingMiddleware`, `MetricsMiddleware`, `Recoverer` |
| `jiboia.accumulator` | `Accumulator` and its errors `AccumulatorError`, `QueueFullError`, `ShuttingDownError` |
| `jiboia.domain` | `WorkUnit`, `UploadResult`, `MessageContext`, `StorageError`, `ConfigError` |
| `jiboia.storage` | `create_storage` and `StorageWithMetrics` |
| `jiboia.localstorage` | `LocalStorage`, `LocalStorageConfig`, `parse_config` |
| `jiboia.httpstorage` | `HttpStorage`, `HttpStorageConfig`, `parse_config`, `validate_url`, `assemble_url` |
| `jiboia.s3` | `Bucket`, `S3Config`, `parse_config`, `merge_parts` |
| `jiboia.extqueue` | `create_external_queue` and `ExternalQueueWithMetrics` |
| `jiboia.sqs` | `SqsQueue`, `SqsConfig`, `parse_config` |
| `jiboia.noopqueue` | `NoopExternalQueue` |
| `jiboia.awsclient` | `S3Client`, `SqsClient`, `sign_request` (AWS Signature Version 4) |
| `jiboia.metrics` | `Registry`, `Counter`, `Gauge`, `Histogram` |

## HTTP API

`Api(flows, registry=None, version="", port=9099, payload_size_limit=0, logger=None, host="0.0.0.0")`
serves these routes:

* `POST /<flow>/async_ingestion` and `POST /v1/<flow>/async_ingestion`
  for each `IngestionFlow`. The body is passed to the flow's
  `entrypoint.enqueue(data)`.
* `GET /version`, which returns `{"version": "<version>"}` as JSON.
* `GET /healthy` and `GET /ready`, which always answer 200.
* `/metrics`, which returns the registry's text exposition.

`Api.serve()` listens on the configured host and port until
`Api.shutdown()` is called. An `Api` is also a WSGI application in
itself, so it can run under any WSGI server.

An `IngestionFlow` holds:

* `name`
* `entrypoint`
* `token`: when set, requests must carry `Authorization: Bearer token`,
  with the flow's token in place of the word `token`. Any other value
  gets 401.
* `decompression_algorithms`: a subset of `gzip`, `zlib` and `deflate`.
  A body whose `Content-Encoding` names one of them is decompressed
  before it is enqueued.
* `decompression_max_concurrency`: the number of decompressions that
  may run at once. 0 means no limit.
* `decompression_initial_buffer_size_bytes`
* `circuit_breaker`: an optional object whose `allow()` returns a
  callback that is given the outcome. `allow()` raises while the
  circuit is open.

An ingestion request is answered with these status codes:

* 200: the body was enqueued.
* 400: the body was empty, could not be read, or could not be
  decompressed.
* 413: the body is larger than `payload_size_limit` (only checked when
  the limit is above 0).
* 500: the circuit breaker is open or the entrypoint raised.

## The accumulator

```python
Accumulator(flow_name, limit_of_bytes, separator, queue_capacity, next_step,
            circuit_breaker=None, registry=None, logger=None)
```

The constructor raises `ValueError` in these cases:

* `limit_of_bytes` is below 2;
* the separator is not shorter than the limit;
* `queue_capacity` is below 2.

`enqueue(data)` never blocks. It raises `QueueFullError` when the
internal queue is full and `ShuttingDownError` once shutdown has begun.

`run(stop_event)` is meant to run in its own thread. It joins payloads
with the separator until adding the next one would go over
`limit_of_bytes`, and then hands the merged chunk to
`next_step.enqueue(chunk)`. A chunk that reaches the limit exactly is
sent at once. A payload at or over the limit is sent alone, after the
pending chunk. Empty payloads are dropped.

When `next_step` raises, the chunk is retried every 10 ms until it
succeeds. When a `circuit_breaker` is given, every attempt goes through
`circuit_breaker.call(func)`. After `stop_event` is set, `run` drains
the queue, flushes the last chunk and returns.

## Storages and queues

```python
from jiboia.domain import MessageContext, WorkUnit
from jiboia.extqueue import create_external_queue
from jiboia.metrics import Registry
from jiboia.storage import create_storage

registry = Registry()
storage = create_storage("localstorage", {"path": "/tmp"}, registry, "my-flow")
queue = create_external_queue("noop", None, registry, "my-flow")

result = storage.upload(WorkUnit(filename="chunk-1", prefix="2024/01", data=b"payload"))
queue.enqueue(MessageContext.from_upload(result))
```

The storage types are `localstorage`, `httpstorage` and `s3`. The queue
types are `noop` and `sqs`. An unknown type or bad settings raise
`ConfigError`. A failed upload raises `StorageError`. Both wrappers
record totals, successes, errors and latency in the registry.

Each type reads these settings:

* `localstorage`: `path`, which must be an existing directory. Files are
  written to `<path>/<prefix>/<filename>`, and directories are created
  as needed.
* `httpstorage`: `url`. Each chunk is POSTed to it, and any answer
  outside 2xx is an error.
* `s3`: `bucket`, `region`, `endpoint`, `prefix`,
  `timeout_milliseconds`, `force_path_style`, `access_key`,
  `secret_key`.
* `sqs`: `url` (required), `region`, `endpoint`, `access_key`,
  `secret_key`.

When no keys are configured, the S3 and SQS clients take them from
`AWS_ACCESS_KEY_ID`, `AWS_SECRET_ACCESS_KEY` and `AWS_SESSION_TOKEN`.
The region comes from the settings, then from `AWS_REGION`, and
otherwise defaults to `us-east-1`.

### HTTP storage URLs

An HTTP storage URL must start with `http`. It may hold at most one
`%s`, and a `/` must come right before it. The `%s` is replaced by
`<prefix>/<filename>`:

```python
from jiboia.httpstorage import assemble_url

assemble_url("http://storage.example.com/upload/%s", "some-prefix", "some-filename")
# ("http://storage.example.com/upload/some-prefix/some-filename",
#  "some-prefix/some-filename")
```

### S3 keys

An S3 key joins the bucket's fixed prefix, the work unit's prefix and
the file name, with no duplicate or outer slashes:

```python
from jiboia.s3 import merge_parts

merge_parts("/abc/", "/def/", "/something/")  # "abc/def/something"
merge_parts("", "", "something")             # "something"
```

### SQS messages

Each SQS message is compact JSON. It holds:

* `schema_version` (`0.0.1`);
* `flow_name`;
* `bucket`, with `name` and `region`;
* `object`, with `path`, `full_url`, `size_in_bytes`, and
  `compression_algorithm` only when it is set.

## What the package does not do

The package has no command-line program and no configuration file
format for a whole pipeline. It does not connect the pieces for you:
you build the `Api`, the accumulators, the storages and the queues
yourself and wire them together. Nothing in the package takes the
accumulator's chunks, uploads them and enqueues the result. The
`next_step` you give the accumulator must do that.

It ships no circuit breaker, only the `call` and `allow` shapes it
expects. It does not compress uploaded data and does not trace
requests.