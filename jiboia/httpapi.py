"""HTTP API: per-flow ingestion routes plus operational routes."""

from __future__ import annotations

import contextlib
import json
import logging
import threading
import time
import zlib
from dataclasses import dataclass
from http import HTTPStatus
from typing import Callable, Protocol, Sequence

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from jiboia.metrics import Counter, Histogram, Registry
from jiboia.middleware import LoggingMiddleware, MetricsMiddleware, Recoverer, auth

API_COMPONENT_TYPE = "api"
API_VERSION = "v1"
DEFAULT_PORT = 9099
_NAMESPACE = "jiboia"
_SUBSYSTEM = "http"
_SHUTDOWN_GRACE_SECONDS = 5.0
_DEFAULT_INITIAL_BUFFER = 512
_READ_CHUNK = 64 * 1024
_SIZE_BUCKETS = (0, 1024, 524288, 1048576, 2621440, 5242880, 10485760, 52428800, 104857600)
_DECOMPRESSION_BUCKETS = (5.0, 10.0, 25.0, 50.0, 125.0, 250.0, 500.0, 1000.0, 5000.0, 30000.0)
_WBITS = {
    "gzip": 16 + zlib.MAX_WBITS,
    "zlib": zlib.MAX_WBITS,
    "deflate": -zlib.MAX_WBITS,
}


class DataEnqueuer(Protocol):
    def enqueue(self, data: bytes) -> None: ...


class CircuitBreaker(Protocol):
    def allow(self) -> Callable[[bool], None]:
        """Return a callback reporting the outcome; raise when the circuit is open."""
        ...


@dataclass
class IngestionFlow:
    """What the API needs to know about one flow."""

    name: str
    entrypoint: DataEnqueuer
    token: str = ""
    decompression_algorithms: Sequence[str] = ()
    decompression_max_concurrency: int = 0
    decompression_initial_buffer_size_bytes: int = _DEFAULT_INITIAL_BUFFER
    circuit_breaker: CircuitBreaker | None = None


def select_decompression_algorithm(accepted, content_encodings) -> str:
    """Return the first content encoding that is accepted, or an empty string."""
    if not accepted or not content_encodings:
        return ""
    for encoding in content_encodings:
        if encoding in accepted:
            return encoding
    return ""


def decompress(data: bytes, algorithm: str, initial_buffer_size: int = _DEFAULT_INITIAL_BUFFER) -> bytes:
    """Decompress ``data``; the output buffer starts at ``initial_buffer_size`` and grows."""
    try:
        wbits = _WBITS[algorithm]
    except KeyError:
        raise ValueError(f"unsupported compression algorithm {algorithm}") from None

    out = bytearray()
    capacity = max(initial_buffer_size, 1)
    pending = bytes(data)
    try:
        while True:
            engine = zlib.decompressobj(wbits)
            while True:
                room = max(capacity - len(out), 1)
                out += engine.decompress(pending, room)
                pending = engine.unconsumed_tail
                if len(out) >= capacity:
                    capacity *= 2
                if not pending:
                    break
            out += engine.flush()
            if not engine.eof:
                raise ValueError("error decompressing data: unexpected end of data")
            pending = engine.unused_data
            if not pending or algorithm != "gzip":
                break
    except zlib.error as err:
        raise ValueError(f"error decompressing data: {err}") from err
    return bytes(out)


def _collector(registry: Registry, factory, name: str, help: str, labelnames, **kwargs):
    full_name = f"{_NAMESPACE}_{_SUBSYSTEM}_{name}"
    try:
        return registry.get(full_name)
    except KeyError:
        metric = factory(name, help, labelnames, namespace=_NAMESPACE, subsystem=_SUBSYSTEM, **kwargs)
        registry.register(metric)
        return metric


class _ApiMetrics:
    def __init__(self, registry: Registry) -> None:
        self.body_size = _collector(
            registry,
            Histogram,
            "request_body_size_bytes",
            "The size in bytes of (received) request body",
            ("path",),
            buckets=_SIZE_BUCKETS,
        )
        self.errors = _collector(
            registry,
            Counter,
            "request_errors_total",
            "Information about which type of error happened on HTTP request",
            ("error_type", "path"),
        )
        self.decompression_latency = _collector(
            registry,
            Histogram,
            "decompression_duration_millis",
            "The time it took to decompress the incoming payload, in milliseconds",
            ("path",),
            buckets=_DECOMPRESSION_BUCKETS,
        )
        self.decompressions = _collector(
            registry,
            Counter,
            "decompression_total",
            "Counter for the total decompressions performed, be it successful or not",
            ("type",),
        )

    def error(self, error_type: str, path: str) -> None:
        self.errors.labels(error_type, path).inc()


class _BodyTooLarge(Exception):
    def __init__(self, read: int) -> None:
        super().__init__(f"request body exceeds limit after {read} bytes")
        self.read = read


def _empty(code: int) -> Response:
    return Response(status=code)


def _ignore_outcome(_: bool) -> None:
    pass


class IngestionRoute:
    """Reads a request body, optionally decompresses it and enqueues it on a flow."""

    def __init__(
        self,
        flow: IngestionFlow,
        registry: Registry | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        max_body_size: int = 0,
    ) -> None:
        self._flow = flow
        self._accepted = frozenset(flow.decompression_algorithms)
        if flow.decompression_max_concurrency > 0:
            self._semaphore = threading.BoundedSemaphore(flow.decompression_max_concurrency)
        else:
            self._semaphore = contextlib.nullcontext()
        self._buffer_size = flow.decompression_initial_buffer_size_bytes
        self._max_body_size = max_body_size
        self._metrics = _ApiMetrics(registry if registry is not None else Registry())
        self._log = logger or logging.getLogger(__name__)

    def _read_body(self, request: Request) -> bytes:
        limit = self._max_body_size
        if limit > 0 and request.content_length is not None and request.content_length > limit:
            raise _BodyTooLarge(0)
        chunks = []
        total = 0
        stream = request.stream
        while True:
            chunk = stream.read(_READ_CHUNK)
            if not chunk:
                break
            chunks.append(chunk)
            total += len(chunk)
            if limit > 0 and total > limit:
                raise _BodyTooLarge(total)
        return b"".join(chunks)

    def __call__(self, request: Request) -> Response:
        path = request.path
        done = _ignore_outcome
        if self._flow.circuit_breaker is not None:
            try:
                done = self._flow.circuit_breaker.allow()
            except Exception:
                self._metrics.error("circuit_breaker_open", path)
                return _empty(HTTPStatus.INTERNAL_SERVER_ERROR)

        try:
            data = self._read_body(request)
        except _BodyTooLarge as err:
            self._metrics.body_size.labels(path).observe(err.read)
            self._metrics.error("request_entity_too_large", path)
            return _empty(HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
        except (OSError, HTTPException) as err:
            self._metrics.body_size.labels(path).observe(0)
            self._log.warning("error reading body: %s", err)
            self._metrics.error("error_reading_body", path)
            return _empty(HTTPStatus.BAD_REQUEST)

        self._metrics.body_size.labels(path).observe(len(data))
        if not data:
            self._log.warning("request without body, ignoring")
            self._metrics.error("request_without_body", path)
            return _empty(HTTPStatus.BAD_REQUEST)

        self._log.debug("data received on async handler, length %d", len(data))

        encodings = [
            part.strip()
            for value in request.headers.getlist("Content-Encoding")
            for part in value.split(",")
            if part.strip()
        ]
        algorithm = select_decompression_algorithm(self._accepted, encodings)
        if algorithm:
            self._metrics.decompressions.labels(algorithm).inc()
            started = time.perf_counter()
            try:
                with self._semaphore:
                    data = decompress(data, algorithm, self._buffer_size)
            except ValueError as err:
                self._log.warning("failed to decompress data with %s: %s", algorithm, err)
                self._metrics.error("enqueue_failed", path)
                return _empty(HTTPStatus.BAD_REQUEST)
            elapsed_millis = int((time.perf_counter() - started) * 1000)
            self._metrics.decompression_latency.labels(path).observe(elapsed_millis)

        try:
            self._flow.entrypoint.enqueue(data)
        except Exception as err:
            self._log.warning("failed while enqueueing data from http request: %s", err)
            self._metrics.error("enqueue_failed", path)
            done(False)
            return _empty(HTTPStatus.INTERNAL_SERVER_ERROR)

        done(True)
        return _empty(HTTPStatus.OK)


def _as_wsgi(handler: Callable[[Request], Response]):
    def app(environ, start_response):
        return handler(Request(environ))(environ, start_response)

    return app


class Api:
    """The HTTP server: ingestion routes per flow plus version, metrics and health routes."""

    def __init__(
        self,
        flows: Sequence[IngestionFlow],
        registry: Registry | None = None,
        version: str = "",
        port: int = DEFAULT_PORT,
        payload_size_limit: int = 0,
        logger: logging.Logger | None = None,
        host: str = "0.0.0.0",
    ) -> None:
        if payload_size_limit < 0:
            raise ValueError("payload size limit cannot be negative")
        self.port = port
        self.host = host
        self._registry = registry if registry is not None else Registry()
        self._log = logging.LoggerAdapter(
            logger or logging.getLogger(__name__), {"component": API_COMPONENT_TYPE}
        )
        self._version = version
        self._server = None
        self._server_lock = threading.Lock()

        rules: list[Rule] = []
        self._endpoints: dict[str, Callable] = {}
        for index, flow in enumerate(flows):
            route = IngestionRoute(flow, self._registry, self._log, payload_size_limit)
            handler = _as_wsgi(route)
            if flow.token:
                handler = auth(flow.token)(handler)
            endpoint = f"ingest:{index}"
            self._endpoints[endpoint] = handler
            path = f"/{flow.name}/async_ingestion"
            rules.append(Rule(path, endpoint=endpoint, methods=["POST"]))
            rules.append(Rule(f"/{API_VERSION}{path}", endpoint=endpoint, methods=["POST"]))

        self._endpoints["version"] = _as_wsgi(self._version_handler)
        self._endpoints["metrics"] = _as_wsgi(self._metrics_handler)
        self._endpoints["healthy"] = _as_wsgi(lambda _request: _empty(HTTPStatus.OK))
        self._endpoints["ready"] = _as_wsgi(lambda _request: _empty(HTTPStatus.OK))
        rules.append(Rule("/version", endpoint="version", methods=["GET"]))
        rules.append(Rule("/metrics", endpoint="metrics"))
        rules.append(Rule("/healthy", endpoint="healthy", methods=["GET"]))
        rules.append(Rule("/ready", endpoint="ready", methods=["GET"]))
        self._url_map = Map(rules, strict_slashes=False, merge_slashes=False)

        app = Recoverer(self._dispatch, self._log)
        app = MetricsMiddleware(app, self._registry)
        self._app = LoggingMiddleware(app, self._log)

    def _version_handler(self, _request: Request) -> Response:
        body = json.dumps({"version": self._version}, separators=(",", ":"))
        return Response(body, status=HTTPStatus.OK, mimetype="application/json")

    def _metrics_handler(self, _request: Request) -> Response:
        return Response(
            self._registry.expose(),
            status=HTTPStatus.OK,
            content_type="text/plain; version=0.0.4; charset=utf-8",
        )

    def _dispatch(self, environ, start_response):
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, _ = adapter.match()
        except HTTPException as err:
            return err(environ, start_response)
        return self._endpoints[endpoint](environ, start_response)

    def __call__(self, environ, start_response):
        return self._app(environ, start_response)

    def serve(self) -> None:
        """Listen on the configured port and serve until shut down."""
        self._log.info("starting HTTP server on port %d", self.port)
        try:
            server = make_server(self.host, self.port, self, threaded=True)
        except OSError as err:
            raise OSError(f"when serving HTTP: {err}") from err
        with self._server_lock:
            self._server = server
        server.serve_forever()

    def shutdown(self) -> None:
        """Stop serving, waiting a short grace period for the loop to end."""
        with self._server_lock:
            server, self._server = self._server, None
        if server is None:
            return
        stopper = threading.Thread(target=server.shutdown, daemon=True)
        stopper.start()
        stopper.join(_SHUTDOWN_GRACE_SECONDS)
        server.server_close()