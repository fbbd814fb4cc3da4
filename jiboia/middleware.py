"""WSGI middlewares: bearer-token auth, access logging, request metrics and panic recovery."""

from __future__ import annotations

import logging
import sys
import time
from http import HTTPStatus
from typing import Callable, Iterable

from jiboia.metrics import Counter, Histogram, Registry

_NAMESPACE = "jiboia"
_SUBSYSTEM = "http"
_LATENCY_BUCKETS = (0.1, 0.2, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 60.0, 120.0)

WsgiApp = Callable[[dict, Callable], Iterable[bytes]]


def _status_line(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return f"{code} Unknown"


def _empty_response(start_response, code: int, exc_info=None) -> list[bytes]:
    start_response(_status_line(code), [("Content-Length", "0")], exc_info)
    return [b""]


class _ResponseRecorder:
    """A start_response wrapper that remembers the status code and body size."""

    def __init__(self, start_response) -> None:
        self._start_response = start_response
        self.started = False
        self.status_code = 0
        self.response_size = 0

    def __call__(self, status: str, headers, exc_info=None):
        self.started = True
        self.status_code = int(status.split(None, 1)[0])
        write = self._start_response(status, headers, exc_info)

        def counted_write(data: bytes):
            self.response_size += len(data)
            return write(data)

        return counted_write

    def run(self, app: WsgiApp, environ: dict) -> list[bytes]:
        """Call the app and collect its whole body."""
        app_iter = app(environ, self)
        try:
            chunks = list(app_iter)
        finally:
            close = getattr(app_iter, "close", None)
            if close is not None:
                close()
        self.response_size += sum(len(chunk) for chunk in chunks)
        return chunks


def auth(token: str) -> Callable[[WsgiApp], WsgiApp]:
    """Return a decorator that rejects requests lacking ``Authorization: Bearer <token>``."""
    expected = f"Bearer {token}"

    def decorator(app: WsgiApp) -> WsgiApp:
        def authenticated(environ, start_response):
            if environ.get("HTTP_AUTHORIZATION", "") != expected:
                return _empty_response(start_response, HTTPStatus.UNAUTHORIZED)
            return app(environ, start_response)

        return authenticated

    return decorator


class LoggingMiddleware:
    """Logs one line per answered request."""

    def __init__(self, app: WsgiApp, logger: logging.Logger | logging.LoggerAdapter | None = None) -> None:
        self._app = app
        self._log = logger or logging.getLogger(__name__)

    def __call__(self, environ, start_response):
        started = time.perf_counter()
        recorder = _ResponseRecorder(start_response)
        body = recorder.run(self._app, environ)
        self._log.info(
            "HTTP response method=%s path=%s status=%d size=%d from=%s latency_time=%.6fs",
            environ.get("REQUEST_METHOD", ""),
            environ.get("PATH_INFO", ""),
            recorder.status_code,
            recorder.response_size,
            environ.get("REMOTE_ADDR", ""),
            time.perf_counter() - started,
        )
        return body


def _collector(registry: Registry, factory, name: str, help: str, labelnames, **kwargs):
    full_name = f"{_NAMESPACE}_{_SUBSYSTEM}_{name}"
    try:
        return registry.get(full_name)
    except KeyError:
        metric = factory(name, help, labelnames, namespace=_NAMESPACE, subsystem=_SUBSYSTEM, **kwargs)
        registry.register(metric)
        return metric


class MetricsMiddleware:
    """Counts requests by code, method and path and records their latency by path."""

    def __init__(self, app: WsgiApp, registry: Registry) -> None:
        self._app = app
        self._requests = _collector(
            registry, Counter, "requests_total", "How many HTTP requests processed.", ("code", "method", "path")
        )
        self._latency = _collector(
            registry,
            Histogram,
            "request_duration_seconds",
            "Latency of HTTP requests, in seconds.",
            ("path",),
            buckets=_LATENCY_BUCKETS,
        )

    def __call__(self, environ, start_response):
        started = time.perf_counter()
        recorder = _ResponseRecorder(start_response)
        body = recorder.run(self._app, environ)
        path = environ.get("PATH_INFO", "")
        self._latency.labels(path).observe(time.perf_counter() - started)
        self._requests.labels(str(recorder.status_code), environ.get("REQUEST_METHOD", ""), path).inc()
        return body


class Recoverer:
    """Turns an unhandled exception of the wrapped app into a 500 answer."""

    def __init__(self, app: WsgiApp, logger: logging.Logger | logging.LoggerAdapter | None = None) -> None:
        self._app = app
        self._log = logger or logging.getLogger(__name__)

    def __call__(self, environ, start_response):
        recorder = _ResponseRecorder(start_response)
        try:
            return recorder.run(self._app, environ)
        except Exception as err:
            self._log.error("captured panic on HTTP request: %s", err, exc_info=True)
            exc_info = sys.exc_info() if recorder.started else None
            return _empty_response(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, exc_info)