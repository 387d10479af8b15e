#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Cross-cutting wrappers around the service objects.

Both wrappers proxy every public callable of the wrapped service and only
look at (method name, arguments, result type, error, latency, trace id);
neither knows the domain types.
"""

import time
import uuid
from functools import wraps

from flask import g, has_request_context, request
from prometheus_client import CollectorRegistry, Counter, Summary

TRACE_HEADER = "Uber-Trace-Id"
_MAX_LOGGED_ARG = 64


def current_trace_id() -> str:
    if not has_request_context():
        return ""
    trace_id = getattr(g, "trace_id", None)
    if not trace_id:
        header = request.headers.get(TRACE_HEADER, "")
        trace_id = header.split(":", 1)[0] if header else uuid.uuid4().hex
        g.trace_id = trace_id
    return trace_id


def _describe(value):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= _MAX_LOGGED_ARG else f"<str len={len(value)}>"
    return f"<{type(value).__name__}>"


class _Proxy:
    def __init__(self, service):
        self._service = service

    def __getattr__(self, name):
        attr = getattr(self._service, name)
        if name.startswith("_") or not callable(attr):
            return attr
        return self._wrap(name, attr)

    def _wrap(self, name, func):
        raise NotImplementedError


class LoggingMiddleware(_Proxy):
    def __init__(self, service, logger):
        super().__init__(service)
        self._logger = logger

    def _wrap(self, name, func):
        logger = self._logger

        @wraps(func)
        def logged(*args, **kwargs):
            begin = time.perf_counter()
            err = None
            result = None
            try:
                result = func(*args, **kwargs)
                return result
            except Exception as e:
                err = e
                raise
            finally:
                fields = {
                    "method": name,
                    "took_ms": round((time.perf_counter() - begin) * 1000, 3),
                    "trace_id": current_trace_id(),
                    "args": [_describe(a) for a in args],
                    "kwargs": {k: _describe(v) for k, v in kwargs.items()},
                    "error": None if err is None else f"{type(err).__name__}: {err}",
                    "result": None if err is not None else type(result).__name__,
                }
                logger.info(name, extra={"fields": fields})
        return logged


class ServiceMetrics:
    def __init__(self, registry: CollectorRegistry, namespace="enroller", subsystem="enroller_service"):
        labels = ["method", "error"]
        self.request_count = Counter(
            "request_count", "Number of requests received.", labels,
            namespace=namespace, subsystem=subsystem, registry=registry,
        )
        self.request_latency = Summary(
            "request_latency_microseconds", "Total duration of requests in microseconds.", labels,
            namespace=namespace, subsystem=subsystem, registry=registry,
        )


class InstrumentingMiddleware(_Proxy):
    def __init__(self, service, metrics: ServiceMetrics):
        super().__init__(service)
        self._metrics = metrics

    def _wrap(self, name, func):
        metrics = self._metrics

        @wraps(func)
        def instrumented(*args, **kwargs):
            begin = time.perf_counter()
            failed = True
            try:
                result = func(*args, **kwargs)
                failed = False
                return result
            finally:
                labels = {"method": name, "error": str(failed).lower()}
                metrics.request_count.labels(**labels).inc()
                metrics.request_latency.labels(**labels).observe((time.perf_counter() - begin) * 1e6)
        return instrumented
