"""Prometheus metrics exposed by every service at ``/metrics``."""
from fastapi import FastAPI
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator


def add_metrics(app: FastAPI) -> Instrumentator:
    # Each app gets its own registry so several services can run in one process.
    instrumentator = Instrumentator(registry=CollectorRegistry(), excluded_handlers=["/metrics"])
    instrumentator.instrument(app).expose(app, include_in_schema=False)
    return instrumentator
