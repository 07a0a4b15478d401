"""Gunicorn settings for the billing API.

    gunicorn -c gunicorn.conf.py billing_engine.main:app

The webhook endpoint must answer the processor quickly, so workers are kept
modest and requests that run past BILLING_WORKER_TIMEOUT are killed rather
than left to pile up behind a slow gateway call.
"""
from __future__ import annotations

import multiprocessing
import os

bind = os.getenv("BILLING_BIND", "0.0.0.0:8000")
worker_class = "uvicorn.workers.UvicornWorker"
workers = int(os.getenv("BILLING_WORKERS", str(min(multiprocessing.cpu_count() * 2, 8))))

# Gateway calls retry with backoff; leave headroom for the worst case.
timeout = int(os.getenv("BILLING_WORKER_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("BILLING_GRACEFUL_TIMEOUT", "20"))
keepalive = 5

max_requests = int(os.getenv("BILLING_MAX_REQUESTS", "2000"))
max_requests_jitter = 100

# Logs go to the container streams; app logs are already JSON.
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "billing-engine-api"


def on_starting(server):
    server.log.info("Billing API starting on %s with %d workers", bind, workers)


def worker_abort(worker):
    worker.log.warning("Billing worker %s aborted after %ss timeout", worker.pid, timeout)
