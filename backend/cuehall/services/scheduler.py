# Overview: In-process periodic jobs (billing sweep, nonce janitor) driven by threading.Timer.

"""
Background Jobs

A PeriodicJob re-arms a daemon threading.Timer after each run, so runs never
overlap. Every run gets a fresh app context; exceptions are logged and the
chain keeps going.

Only one process should run these (single authoritative server).
"""

from __future__ import annotations

import threading
from typing import Callable

from flask import Flask


class PeriodicJob:
    def __init__(self, app: Flask, name: str, interval_seconds: float, func: Callable[[], object]):
        self.app = app
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._timer: threading.Timer | None = None
        self._stopped = threading.Event()
        self._lock = threading.Lock()

    def _schedule(self) -> None:
        with self._lock:
            if self._stopped.is_set():
                return
            self._timer = threading.Timer(self.interval_seconds, self._run)
            self._timer.daemon = True
            self._timer.start()

    def _run(self) -> None:
        try:
            with self.app.app_context():
                self.func()
        except Exception:
            self.app.logger.exception("Background job %s failed", self.name)
        finally:
            self._schedule()

    def start(self) -> "PeriodicJob":
        self._stopped.clear()
        self._schedule()
        self.app.logger.info("Background job %s started (every %ss)", self.name, self.interval_seconds)
        return self

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


def start_background_jobs(app: Flask) -> list[PeriodicJob]:
    """Start the billing sweep and nonce janitor for this process."""
    from .device_auth_service import purge_nonces
    from .expiry_service import run_sweep

    jobs = [
        PeriodicJob(app, "billing-sweep", app.config["BILLING_SWEEP_INTERVAL_SECONDS"], run_sweep),
        PeriodicJob(app, "nonce-purge", app.config["IOT_NONCE_PURGE_INTERVAL_SECONDS"], purge_nonces),
    ]
    for job in jobs:
        job.start()
    return jobs
