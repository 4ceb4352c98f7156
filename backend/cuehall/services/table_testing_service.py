# Overview: Light test mode; puts a table in MAINTENANCE for a few seconds and reverts it.

"""
Table Light Testing

start: AVAILABLE (or an already running test) -> MAINTENANCE, LIGHT_ON, and
       an auto-revert timer keyed by table id
stop:  MAINTENANCE -> AVAILABLE, LIGHT_OFF, timer cancelled

Each timer entry carries a token. Starting a new cycle replaces (and
cancels) the prior entry; a callback that fires after being superseded
finds its token gone and does nothing.
"""

from __future__ import annotations

import threading
import uuid
from typing import Callable

from flask import Flask, current_app

from ..extensions import db, test_timers
from ..models.iot import COMMAND_LIGHT_OFF, COMMAND_LIGHT_ON
from ..models.tables import TABLE_AVAILABLE, TABLE_MAINTENANCE
from ..validation import ConflictError, StateError, ValidationError, parse_positive_int
from . import command_service
from .concurrency import transition_table_status
from .table_service import get_table


TimerFactory = Callable[[float, Callable[[], None]], object]


class TableTestingCoordinator:
    def __init__(self, app: Flask, timer_factory: TimerFactory | None = None):
        self.app = app
        self.timer_factory = timer_factory or self._daemon_timer

    @staticmethod
    def _daemon_timer(seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(seconds, callback)
        timer.daemon = True
        return timer

    def _duration(self, duration_seconds) -> int:
        if duration_seconds is None:
            return int(self.app.config["TABLE_TEST_DEFAULT_SECONDS"])
        seconds = parse_positive_int(duration_seconds, "durationSeconds")
        limit = int(self.app.config["TABLE_TEST_MAX_SECONDS"])
        if seconds > limit:
            raise ValidationError(f"durationSeconds cannot exceed {limit}")
        return seconds

    def start_testing(self, table_id: int, duration_seconds=None) -> dict:
        seconds = self._duration(duration_seconds)
        table = get_table(table_id)
        if not table.is_active:
            raise StateError("Table is not active")

        if table.status == TABLE_AVAILABLE:
            if not transition_table_status(table.id, TABLE_AVAILABLE, TABLE_MAINTENANCE):
                db.session.rollback()
                raise ConflictError("Table was taken by another request")
            db.session.commit()
        elif table.status != TABLE_MAINTENANCE:
            raise ConflictError(f"Table is {table.status}")

        token = uuid.uuid4().hex
        timer = self.timer_factory(seconds, lambda: self._auto_revert(table.id, token))
        test_timers.replace(table.id, token, timer)
        timer.start()

        command_service.send_command(table.id, COMMAND_LIGHT_ON)
        current_app.logger.info("Light test started on table %s for %ss", table.id, seconds)

        return {"table_id": table.id, "status": TABLE_MAINTENANCE, "duration_seconds": seconds}

    def stop_testing(self, table_id: int) -> dict:
        table = get_table(table_id)
        test_timers.cancel(table.id)

        if not transition_table_status(table.id, TABLE_MAINTENANCE, TABLE_AVAILABLE):
            db.session.rollback()
            raise StateError("Table is not in testing mode")
        db.session.commit()

        command_service.send_command(table.id, COMMAND_LIGHT_OFF)
        current_app.logger.info("Light test stopped on table %s", table.id)

        return {"table_id": table.id, "status": TABLE_AVAILABLE}

    def _auto_revert(self, table_id: int, token: str) -> None:
        if not test_timers.pop_if(table_id, token):
            return

        with self.app.app_context():
            try:
                if transition_table_status(table_id, TABLE_MAINTENANCE, TABLE_AVAILABLE):
                    db.session.commit()
                    command_service.send_command(table_id, COMMAND_LIGHT_OFF)
                else:
                    db.session.rollback()
            except Exception:
                db.session.rollback()
                self.app.logger.exception("Failed to revert light test on table %s", table_id)


def get_coordinator() -> TableTestingCoordinator:
    return current_app.extensions["table_testing"]
