# Overview: Periodic billing sweep; auto-completes overdue sessions and sends blink warnings.

"""
Expiry Sweep

Runs on a fixed interval outside any request (see scheduler.py) and from
`flask billing sweep`.

1. auto-complete: ACTIVE, not open-ended, end_time <= now
   -> same terminal transition as a manual stop, flagged auto_completed,
      then LIGHT_OFF
2. advance warning: ACTIVE, not open-ended, blink_command_sent = false,
   end_time within the lead window -> BLINK_3X, flag set

Each session is processed in its own transaction. A failure is rolled back,
logged and skipped; the rest of the batch still runs.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import BillingSession
from ..models.billing import OPEN_ENDED_RATE_TYPES, SESSION_ACTIVE
from ..models.iot import COMMAND_BLINK_3X, COMMAND_LIGHT_OFF
from . import command_service
from .billing_service import apply_completion
from cuehall.time_utils import utcnow


DEFAULT_WARNING_LEAD_MINUTES = 5


def _candidates():
    return db.session.query(BillingSession.id).filter(
        BillingSession.status == SESSION_ACTIVE,
        BillingSession.rate_type.notin_(OPEN_ENDED_RATE_TYPES),
    )


def auto_complete_expired(now: datetime | None = None) -> list[int]:
    """Complete every overdue session. Returns the ids that were completed."""
    now = now or utcnow()
    ids = [row.id for row in _candidates().filter(BillingSession.end_time <= now).all()]

    completed = []
    for session_id in ids:
        try:
            session = db.session.get(BillingSession, session_id)
            if session is None or session.status != SESSION_ACTIVE or session.end_time > now:
                continue

            apply_completion(session, now, auto=True)
            db.session.commit()
            completed.append(session.id)
            table_id = session.table_id
            current_app.logger.info("Auto-completed billing session %s on table %s", session_id, table_id)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to auto-complete billing session %s", session_id)
            continue

        try:
            command_service.send_command(table_id, COMMAND_LIGHT_OFF)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to queue LIGHT_OFF for table %s after auto-completing session %s", table_id, session_id
            )

    return completed


def send_expiry_warnings(now: datetime | None = None, lead_minutes: int | None = None) -> list[int]:
    """Blink once per billed period for sessions about to expire."""
    now = now or utcnow()
    if lead_minutes is None:
        lead_minutes = int(current_app.config.get("BILLING_WARNING_LEAD_MINUTES", DEFAULT_WARNING_LEAD_MINUTES))
    horizon = now + timedelta(minutes=lead_minutes)

    ids = [
        row.id
        for row in _candidates().filter(
            BillingSession.blink_command_sent.is_(False),
            BillingSession.end_time > now,
            BillingSession.end_time <= horizon,
        ).all()
    ]

    warned = []
    for session_id in ids:
        try:
            session = db.session.get(BillingSession, session_id)
            if session is None or session.status != SESSION_ACTIVE or session.blink_command_sent:
                continue

            # Flag and command land in the same commit
            session.blink_command_sent = True
            db.session.flush()
            command_service.send_command(session.table_id, COMMAND_BLINK_3X)
            db.session.commit()
            warned.append(session.id)

            current_app.logger.info(
                "Sent expiry warning for billing session %s (ends %s)", session.id, session.end_time
            )
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to send expiry warning for billing session %s", session_id)

    return warned


def run_sweep(now: datetime | None = None) -> dict:
    now = now or utcnow()
    completed = auto_complete_expired(now)
    warned = send_expiry_warnings(now)
    return {"completed": completed, "warned": warned}
