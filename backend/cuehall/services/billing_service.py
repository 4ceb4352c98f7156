# Overview: Service-layer operations for billing sessions; lifecycle, pricing and table occupancy.

"""
Billing Session Manager

STATE MACHINE: ACTIVE -> COMPLETED (terminal, reached exactly once)

DESIGN PRINCIPLES:
- One ACTIVE session per table. The table is claimed with a conditional
  AVAILABLE -> OCCUPIED update at write time, backed by a partial unique
  index, so two concurrent starts cannot both win.
- Money only grows while ACTIVE. Every change appends a BillingSessionEvent;
  replaying CREATE/EXTEND/STOP deltas reproduces total_amount.
- Bookkeeping is authoritative, lights are best-effort. Light commands are
  issued after the state commit; a failed light during a move is logged and
  never rolls the move back.
- Owner starts are OWNER_LOCK: zero cost, open-ended, and only after a
  single-use re-auth grant is spent in the same transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import BillingSession, BillingSessionEvent, PackageUsage, Table, User
from ..models.billing import (
    EVENT_AUTO_STOP,
    EVENT_CREATE,
    EVENT_EXTEND,
    EVENT_MOVE,
    EVENT_STOP,
    FAR_FUTURE,
    RATE_FLEXIBLE,
    RATE_HOURLY,
    RATE_MANUAL,
    RATE_OWNER_LOCK,
    RATE_PACKAGE,
    RATE_TYPES,
    SESSION_ACTIVE,
    SESSION_COMPLETED,
)
from ..models.iot import COMMAND_LIGHT_OFF, COMMAND_LIGHT_ON
from ..models.tables import TABLE_AVAILABLE, TABLE_OCCUPIED
from ..validation import (
    AuthorizationError,
    ConflictError,
    DomainError,
    NotFoundError,
    StateError,
    ValidationError,
    parse_amount,
    parse_positive_int,
)
from . import command_service, order_service, package_service, rate_service, reauth_service
from .concurrency import lock_for_update, transition_table_status
from cuehall.time_utils import utcnow


# =============================================================================
# HELPERS
# =============================================================================

def get_session(session_id) -> BillingSession:
    session = db.session.get(BillingSession, session_id)
    if not session:
        raise NotFoundError("Session not found")
    return session


def _get_session_for_update(session_id) -> BillingSession:
    session = lock_for_update(
        db.session.query(BillingSession).filter(BillingSession.id == session_id)
    ).first()
    if not session:
        raise NotFoundError("Session not found")
    return session


def _require_active(session: BillingSession) -> None:
    if session.status != SESSION_ACTIVE:
        raise StateError("Session is not active")


def _require_owner_for_owner_lock(session: BillingSession, actor: User, action: str) -> None:
    if session.rate_type == RATE_OWNER_LOCK and not actor.is_owner:
        raise AuthorizationError(f"Only the owner can {action} an owner lock session")


def _record_event(
    session: BillingSession,
    event_type: str,
    occurred_at: datetime,
    *,
    amount_delta: Decimal = rate_service.ZERO,
    minutes_delta: int = 0,
    actor_id: int | None = None,
    package_id: int | None = None,
    from_table_id: int | None = None,
    to_table_id: int | None = None,
    note: str | None = None,
) -> BillingSessionEvent:
    event = BillingSessionEvent(
        billing_session=session,
        event_type=event_type,
        amount_delta=amount_delta,
        minutes_delta=minutes_delta,
        actor_user_id=actor_id,
        package_id=package_id,
        from_table_id=from_table_id,
        to_table_id=to_table_id,
        note=note,
        occurred_at=occurred_at,
    )
    db.session.add(event)
    return event


def _commit_or_conflict(message: str) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(message)
    except (StaleDataError, OperationalError):
        db.session.rollback()
        raise ConflictError("Session was modified concurrently, retry")


def _apply_package(session: BillingSession, package, usage_type: str, actor_id: int) -> PackageUsage:
    order = order_service.create_package_order(session, package, actor_id)
    usage = PackageUsage(
        package_id=package.id,
        billing_session_id=session.id,
        order_id=order.id if order else None,
        usage_type=usage_type,
        price=package.price,
        duration_minutes=package.duration_minutes,
        created_by_id=actor_id,
    )
    db.session.add(usage)
    return usage


def replay_total(session: BillingSession) -> Decimal:
    """Sum of the session's amount deltas; always equals total_amount."""
    return sum((Decimal(e.amount_delta) for e in session.events), rate_service.ZERO)


# =============================================================================
# CREATE
# =============================================================================

def create_session(
    table_id,
    duration_minutes,
    actor: User,
    *,
    rate_type: str | None = None,
    manual_rate_per_hour=None,
    package_id=None,
    reauth_token: str | None = None,
    now: datetime | None = None,
) -> BillingSession:
    """
    Start billing a table.

    Raises:
        AuthorizationError: owner without a valid re-auth grant
        NotFoundError: table or package missing
        ConflictError: table busy (status or an existing ACTIVE session)
        StateError: table inactive
        ValidationError: bad duration, rate type or manual rate
    """
    now = now or utcnow()
    try:
        session = _create_session(
            table_id, duration_minutes, actor,
            rate_type=rate_type,
            manual_rate_per_hour=manual_rate_per_hour,
            package_id=package_id,
            reauth_token=reauth_token,
            now=now,
        )
    except DomainError:
        db.session.rollback()
        raise

    command_service.send_command(session.table_id, COMMAND_LIGHT_ON)
    current_app.logger.info(
        "Billing session %s started on table %s (%s, total %s)",
        session.id, session.table_id, session.rate_type, session.total_amount,
    )
    return session


def _create_session(table_id, duration_minutes, actor, *, rate_type, manual_rate_per_hour,
                    package_id, reauth_token, now) -> BillingSession:
    rate_type = (rate_type or RATE_HOURLY).upper()
    if rate_type not in RATE_TYPES:
        raise ValidationError(f"Unknown rate type: {rate_type}")

    if actor.is_owner:
        reauth_service.consume_grant(actor.id, reauth_token, now=now)
    elif rate_type == RATE_OWNER_LOCK:
        raise AuthorizationError("OWNER_LOCK sessions require the OWNER role")

    table = db.session.get(Table, table_id)
    if not table:
        raise NotFoundError("Table not found")
    if not table.is_active:
        raise StateError("Table is not active")
    if table.status != TABLE_AVAILABLE:
        raise ConflictError(f"Table is {table.status}")

    existing = db.session.query(BillingSession).filter_by(
        table_id=table.id,
        status=SESSION_ACTIVE,
    ).first()
    if existing:
        raise ConflictError("Table already has an active session")

    package = None
    rate_per_hour = Decimal(table.hourly_rate)

    if actor.is_owner:
        rate_type = RATE_OWNER_LOCK
        rate_per_hour = rate_service.ZERO
        minutes = 0
        end_time = FAR_FUTURE
        total = rate_service.ZERO
    elif package_id is not None or rate_type == RATE_PACKAGE:
        if package_id is None:
            raise ValidationError("package_id is required for PACKAGE sessions")
        package = package_service.get_usable_package(package_id)
        rate_type = RATE_PACKAGE
        minutes = package.duration_minutes
        end_time = now + timedelta(minutes=minutes)
        total = rate_service.compute_session_total(RATE_PACKAGE, rate_per_hour, minutes, package.price)
    elif rate_type == RATE_FLEXIBLE:
        minutes = 0
        end_time = FAR_FUTURE
        total = rate_service.compute_session_total(RATE_FLEXIBLE, rate_per_hour, 0)
    else:
        minutes = parse_positive_int(duration_minutes, "durationMinutes")
        rate_service.validate_start_duration(minutes)
        if rate_type == RATE_MANUAL:
            if manual_rate_per_hour is None:
                raise ValidationError("manualRatePerHour is required for MANUAL sessions")
            rate_per_hour = parse_amount(manual_rate_per_hour, "manualRatePerHour")
        end_time = now + timedelta(minutes=minutes)
        total = rate_service.compute_session_total(rate_type, rate_per_hour, minutes)

    # Re-validate at write time: only flip if still AVAILABLE
    if not transition_table_status(table.id, TABLE_AVAILABLE, TABLE_OCCUPIED):
        raise ConflictError("Table was taken by another request")

    session = BillingSession(
        table_id=table.id,
        start_time=now,
        end_time=end_time,
        duration_minutes=minutes,
        rate_type=rate_type,
        rate_per_hour=rate_per_hour,
        total_amount=total,
        status=SESSION_ACTIVE,
        blink_command_sent=False,
        created_by_id=actor.id,
        approved_by_id=actor.id if actor.is_owner else None,
        package_id=package.id if package else None,
        created_at=now,
    )
    db.session.add(session)
    try:
        db.session.flush()
    except IntegrityError:
        raise ConflictError("Table already has an active session")

    _record_event(
        session, EVENT_CREATE, now,
        amount_delta=total,
        minutes_delta=minutes,
        actor_id=actor.id,
        package_id=session.package_id,
    )
    if package is not None:
        _apply_package(session, package, "START", actor.id)

    _commit_or_conflict("Table already has an active session")
    return session


# =============================================================================
# EXTEND
# =============================================================================

def extend_session(
    session_id,
    actor: User,
    *,
    additional_minutes=None,
    package_id=None,
    now: datetime | None = None,
) -> tuple[BillingSession, Decimal]:
    """
    Push end_time out and add to the bill. Re-arms the blink warning.

    Returns (session, additional_amount).
    """
    now = now or utcnow()
    try:
        session = _get_session_for_update(session_id)
        _require_active(session)
        if session.is_open_ended:
            raise StateError(f"{session.rate_type} sessions cannot be extended")

        package = None
        if package_id is not None:
            package = package_service.get_usable_package(package_id)
            minutes = package.duration_minutes
            amount = rate_service.compute_extension_cost(session.rate_per_hour, minutes, package.price)
        else:
            minutes = parse_positive_int(additional_minutes, "additionalMinutes")
            rate_service.validate_extension_duration(minutes)
            amount = rate_service.compute_extension_cost(session.rate_per_hour, minutes)

        previous_end = session.end_time
        session.end_time = previous_end + timedelta(minutes=minutes)
        session.duration_minutes = session.duration_minutes + minutes
        session.total_amount = Decimal(session.total_amount) + amount
        session.blink_command_sent = False

        _record_event(
            session, EVENT_EXTEND, now,
            amount_delta=amount,
            minutes_delta=minutes,
            actor_id=actor.id,
            package_id=package.id if package else None,
        )
        if package is not None:
            _apply_package(session, package, "EXTEND", actor.id)

        _commit_or_conflict("Session could not be extended")
    except DomainError:
        db.session.rollback()
        raise

    return session, amount


# =============================================================================
# STOP / AUTO-COMPLETE
# =============================================================================

def apply_completion(
    session: BillingSession,
    now: datetime,
    *,
    actor_id: int | None = None,
    auto: bool = False,
) -> Decimal:
    """
    Terminal transition shared by manual stop and the expiry sweep.

    Does not commit. Returns the final amount.
    """
    actual_minutes = rate_service.elapsed_minutes(session.start_time, now)
    previous_total = Decimal(session.total_amount)

    if session.rate_type == RATE_FLEXIBLE:
        final = rate_service.compute_session_total(
            RATE_FLEXIBLE, session.rate_per_hour, actual_minutes, stopped=True
        )
        minutes_delta = actual_minutes - session.duration_minutes
        session.duration_minutes = actual_minutes
    elif session.rate_type == RATE_OWNER_LOCK:
        final = rate_service.ZERO
        minutes_delta = actual_minutes - session.duration_minutes
        session.duration_minutes = actual_minutes
    else:
        final = previous_total
        minutes_delta = 0

    session.status = SESSION_COMPLETED
    session.actual_end_time = now
    session.total_amount = final
    session.auto_completed = auto

    if not transition_table_status(session.table_id, TABLE_OCCUPIED, TABLE_AVAILABLE):
        current_app.logger.warning(
            "Table %s was not OCCUPIED when session %s completed", session.table_id, session.id
        )

    stopped_early = not session.is_open_ended and now < session.end_time
    _record_event(
        session, EVENT_AUTO_STOP if auto else EVENT_STOP, now,
        amount_delta=final - previous_total,
        minutes_delta=minutes_delta,
        actor_id=actor_id,
        note="stopped early" if stopped_early else None,
    )
    return final


def stop_session(session_id, actor: User, *, now: datetime | None = None) -> BillingSession:
    """
    Stop billing and release the table.

    Releases the table regardless of any payment already taken; payment is
    reconciled at checkout.
    """
    now = now or utcnow()
    try:
        session = _get_session_for_update(session_id)
        _require_active(session)
        _require_owner_for_owner_lock(session, actor, "stop")

        apply_completion(session, now, actor_id=actor.id, auto=False)
        _commit_or_conflict("Session could not be stopped")
    except DomainError:
        db.session.rollback()
        raise

    command_service.send_command(session.table_id, COMMAND_LIGHT_OFF)
    current_app.logger.info(
        "Billing session %s stopped by user %s (total %s)", session.id, actor.id, session.total_amount
    )
    return session


# =============================================================================
# MOVE
# =============================================================================

def move_session(session_id, target_table_id, actor: User, *, now: datetime | None = None) -> BillingSession:
    """
    Move an ACTIVE session to another AVAILABLE table. Amount is unchanged.

    Session table_id and both table statuses change in one transaction. The
    LIGHT_OFF / LIGHT_ON pair afterwards is best-effort.
    """
    now = now or utcnow()
    try:
        session = _get_session_for_update(session_id)
        _require_active(session)
        _require_owner_for_owner_lock(session, actor, "move")

        source = db.session.get(Table, session.table_id)
        target = db.session.get(Table, target_table_id)
        if not target:
            raise NotFoundError("Target table not found")
        if target.id == source.id:
            raise ValidationError("Session is already on this table")
        if not target.is_active:
            raise StateError("Target table is not active")
        if target.status != TABLE_AVAILABLE:
            raise ConflictError(f"Target table is {target.status}")

        privileged = actor.is_owner or session.rate_type == RATE_OWNER_LOCK
        if not privileged and Decimal(target.hourly_rate) != Decimal(source.hourly_rate):
            raise ConflictError("Target table has a different hourly rate")

        if not transition_table_status(target.id, TABLE_AVAILABLE, TABLE_OCCUPIED):
            raise ConflictError("Target table was taken by another request")
        transition_table_status(source.id, TABLE_OCCUPIED, TABLE_AVAILABLE)

        session.table_id = target.id
        _record_event(
            session, EVENT_MOVE, now,
            actor_id=actor.id,
            from_table_id=source.id,
            to_table_id=target.id,
        )
        _commit_or_conflict("Target table already has an active session")
        source_id = source.id
    except DomainError:
        db.session.rollback()
        raise

    for table_id, command in ((source_id, COMMAND_LIGHT_OFF), (session.table_id, COMMAND_LIGHT_ON)):
        try:
            command_service.send_command(table_id, command)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to queue %s for table %s after moving session %s", command, table_id, session.id
            )

    return session


# =============================================================================
# SETTLEMENT / READS
# =============================================================================

def settle_session(session_id, *, now: datetime | None = None) -> BillingSession:
    """Checkout marks a completed session as paid."""
    session = _get_session_for_update(session_id)
    if session.status != SESSION_COMPLETED:
        raise StateError("Only completed sessions can be settled")
    if session.settled_at is not None:
        raise StateError("Session already settled")

    session.settled_at = now or utcnow()
    db.session.commit()
    return session


def get_active_sessions() -> list[BillingSession]:
    return db.session.query(BillingSession).filter_by(
        status=SESSION_ACTIVE
    ).order_by(BillingSession.start_time.asc()).all()


def billing_breakdown(session: BillingSession) -> dict:
    """Base amount plus ordered extensions, read from the event history."""
    extensions = [e for e in session.events if e.event_type == EVENT_EXTEND]
    extension_total = sum((Decimal(e.amount_delta) for e in extensions), rate_service.ZERO)
    base = sum(
        (Decimal(e.amount_delta) for e in session.events if e.event_type == EVENT_CREATE),
        rate_service.ZERO,
    )
    return {
        "base_amount": str(base),
        "extension_total": str(extension_total),
        "extensions": [
            {
                "order": index + 1,
                "id": e.id,
                "additional_minutes": e.minutes_delta,
                "additional_amount": str(e.amount_delta),
                "package_id": e.package_id,
                "created_at": e.to_dict()["occurred_at"],
            }
            for index, e in enumerate(extensions)
        ],
    }


def list_sessions(
    *,
    status: str | None = None,
    table_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(page or 1, 1)
    limit = min(max(limit or 20, 1), 100)

    query = db.session.query(BillingSession)
    if status:
        query = query.filter(BillingSession.status == status.upper())
    if table_id:
        query = query.filter(BillingSession.table_id == table_id)
    if start_date:
        query = query.filter(BillingSession.start_time >= start_date)
    if end_date:
        query = query.filter(BillingSession.start_time <= end_date)

    total = query.count()
    rows = query.order_by(BillingSession.start_time.desc(), BillingSession.id.desc()).offset(
        (page - 1) * limit
    ).limit(limit).all()

    return {
        "data": [s.to_dict() for s in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }
