"""
Billing session lifecycle tests.

Verifies:
- Start / extend / stop / move state transitions and their money
- Owner re-auth gating and OWNER_LOCK sessions
- Package starts (usage record, draft order, stock decrement)
- Event replay reproduces total_amount
"""

import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cuehall.models import BillingSession, BillingSessionEvent, IotCommand, MenuItem, Order, PackageUsage
from cuehall.models.billing import FAR_FUTURE
from cuehall.services import billing_service, command_service, package_service, reauth_service
from cuehall.validation import AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError

from conftest import TEST_PIN


T0 = datetime(2026, 3, 1, 18, 0, 0)


def _commands(db_session, command_type):
    return db_session.query(IotCommand).filter_by(command=command_type).order_by(IotCommand.id).all()


@pytest.fixture
def venue(make_device, make_table):
    device, token = make_device()
    table = make_table("Table 1", rate="30000")
    return {"device": device, "token": token, "table": table}


@pytest.fixture
def beer(db_session):
    item = MenuItem(name="Beer", price=Decimal("5000"), track_stock=True, stock_quantity=5)
    db_session.add(item)
    db_session.commit()
    return item


# =============================================================================
# CREATE
# =============================================================================


class TestCreateSession:
    def test_hourly_start(self, db_session, venue, cashier):
        """30000/h for 60 minutes bills 30000 and queues LIGHT_ON."""
        table = venue["table"]
        session = billing_service.create_session(table.id, 60, cashier, rate_type="HOURLY", now=T0)

        assert session.status == "ACTIVE"
        assert session.total_amount == Decimal("30000")
        assert session.end_time == T0 + timedelta(minutes=60)
        assert session.blink_command_sent is False
        assert table.status == "OCCUPIED"

        light_on = _commands(db_session, "LIGHT_ON")
        assert len(light_on) == 1
        assert light_on[0].status == "PENDING"
        assert light_on[0].device_id == venue["device"].id
        assert light_on[0].payload["tableId"] == table.id

    def test_manual_rate(self, db_session, venue, cashier):
        session = billing_service.create_session(
            venue["table"].id, 120, cashier, rate_type="MANUAL", manual_rate_per_hour="25000", now=T0
        )
        assert session.rate_per_hour == Decimal("25000")
        assert session.total_amount == Decimal("50000")

    def test_manual_rate_required(self, db_session, venue, cashier):
        with pytest.raises(ValidationError):
            billing_service.create_session(venue["table"].id, 60, cashier, rate_type="MANUAL", now=T0)

    @pytest.mark.parametrize("rate", ["0.001", "25000.005"])
    def test_manual_rate_beyond_cents_rejected(self, db_session, venue, cashier, rate):
        with pytest.raises(ValidationError, match="2 decimal places"):
            billing_service.create_session(
                venue["table"].id, 60, cashier, rate_type="MANUAL", manual_rate_per_hour=rate, now=T0
            )
        assert venue["table"].status == "AVAILABLE"

    @pytest.mark.parametrize("minutes", [30, 90])
    def test_duration_granularity(self, db_session, venue, cashier, minutes):
        with pytest.raises(ValidationError):
            billing_service.create_session(venue["table"].id, minutes, cashier, now=T0)
        assert venue["table"].status == "AVAILABLE"

    def test_second_start_on_same_table_conflicts(self, db_session, venue, cashier):
        billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        with pytest.raises(ConflictError):
            billing_service.create_session(venue["table"].id, 60, cashier, now=T0)

        assert db_session.query(BillingSession).count() == 1

    def test_inactive_table_rejected(self, db_session, venue, cashier):
        venue["table"].is_active = False
        db_session.commit()
        with pytest.raises(StateError):
            billing_service.create_session(venue["table"].id, 60, cashier, now=T0)

    def test_start_without_device_still_bills(self, db_session, make_table, cashier):
        table = make_table("Lonely Table")
        session = billing_service.create_session(table.id, 60, cashier, now=T0)

        assert session.status == "ACTIVE"
        assert db_session.query(IotCommand).count() == 0

    def test_flexible_is_open_ended(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, None, cashier, rate_type="FLEXIBLE", now=T0)
        assert session.end_time == FAR_FUTURE
        assert session.total_amount == Decimal("0")


class TestOwnerLock:
    def test_owner_without_reauth_rejected(self, db_session, venue, owner):
        with pytest.raises(AuthorizationError):
            billing_service.create_session(venue["table"].id, 60, owner, now=T0)
        assert venue["table"].status == "AVAILABLE"

    def test_owner_with_reauth_gets_owner_lock(self, db_session, venue, owner):
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        session = billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)

        assert session.rate_type == "OWNER_LOCK"
        assert session.total_amount == Decimal("0")
        assert session.end_time == FAR_FUTURE
        assert session.approved_by_id == owner.id

    def test_reauth_token_is_single_use(self, db_session, venue, make_table, owner):
        other = make_table("Table 2")
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)

        with pytest.raises(AuthorizationError):
            billing_service.create_session(other.id, 60, owner, reauth_token=token, now=T0)

    def test_expired_reauth_token_rejected(self, db_session, venue, owner):
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        with pytest.raises(AuthorizationError):
            billing_service.create_session(
                venue["table"].id, 60, owner, reauth_token=token, now=T0 + timedelta(minutes=6)
            )

    def test_failed_start_does_not_burn_grant(self, db_session, venue, make_table, owner):
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        with pytest.raises(NotFoundError):
            billing_service.create_session(9999, 60, owner, reauth_token=token, now=T0)

        session = billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)
        assert session.rate_type == "OWNER_LOCK"

    def test_cashier_cannot_request_owner_lock(self, db_session, venue, cashier):
        with pytest.raises(AuthorizationError):
            billing_service.create_session(venue["table"].id, 60, cashier, rate_type="OWNER_LOCK", now=T0)

    def test_cashier_cannot_stop_owner_lock(self, db_session, venue, owner, cashier):
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        session = billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)

        with pytest.raises(AuthorizationError):
            billing_service.stop_session(session.id, cashier, now=T0 + timedelta(hours=2))

        stopped = billing_service.stop_session(session.id, owner, now=T0 + timedelta(hours=2))
        assert stopped.total_amount == Decimal("0")
        assert stopped.duration_minutes == 120


# =============================================================================
# EXTEND
# =============================================================================


class TestExtendSession:
    def test_extend_by_thirty_minutes(self, db_session, venue, cashier):
        """+30 minutes at 30000/h adds 15000 and re-arms the blink."""
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        session.blink_command_sent = True
        db_session.commit()
        old_end = session.end_time

        session, amount = billing_service.extend_session(
            session.id, cashier, additional_minutes=30, now=T0 + timedelta(minutes=50)
        )

        assert amount == Decimal("15000")
        assert session.total_amount == Decimal("45000")
        assert session.end_time == old_end + timedelta(minutes=30)
        assert session.duration_minutes == 90
        assert session.blink_command_sent is False

    def test_repeated_extensions_replay_to_total(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        for minutes in (15, 30, 45):
            billing_service.extend_session(session.id, cashier, additional_minutes=minutes, now=T0)

        assert session.total_amount == Decimal("30000") + Decimal("7500") + Decimal("15000") + Decimal("22500")
        assert billing_service.replay_total(session) == session.total_amount

        breakdown = billing_service.billing_breakdown(session)
        assert Decimal(breakdown["base_amount"]) == Decimal("30000")
        assert [e["additional_minutes"] for e in breakdown["extensions"]] == [15, 30, 45]

    def test_bad_extension_step(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        with pytest.raises(ValidationError):
            billing_service.extend_session(session.id, cashier, additional_minutes=20, now=T0)

    def test_flexible_cannot_extend(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, None, cashier, rate_type="FLEXIBLE", now=T0)
        with pytest.raises(StateError):
            billing_service.extend_session(session.id, cashier, additional_minutes=30, now=T0)

    def test_completed_cannot_extend(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=10))
        with pytest.raises(StateError):
            billing_service.extend_session(session.id, cashier, additional_minutes=30, now=T0)


# =============================================================================
# STOP
# =============================================================================


class TestStopSession:
    def test_stop_releases_table_and_turns_light_off(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        stopped = billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=40))

        assert stopped.status == "COMPLETED"
        assert stopped.actual_end_time == T0 + timedelta(minutes=40)
        assert stopped.auto_completed is False
        assert stopped.total_amount == Decimal("30000")
        assert venue["table"].status == "AVAILABLE"
        assert len(_commands(db_session, "LIGHT_OFF")) == 1

    def test_stop_twice_is_state_error(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=5))
        with pytest.raises(StateError):
            billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=6))

    def test_flexible_billed_on_started_hours(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, None, cashier, rate_type="FLEXIBLE", now=T0)
        stopped = billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=61))

        assert stopped.total_amount == Decimal("60000")
        assert stopped.duration_minutes == 61
        assert billing_service.replay_total(stopped) == stopped.total_amount


# =============================================================================
# MOVE
# =============================================================================


class TestMoveSession:
    def test_move_swaps_table_states(self, db_session, venue, make_table, cashier):
        source = venue["table"]
        target = make_table("Table 2", rate="30000")
        session = billing_service.create_session(source.id, 60, cashier, now=T0)

        moved = billing_service.move_session(session.id, target.id, cashier, now=T0 + timedelta(minutes=5))

        assert moved.table_id == target.id
        assert moved.total_amount == Decimal("30000")
        assert source.status == "AVAILABLE"
        assert target.status == "OCCUPIED"

        light_off = _commands(db_session, "LIGHT_OFF")
        assert [c.payload["tableId"] for c in light_off] == [source.id]
        assert _commands(db_session, "LIGHT_ON")[-1].payload["tableId"] == target.id

    def test_move_to_different_rate_rejected_for_cashier(self, db_session, venue, make_table, cashier):
        target = make_table("VIP", rate="50000")
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        with pytest.raises(ConflictError):
            billing_service.move_session(session.id, target.id, cashier, now=T0)

    def test_owner_may_move_across_rates(self, db_session, venue, make_table, cashier, owner):
        target = make_table("VIP", rate="50000")
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        moved = billing_service.move_session(session.id, target.id, owner, now=T0)
        assert moved.table_id == target.id

    def test_move_to_occupied_table_rejected(self, db_session, venue, make_table, cashier):
        target = make_table("Table 2")
        first = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        billing_service.create_session(target.id, 60, cashier, now=T0)
        with pytest.raises(ConflictError):
            billing_service.move_session(first.id, target.id, cashier, now=T0)

    def test_light_failure_does_not_roll_back_move(self, db_session, venue, make_table, cashier, monkeypatch):
        target = make_table("Table 2")
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)

        def broken_send(table_id, command_type):
            raise RuntimeError("relay bus down")

        monkeypatch.setattr(command_service, "send_command", broken_send)
        moved = billing_service.move_session(session.id, target.id, cashier, now=T0)

        db_session.expire_all()
        assert db_session.get(BillingSession, moved.id).table_id == target.id
        assert target.status == "OCCUPIED"
        assert venue["table"].status == "AVAILABLE"


class TestLostTableRace:
    """Another request wins the table between the status read and the write."""

    @pytest.fixture
    def table_taken(self, monkeypatch):
        monkeypatch.setattr(billing_service, "transition_table_status", lambda *args: False)

    def test_start_conflicts_and_leaves_nothing_behind(self, db_session, venue, cashier, table_taken):
        with pytest.raises(ConflictError, match="taken by another request"):
            billing_service.create_session(venue["table"].id, 60, cashier, now=T0)

        assert db_session.query(BillingSession).count() == 0
        assert db_session.query(BillingSessionEvent).count() == 0
        assert _commands(db_session, "LIGHT_ON") == []

    def test_owner_grant_survives_lost_race(self, db_session, venue, owner, monkeypatch):
        _, token = reauth_service.issue_grant(owner, pin=TEST_PIN, now=T0)
        monkeypatch.setattr(billing_service, "transition_table_status", lambda *args: False)

        with pytest.raises(ConflictError):
            billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)

        monkeypatch.undo()
        session = billing_service.create_session(venue["table"].id, 60, owner, reauth_token=token, now=T0)
        assert session.rate_type == "OWNER_LOCK"

    def test_active_session_index_rejects_second_insert(self, db_session, venue, cashier, monkeypatch):
        real_transition = billing_service.transition_table_status

        def competing_insert(table_id, from_status, to_status):
            db_session.add(BillingSession(
                table_id=table_id,
                start_time=T0,
                end_time=T0 + timedelta(minutes=60),
                duration_minutes=60,
                rate_type="HOURLY",
                rate_per_hour=Decimal("30000"),
                total_amount=Decimal("30000"),
                status="ACTIVE",
                created_by_id=cashier.id,
                created_at=T0,
            ))
            db_session.flush()
            return real_transition(table_id, from_status, to_status)

        monkeypatch.setattr(billing_service, "transition_table_status", competing_insert)

        with pytest.raises(ConflictError, match="already has an active session"):
            billing_service.create_session(venue["table"].id, 60, cashier, now=T0)

        db_session.expire_all()
        assert db_session.query(BillingSession).count() == 0
        assert venue["table"].status == "AVAILABLE"

    def test_move_target_taken(self, db_session, venue, make_table, cashier, monkeypatch):
        target = make_table("Table 2")
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        monkeypatch.setattr(billing_service, "transition_table_status", lambda *args: False)

        with pytest.raises(ConflictError, match="taken by another request"):
            billing_service.move_session(session.id, target.id, cashier, now=T0)

        db_session.expire_all()
        assert db_session.get(BillingSession, session.id).table_id == venue["table"].id
        assert venue["table"].status == "OCCUPIED"
        assert target.status == "AVAILABLE"
        assert db_session.query(BillingSessionEvent).filter_by(event_type="MOVE").count() == 0


# =============================================================================
# PACKAGES
# =============================================================================


class TestPackageSessions:
    @pytest.fixture
    def happy_hour(self, db_session, beer):
        return package_service.create_package(
            name="Happy Hour",
            price="50000",
            duration_minutes=120,
            items=[
                {"type": "BILLING", "quantity": 1},
                {"type": "MENU_ITEM", "menu_item_id": beer.id, "quantity": 2, "unit_price": "5000"},
            ],
        )

    def test_package_start(self, db_session, venue, cashier, beer, happy_hour):
        session = billing_service.create_session(
            venue["table"].id, None, cashier, package_id=happy_hour.id, now=T0
        )

        assert session.rate_type == "PACKAGE"
        assert session.total_amount == Decimal("50000")
        assert session.end_time == T0 + timedelta(minutes=120)

        usage = db_session.query(PackageUsage).one()
        assert usage.usage_type == "START"
        assert usage.billing_session_id == session.id

        order = db_session.query(Order).one()
        assert order.status == "DRAFT"
        assert order.billing_session_id == session.id
        assert order.total_amount == Decimal("10000")
        assert re.fullmatch(r"ORD-\d{14}-[0-9A-F]{4}", order.order_number)

        db_session.refresh(beer)
        assert beer.stock_quantity == 3

    def test_insufficient_stock_rolls_back_start(self, db_session, venue, cashier, beer, happy_hour):
        beer.stock_quantity = 1
        db_session.commit()

        with pytest.raises(ConflictError):
            billing_service.create_session(venue["table"].id, None, cashier, package_id=happy_hour.id, now=T0)

        assert db_session.query(BillingSession).count() == 0
        assert venue["table"].status == "AVAILABLE"
        db_session.refresh(beer)
        assert beer.stock_quantity == 1

    def test_package_extension(self, db_session, venue, cashier, happy_hour):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        session, amount = billing_service.extend_session(session.id, cashier, package_id=happy_hour.id, now=T0)

        assert amount == Decimal("50000")
        assert session.total_amount == Decimal("80000")
        assert session.duration_minutes == 180
        assert db_session.query(PackageUsage).filter_by(usage_type="EXTEND").count() == 1


class TestPackageValidation:
    def test_numeric_string_duration_accepted(self, db_session):
        package = package_service.create_package(
            name="Two Hours", price="50000", duration_minutes="120", items=[{"type": "BILLING"}]
        )
        assert package.duration_minutes == 120

    @pytest.mark.parametrize("duration", ["two hours", 0, -30, True])
    def test_bad_duration_rejected(self, db_session, duration):
        with pytest.raises(ValidationError):
            package_service.create_package(
                name="Bad", price="50000", duration_minutes=duration, items=[{"type": "BILLING"}]
            )

    @pytest.mark.parametrize("quantity", ["x", 0, None, 1.5])
    def test_bad_menu_quantity_rejected(self, db_session, beer, quantity):
        with pytest.raises(ValidationError):
            package_service.create_package(
                name="Beer Bucket",
                price="20000",
                items=[{"type": "MENU_ITEM", "menu_item_id": beer.id, "quantity": quantity}],
            )

    def test_billing_quantity_must_be_one(self, db_session):
        with pytest.raises(ValidationError):
            package_service.create_package(
                name="Double", price="50000", duration_minutes=60, items=[{"type": "BILLING", "quantity": "2"}]
            )

    def test_items_must_be_objects(self, db_session):
        with pytest.raises(ValidationError):
            package_service.create_package(name="Odd", price="1", items=["BILLING"])


# =============================================================================
# READS / SETTLEMENT
# =============================================================================


class TestReads:
    def test_list_sessions_paginates(self, db_session, make_device, make_table, cashier):
        make_device()
        for i in range(3):
            table = make_table(f"T{i}")
            billing_service.create_session(table.id, 60, cashier, now=T0 + timedelta(minutes=i))

        page = billing_service.list_sessions(page=1, limit=2)
        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert len(page["data"]) == 2

        assert len(billing_service.get_active_sessions()) == 3

    def test_settle_only_completed(self, db_session, venue, cashier):
        session = billing_service.create_session(venue["table"].id, 60, cashier, now=T0)
        with pytest.raises(StateError):
            billing_service.settle_session(session.id)

        billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=60))
        settled = billing_service.settle_session(session.id)
        assert settled.settled_at is not None

        with pytest.raises(StateError):
            billing_service.settle_session(session.id)
