"""
Table administration and light-test mode tests.

Verifies:
- Wiring uniqueness per device
- Wiring changes blocked while a test runs or billing is unresolved
- Soft delete rules
- Test mode auto-revert, early stop and superseded timers
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cuehall.extensions import test_timers
from cuehall.models import IotCommand, Table
from cuehall.services import billing_service, table_service
from cuehall.services.table_testing_service import get_coordinator
from cuehall.validation import ConflictError, StateError, ValidationError


T0 = datetime(2026, 3, 1, 18, 0, 0)


def _commands(db_session, command_type):
    return db_session.query(IotCommand).filter_by(command=command_type).count()


# =============================================================================
# ADMINISTRATION
# =============================================================================


class TestCreateTable:
    def test_create(self, db_session):
        table = table_service.create_table({"name": "Table 1", "hourly_rate": "30000", "relay_channel": 0})
        assert table.status == "AVAILABLE"
        assert table.hourly_rate == Decimal("30000")

    def test_missing_rate(self, db_session):
        with pytest.raises(ValidationError):
            table_service.create_table({"name": "Table 1"})

    def test_status_not_writable(self, db_session):
        with pytest.raises(ValidationError):
            table_service.create_table({"name": "Table 1", "hourly_rate": "1", "status": "OCCUPIED"})

    def test_relay_channel_range(self, db_session):
        with pytest.raises(ValidationError):
            table_service.create_table({"name": "Table 1", "hourly_rate": "1", "relay_channel": 16})

    def test_gpio_pin_allowlist(self, db_session):
        with pytest.raises(ValidationError):
            table_service.create_table({"name": "Table 1", "hourly_rate": "1", "gpio_pin": 2})

    def test_duplicate_name(self, db_session):
        table_service.create_table({"name": "Table 1", "hourly_rate": "1"})
        with pytest.raises(ConflictError):
            table_service.create_table({"name": "Table 1", "hourly_rate": "1"})

    def test_channel_unique_per_device(self, db_session, make_device):
        device, _ = make_device()
        other, _ = make_device("other")
        table_service.create_table({"name": "A", "hourly_rate": "1", "iot_device_id": device.id, "relay_channel": 2})

        with pytest.raises(ConflictError):
            table_service.create_table(
                {"name": "B", "hourly_rate": "1", "iot_device_id": device.id, "relay_channel": 2}
            )
        # Same channel on a different controller is fine
        table_service.create_table({"name": "C", "hourly_rate": "1", "iot_device_id": other.id, "relay_channel": 2})

    def test_channel_unique_on_shared_gateway(self, db_session):
        table_service.create_table({"name": "A", "hourly_rate": "1", "relay_channel": 4})
        with pytest.raises(ConflictError):
            table_service.create_table({"name": "B", "hourly_rate": "1", "relay_channel": 4})

    def test_unknown_device(self, db_session):
        with pytest.raises(ValidationError):
            table_service.create_table({"name": "A", "hourly_rate": "1", "iot_device_id": 42})


class TestUpdateTable:
    def test_rate_change_allowed_while_occupied(self, db_session, make_table, cashier):
        table = make_table("Table 1")
        billing_service.create_session(table.id, 60, cashier, now=T0)

        updated = table_service.update_table(table.id, {"hourly_rate": "40000"})
        assert updated.hourly_rate == Decimal("40000")

    def test_wiring_change_blocked_while_occupied(self, db_session, make_table, cashier):
        table = make_table("Table 1", relay_channel=1)
        billing_service.create_session(table.id, 60, cashier, now=T0)

        with pytest.raises(StateError):
            table_service.update_table(table.id, {"relay_channel": 2})

    def test_wiring_change_blocked_until_settled(self, db_session, make_table, cashier):
        table = make_table("Table 1", relay_channel=1)
        session = billing_service.create_session(table.id, 60, cashier, now=T0)
        billing_service.stop_session(session.id, cashier, now=T0 + timedelta(minutes=30))

        with pytest.raises(StateError):
            table_service.update_table(table.id, {"relay_channel": 2})

        billing_service.settle_session(session.id)
        assert table_service.update_table(table.id, {"relay_channel": 2}).relay_channel == 2

    def test_wiring_change_blocked_during_test(self, db_session, make_table, fake_timers):
        table = make_table("Table 1", relay_channel=1)
        get_coordinator().start_testing(table.id)

        with pytest.raises(StateError):
            table_service.update_table(table.id, {"name": "Renamed"})

    def test_same_value_is_not_a_change(self, db_session, make_table, cashier):
        table = make_table("Table 1", relay_channel=1)
        billing_service.create_session(table.id, 60, cashier, now=T0)

        updated = table_service.update_table(table.id, {"relay_channel": 1, "description": "corner"})
        assert updated.description == "corner"


class TestDeactivateTable:
    def test_active_session_blocks_delete(self, db_session, make_table, cashier):
        table = make_table("Table 1")
        billing_service.create_session(table.id, 60, cashier, now=T0)
        with pytest.raises(StateError):
            table_service.deactivate_table(table.id)

    def test_soft_delete_hides_table(self, db_session, make_table):
        table = make_table("Table 1")
        table_service.deactivate_table(table.id)

        assert table_service.list_tables() == []
        assert [t.id for t in table_service.list_tables(include_inactive=True)] == [table.id]

    def test_delete_cancels_running_test(self, db_session, make_table, fake_timers):
        table = make_table("Table 1")
        get_coordinator().start_testing(table.id)

        table_service.deactivate_table(table.id)

        assert fake_timers[0].cancelled is True
        assert test_timers.token_for(table.id) is None
        assert table.status == "AVAILABLE"


# =============================================================================
# LIGHT TEST MODE
# =============================================================================


class TestLightTesting:
    @pytest.fixture
    def table(self, make_device, make_table):
        make_device()
        return make_table("Table 1")

    def test_start_puts_table_in_maintenance(self, db_session, table, fake_timers):
        result = get_coordinator().start_testing(table.id, 5)

        assert result == {"table_id": table.id, "status": "MAINTENANCE", "duration_seconds": 5}
        assert table.status == "MAINTENANCE"
        assert fake_timers[0].seconds == 5
        assert fake_timers[0].started is True
        assert _commands(db_session, "LIGHT_ON") == 1

    def test_default_duration(self, app, db_session, table, fake_timers):
        get_coordinator().start_testing(table.id)
        assert fake_timers[0].seconds == app.config["TABLE_TEST_DEFAULT_SECONDS"]

    def test_duration_over_limit(self, app, db_session, table, fake_timers):
        with pytest.raises(ValidationError):
            get_coordinator().start_testing(table.id, app.config["TABLE_TEST_MAX_SECONDS"] + 1)

    def test_timer_reverts_table(self, db_session, table, fake_timers):
        get_coordinator().start_testing(table.id, 5)

        fake_timers[0].fire()

        db_session.expire_all()
        assert db_session.get(Table, table.id).status == "AVAILABLE"
        assert _commands(db_session, "LIGHT_OFF") == 1
        assert test_timers.token_for(table.id) is None

    def test_stop_early(self, db_session, table, fake_timers):
        get_coordinator().start_testing(table.id, 5)
        result = get_coordinator().stop_testing(table.id)

        assert result["status"] == "AVAILABLE"
        assert fake_timers[0].cancelled is True
        assert _commands(db_session, "LIGHT_OFF") == 1

    def test_stop_when_not_testing(self, db_session, table, fake_timers):
        with pytest.raises(StateError):
            get_coordinator().stop_testing(table.id)

    def test_restart_supersedes_previous_timer(self, db_session, table, fake_timers):
        coordinator = get_coordinator()
        coordinator.start_testing(table.id, 5)
        coordinator.start_testing(table.id, 8)

        assert fake_timers[0].cancelled is True

        # A stale callback that slipped past cancel() must not revert the new cycle
        fake_timers[0].callback()
        db_session.expire_all()
        assert db_session.get(Table, table.id).status == "MAINTENANCE"

        fake_timers[1].fire()
        db_session.expire_all()
        assert db_session.get(Table, table.id).status == "AVAILABLE"

    def test_occupied_table_cannot_test(self, db_session, table, cashier, fake_timers):
        billing_service.create_session(table.id, 60, cashier, now=T0)
        with pytest.raises(ConflictError):
            get_coordinator().start_testing(table.id)
        assert fake_timers == []

    def test_testing_table_cannot_start_billing(self, db_session, table, cashier, fake_timers):
        get_coordinator().start_testing(table.id)
        with pytest.raises(ConflictError):
            billing_service.create_session(table.id, 60, cashier, now=T0)
