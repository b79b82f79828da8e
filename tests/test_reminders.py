"""
Tests for the maintenance reminder scan.
"""

from datetime import timedelta

import pytest

from accounting_sync.sync.reminders import (
    STALE_CONFLICT,
    UNSYNCED_INVOICE,
    ReminderScanner,
)
from conftest import START


@pytest.fixture
def scanner(db, clock):
    return ReminderScanner(db, window_days=7, unsynced_after_days=3, clock=clock)


@pytest.fixture
def unsynced_invoice(db):
    return db.insert_entity("invoices", {"invoice_number": "INV-001"}, created_at=START)


class TestScan:
    """Tests for ReminderScanner.scan()."""

    def test_old_unsynced_invoice_gets_reminder(self, scanner, clock, unsynced_invoice):
        """Test that an invoice unsynced for longer than the cutoff is flagged."""
        clock.advance(days=4)

        created = scanner.scan()

        assert len(created) == 1
        assert created[0].reminder_type == UNSYNCED_INVOICE
        assert created[0].entity_id == unsynced_invoice
        assert "INV-001" in created[0].message

    def test_recent_invoice_is_ignored(self, scanner, clock, unsynced_invoice):
        """Test that a fresh invoice is not flagged yet."""
        clock.advance(days=1)

        assert scanner.scan() == []

    def test_mapped_invoice_is_ignored(self, db, scanner, clock):
        """Test that synced invoices never get a reminder."""
        db.insert_entity(
            "invoices", {"invoice_number": "INV-002"}, external_id="inv-x", created_at=START
        )
        clock.advance(days=4)

        assert scanner.scan() == []

    def test_second_scan_creates_nothing(self, scanner, clock, unsynced_invoice):
        """Test that an open reminder inside the window suppresses a duplicate."""
        clock.advance(days=4)
        scanner.scan()
        clock.advance(hours=1)

        assert scanner.scan() == []
        assert len(scanner.list_open()) == 1

    def test_overlapping_scanners_create_one_reminder(
        self, db, clock, unsynced_invoice
    ):
        """Test that two scanners sharing the database agree."""
        clock.advance(days=4)
        first = ReminderScanner(db, clock=clock)
        second = ReminderScanner(db, clock=clock)

        created = first.scan() + second.scan()

        assert len(created) == 1
        assert len(db.list_reminders()) == 1

    def test_new_reminder_after_window(self, scanner, clock, unsynced_invoice):
        """Test that a reminder older than the window is repeated."""
        clock.advance(days=4)
        scanner.scan()
        clock.advance(days=8)

        assert len(scanner.scan()) == 1
        assert len(scanner.list_open()) == 2

    def test_stale_conflict_gets_reminder(self, db, scanner, clock):
        """Test that a conflict pending past the cutoff is flagged."""
        contact_id = db.insert_entity("contacts", {"name": "Acme"}, created_at=START)
        db.insert_conflict("contacts", contact_id, "ext-1", {}, {}, detected_at=START)
        clock.advance(days=4)

        created = scanner.scan()

        assert [r.reminder_type for r in created] == [STALE_CONFLICT]
        assert created[0].entity_type == "contacts"
        assert created[0].entity_id == contact_id

    def test_recent_conflict_is_ignored(self, db, scanner, clock):
        """Test that a new conflict is not flagged yet."""
        db.insert_conflict("contacts", 1, "ext-1", {}, {}, detected_at=START)
        clock.advance(days=1)

        assert scanner.scan() == []


class TestResolve:
    """Tests for resolving reminders."""

    def test_resolved_reminder_is_recreated_on_next_scan(
        self, scanner, clock, unsynced_invoice
    ):
        """Test that resolving without fixing the cause brings the reminder back."""
        clock.advance(days=4)
        reminder = scanner.scan()[0]

        assert scanner.resolve(reminder.id) is True
        assert scanner.list_open() == []
        assert len(scanner.scan()) == 1

    def test_resolve_twice(self, scanner, clock, unsynced_invoice):
        """Test that a second resolve reports no change."""
        clock.advance(days=4)
        reminder = scanner.scan()[0]
        scanner.resolve(reminder.id)

        assert scanner.resolve(reminder.id) is False
