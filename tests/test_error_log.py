"""
Tests for the sync error ledger.
"""

from datetime import timedelta

import pytest

from accounting_sync.sync.error_log import (
    AUTO_RESOLVER,
    SyncAttempt,
    SyncErrorLog,
    SyncLogFilter,
    SyncLogNotFoundError,
    SyncStatus,
)


def failed(entity_id=7, message="Invalid email", sync_type="contacts"):
    return SyncAttempt(
        sync_type=sync_type,
        status=SyncStatus.FAILED,
        entity_id=entity_id,
        entity_name="Acme Ltd",
        error_message=message,
        error_details={"status_code": 400},
    )


class TestAppend:
    """Tests for SyncErrorLog.append()."""

    def test_append_creates_entry(self, error_log, clock):
        """Test that a first failure creates a row with attempt_count 1."""
        entry = error_log.append(failed())

        assert entry.attempt_count == 1
        assert entry.status == SyncStatus.FAILED
        assert entry.created_at == clock()
        assert entry.error_details == {"status_code": 400}
        assert not entry.is_resolved

    def test_retry_within_window_bumps_attempt_count(self, error_log, clock):
        """Test that a retry 10 minutes later updates the same row."""
        first = error_log.append(failed(message="Invalid email"))
        clock.advance(minutes=10)

        second = error_log.append(failed(message="Still invalid"))

        assert second.id == first.id
        assert second.attempt_count == 2
        assert second.error_message == "Still invalid"
        assert second.last_attempt_at == clock()
        assert second.created_at == first.created_at
        assert len(error_log.query()) == 1

    def test_retry_outside_window_creates_new_entry(self, error_log, clock):
        """Test that an attempt after the window starts a new row."""
        first = error_log.append(failed())
        clock.advance(minutes=61)

        second = error_log.append(failed())

        assert second.id != first.id
        assert second.attempt_count == 1

    def test_different_entities_are_separate(self, error_log):
        """Test that the logical key includes the entity id."""
        error_log.append(failed(entity_id=1))
        error_log.append(failed(entity_id=2))

        assert len(error_log.query()) == 2

    def test_success_closes_open_failure(self, error_log, clock):
        """Test that a later success resolves the failed row automatically."""
        first = error_log.append(failed())
        clock.advance(minutes=5)

        entry = error_log.append(
            SyncAttempt(sync_type="contacts", status=SyncStatus.SUCCESS, entity_id=7)
        )

        assert entry.id == first.id
        assert entry.status == SyncStatus.SUCCESS
        assert entry.resolved_by == AUTO_RESOLVER
        assert error_log.query(SyncLogFilter(unresolved_only=True)) == []

    def test_failure_after_success_starts_new_row(self, error_log):
        """Test that a resolved row is never reopened."""
        ok = error_log.append(
            SyncAttempt(sync_type="contacts", status=SyncStatus.SUCCESS, entity_id=7)
        )

        entry = error_log.append(failed())

        assert entry.id != ok.id

    def test_custom_retry_window(self, db, clock):
        """Test that the retry window is configurable."""
        log = SyncErrorLog(db, retry_window=timedelta(minutes=5), clock=clock)
        first = log.append(failed())
        clock.advance(minutes=10)

        assert log.append(failed()).id != first.id


class TestQuery:
    """Tests for filtering the ledger."""

    def test_filters_combine(self, error_log, clock):
        """Test filtering by unresolved, type, status and recency together."""
        error_log.append(failed(entity_id=1))
        error_log.append(failed(entity_id=2, sync_type="invoices"))
        error_log.append(
            SyncAttempt(sync_type="contacts", status=SyncStatus.SKIPPED, entity_id=3)
        )
        clock.advance(hours=30)
        error_log.append(failed(entity_id=4))

        recent = error_log.query(SyncLogFilter(recent_hours=24))
        assert [e.entity_id for e in recent] == [4]

        contacts_failed = error_log.query(
            SyncLogFilter(sync_type="contacts", status=SyncStatus.FAILED)
        )
        assert {e.entity_id for e in contacts_failed} == {1, 4}

    def test_newest_first_and_limit(self, error_log, clock):
        """Test ordering by last attempt and the row limit."""
        for entity_id in range(3):
            error_log.append(failed(entity_id=entity_id))
            clock.advance(minutes=1)

        entries = error_log.query(SyncLogFilter(limit=2))
        assert [e.entity_id for e in entries] == [2, 1]


class TestResolveAndStats:
    """Tests for resolve() and stats()."""

    def test_resolve_records_who_and_notes(self, error_log, clock):
        """Test that an operator resolution is stored."""
        entry = error_log.append(failed())

        resolved = error_log.resolve(entry.id, "alice", notes="fixed the email")

        assert resolved.resolved_by == "alice"
        assert resolved.notes == "fixed the email"
        assert resolved.resolved_at == clock()

    def test_resolve_twice_is_noop(self, error_log):
        """Test that a second resolution keeps the first."""
        entry = error_log.append(failed())
        error_log.resolve(entry.id, "alice")

        again = error_log.resolve(entry.id, "bob")

        assert again.resolved_by == "alice"

    def test_resolve_unknown_raises(self, error_log):
        """Test that resolving a missing entry raises."""
        with pytest.raises(SyncLogNotFoundError):
            error_log.resolve(999, "alice")

    def test_group_counts(self, error_log):
        """Test counts per (sync_type, status), optionally filtered."""
        error_log.append(failed(entity_id=1))
        error_log.append(failed(entity_id=2))
        error_log.append(failed(entity_id=3, sync_type="invoices"))

        assert error_log.group_counts() == {
            ("contacts", "FAILED"): 2,
            ("invoices", "FAILED"): 1,
        }
        assert error_log.group_counts(SyncLogFilter(sync_type="invoices")) == {
            ("invoices", "FAILED"): 1,
        }

    def test_stats(self, error_log, clock):
        """Test the dashboard summary numbers."""
        error_log.append(failed(entity_id=1))
        error_log.append(failed(entity_id=2))
        error_log.append(
            SyncAttempt(sync_type="invoices", status=SyncStatus.SUCCESS, entity_id=3)
        )
        error_log.resolve(error_log.query()[-1].id, "alice")

        stats = error_log.stats()

        assert stats.total == 3
        assert stats.by_type["contacts"]["FAILED"] == 2
        assert stats.by_type["invoices"]["SUCCESS"] == 1
        assert stats.unresolved_failures == 1
        assert stats.failures_last_24h == 2
        assert stats.to_dict()["total"] == 3
