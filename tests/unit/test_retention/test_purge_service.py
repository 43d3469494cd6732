# tests/unit/test_retention/test_purge_service.py
"""Unit tests for the cleanup executor (destroy / delete_all / dry run)."""

import logging
from datetime import timedelta

import pytest
from sample_models import FIXED_NOW, Event, Message, Notification, Tag, ago
from sqlalchemy import event

from retention_engine.errors import RemovalRefused
from retention_engine.services.retention.purge_service import CleanupExecutor
from retention_engine.services.retention.results import CleanupResult


@pytest.fixture
def before_delete(request):
    """Attach a before_delete mapper listener for the duration of a test."""

    def _attach(entity, fn):
        event.listen(entity, "before_delete", fn)
        request.addfinalizer(lambda: event.remove(entity, "before_delete", fn))

    return _attach


def _seed_notifications(db, expired=0, fresh=0):
    db.add_all([Notification(title=f"old {i}", created_at=ago(days=40 + i)) for i in range(expired)])
    db.add_all([Notification(title=f"new {i}", created_at=ago(days=1)) for i in range(fresh)])
    db.commit()


class TestDestroy:
    """Tests for the destroy strategy."""

    def test_removes_expired_rows_only(self, db, executor, count_rows):
        _seed_notifications(db, expired=3, fresh=2)

        result = executor.run(db, Notification)

        assert result.to_dict() == {"count": 3, "failed": 0, "remaining": False, "dry_run": False}
        assert count_rows(Notification) == 2

    def test_guard_refusals_count_as_failed(self, db, executor, count_rows):
        """Important messages are kept; they are not backlog."""
        db.add_all(
            [
                Message(body="hello", important=False, created_at=ago(days=8)),
                Message(body="contract", important=True, created_at=ago(days=8)),
            ]
        )
        db.commit()

        result = executor.run(db, Message)

        assert result.to_dict() == {"count": 1, "failed": 1, "remaining": False, "dry_run": False}
        assert [m.body for m in db.query(Message).all()] == ["contract"]

    def test_host_hook_can_refuse_removal(self, db, executor, count_rows, before_delete):
        def refuse_pinned(mapper, connection, target):
            if target.title == "old 1":
                raise RemovalRefused("pinned")

        before_delete(Notification, refuse_pinned)
        _seed_notifications(db, expired=3)

        result = executor.run(db, Notification)

        assert result.count == 2
        assert result.failed == 1
        assert result.remaining is False
        assert [n.title for n in db.query(Notification).all()] == ["old 1"]

    def test_respects_batch_limit(self, db, executor, registry, count_rows):
        registry.update(Notification, batch_limit=2)
        _seed_notifications(db, expired=5)

        result = executor.run(db, Notification)

        assert result.count == 2
        assert result.remaining is True
        assert count_rows(Notification) == 3

    def test_removes_oldest_identifiers_first(self, db, executor, registry):
        registry.update(Notification, batch_limit=2)
        _seed_notifications(db, expired=4)
        ids = sorted(n.id for n in db.query(Notification).all())

        executor.run(db, Notification)

        assert sorted(n.id for n in db.query(Notification).all()) == ids[2:]

    def test_refusals_consume_batch_limit(self, db, executor, registry):
        """destroyed + failed never exceeds batch_limit."""
        registry.update(Message, batch_limit=2)
        db.add_all([Message(body=f"m{i}", important=True, created_at=ago(days=10)) for i in range(3)])
        db.commit()

        result = executor.run(db, Message)

        assert result.count == 0
        assert result.failed == 2
        assert result.remaining is True

    def test_earlier_removals_survive_a_store_error(self, db, executor, count_rows, before_delete):
        """Each row commits on its own; a failure does not undo prior rows."""
        seen = []

        def fail_on_third(mapper, connection, target):
            seen.append(target.id)
            if len(seen) == 3:
                raise RuntimeError("disk full")

        before_delete(Notification, fail_on_third)
        _seed_notifications(db, expired=4)

        with pytest.raises(RuntimeError, match="disk full"):
            executor.run(db, Notification)

        assert count_rows(Notification) == 2
        # Lock was released despite the failure
        assert executor.locks.in_process.lock_for("notifications").locked() is False

    def test_logs_completion_event(self, db, executor, caplog):
        _seed_notifications(db, expired=1)

        with caplog.at_level(logging.INFO):
            executor.run(db, Notification)

        events = [getattr(r, "event", None) for r in caplog.records]
        assert "cleanup_started" in events
        assert "cleanup_completed" in events


class TestDeleteAll:
    """Tests for the delete_all strategy."""

    def test_bulk_deletes_expired_rows(self, db, executor, count_rows):
        db.add_all([Event(name=f"old {i}", occurred_at=ago(days=100)) for i in range(5)])
        db.add(Event(name="new", occurred_at=ago(days=1)))
        db.commit()

        result = executor.run(db, Event)

        assert result.to_dict() == {"count": 5, "remaining": False, "dry_run": False}
        assert count_rows(Event) == 1

    def test_ignores_guards(self, db, locks, count_rows):
        from retention_engine.services.retention.policy_service import PolicyRegistry

        registry = PolicyRegistry()
        registry.register(Message, timedelta(days=7), "delete_all", guard=lambda message: False)
        executor = CleanupExecutor(registry, locks=locks, clock=lambda: FIXED_NOW)
        db.add(Message(body="x", important=True, created_at=ago(days=8)))
        db.commit()

        assert executor.run(db, Message).count == 1
        assert count_rows(Message) == 0

    def test_respects_batch_limit(self, db, executor, registry, count_rows):
        registry.update(Event, batch_limit=2)
        db.add_all([Event(name=f"old {i}", occurred_at=ago(days=100)) for i in range(5)])
        db.commit()

        result = executor.run(db, Event)

        assert result.count == 2
        assert result.remaining is True
        assert count_rows(Event) == 3

    def test_issues_no_delete_when_nothing_expired(self, db, engine, executor):
        db.add(Event(name="new", occurred_at=ago(days=1)))
        db.commit()
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine, "before_cursor_execute", capture)
        try:
            result = executor.run(db, Event)
        finally:
            event.remove(engine, "before_cursor_execute", capture)

        assert result.count == 0
        assert result.remaining is False
        assert not any(s.lstrip().upper().startswith("DELETE") for s in statements)


class TestDryRun:
    """Tests for dry runs."""

    def test_counts_all_expired_ignoring_batch_limit(self, db, executor, registry, count_rows):
        registry.update(Notification, batch_limit=2)
        _seed_notifications(db, expired=5, fresh=1)

        result = executor.dry_run(db, Notification)

        assert result.to_dict() == {"count": 5, "dry_run": True}
        assert count_rows(Notification) == 6

    def test_is_idempotent(self, db, executor, count_rows):
        _seed_notifications(db, expired=3)

        first = executor.run(db, Notification, dry_run=True)
        second = executor.run(db, Notification, dry_run=True)

        assert first.count == second.count == 3
        assert count_rows(Notification) == 3

    def test_guarded_rows_still_counted(self, db, executor):
        db.add(Message(body="important", important=True, created_at=ago(days=30)))
        db.commit()

        assert executor.dry_run(db, Message).count == 1


class TestExecutorRun:
    """Tests for CleanupExecutor.run() dispatch."""

    def test_unregistered_entity_returns_none(self, db, executor):
        db.add(Tag(label="x", created_at=ago(days=1000)))
        db.commit()

        assert executor.run(db, Tag) is None

    def test_accepts_table_name(self, db, executor, count_rows):
        _seed_notifications(db, expired=1)

        assert executor.run(db, "notifications").count == 1
        assert count_rows(Notification) == 0

    def test_skipped_when_lock_held(self, db, executor, count_rows):
        _seed_notifications(db, expired=2)
        held = executor.locks.in_process.lock_for("notifications")
        held.acquire()
        try:
            result = executor.run(db, Notification)
        finally:
            held.release()

        assert result.to_dict() == {"count": 0, "skipped": True, "reason": "locked", "dry_run": False}
        assert count_rows(Notification) == 2

    def test_uses_clock_for_cutoff(self, db, registry, locks, count_rows):
        """A row at exactly now - period is kept; one microsecond later it expires."""
        db.add(Notification(title="edge", created_at=ago(days=30)))
        db.commit()

        at_cutoff = CleanupExecutor(registry, locks=locks, clock=lambda: FIXED_NOW)
        assert at_cutoff.run(db, Notification).count == 0

        just_after = CleanupExecutor(registry, locks=locks, clock=lambda: FIXED_NOW + timedelta(microseconds=1))
        assert just_after.run(db, Notification).count == 1
        assert count_rows(Notification) == 0


class TestCleanupResult:
    """Field presence rules of CleanupResult.to_dict()."""

    def test_skipped_shape(self):
        assert CleanupResult.skipped_result().to_dict() == {
            "count": 0,
            "skipped": True,
            "reason": "locked",
            "dry_run": False,
        }

    def test_dry_run_shape(self):
        assert CleanupResult(count=7, dry_run=True).to_dict() == {"count": 7, "dry_run": True}

    def test_failed_only_when_set(self):
        assert "failed" not in CleanupResult(count=1, remaining=False).to_dict()
        assert CleanupResult(count=1, failed=0, remaining=False).to_dict()["failed"] == 0
