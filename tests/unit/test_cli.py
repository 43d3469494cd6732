# tests/unit/test_cli.py
"""Unit tests for the retention CLI."""

import pytest
from sample_models import Notification, ago

from retention_engine.cli import retention as cli

REGISTRY = "sample_models:build_registry"


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, session_factory):
    """Point the CLI at the test database and leave logging alone."""
    import retention_engine.database
    import retention_engine.logging_config

    monkeypatch.setattr(cli, "get_db_session", session_factory)
    monkeypatch.setattr(retention_engine.database, "get_session_factory", lambda: session_factory)
    monkeypatch.setattr(retention_engine.logging_config, "configure_logging", lambda **kwargs: None)


def _seed(db, expired):
    db.add_all([Notification(title=f"old {i}", created_at=ago(days=3650)) for i in range(expired)])
    db.commit()


class TestListPolicies:
    def test_prints_each_policy(self, capsys):
        cli.main(["--registry", REGISTRY, "list-policies"])

        out = capsys.readouterr().out
        assert "notifications (Notification)" in out
        assert "events (Event)" in out
        assert "Strategy: delete_all" in out


class TestStatus:
    def test_warns_about_in_process_locks(self, db, capsys):
        _seed(db, expired=2)

        cli.main(["--registry", REGISTRY, "status"])

        out = capsys.readouterr().out
        assert "Lock backend: in_process (in_process)" in out
        assert "not mutually excluded" in out
        assert "notifications: 2" in out


class TestCleanup:
    def test_requires_confirm_or_dry_run(self, db, count_rows):
        _seed(db, expired=1)

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--registry", REGISTRY, "cleanup", "notifications"])

        assert exc_info.value.code == 1
        assert count_rows(Notification) == 1

    def test_dry_run(self, db, count_rows, capsys):
        _seed(db, expired=3)

        cli.main(["--registry", REGISTRY, "cleanup", "notifications", "--dry-run"])

        assert "notifications: 3 expired" in capsys.readouterr().out
        assert count_rows(Notification) == 3

    def test_confirmed(self, db, count_rows, capsys):
        _seed(db, expired=3)

        cli.main(["--registry", REGISTRY, "cleanup", "notifications", "--confirm"])

        assert "notifications: 3 removed, 0 refused" in capsys.readouterr().out
        assert count_rows(Notification) == 0

    def test_unknown_table_exits_nonzero(self, capsys):
        with pytest.raises(SystemExit):
            cli.main(["--registry", REGISTRY, "cleanup", "tags", "--confirm"])

        assert "tags: no retention policy" in capsys.readouterr().out


class TestRounds:
    def test_run_round_reports_next_round(self, db, monkeypatch, capsys):
        import sample_models

        def small_batches():
            registry = sample_models.build_registry()
            registry.update(Notification, batch_limit=1)
            return registry

        monkeypatch.setattr(sample_models, "small_batches", small_batches, raising=False)
        _seed(db, expired=2)

        cli.main(["--registry", "sample_models:small_batches", "run-round", "--round", "1"])

        out = capsys.readouterr().out
        assert "Round 1: retriggered" in out
        assert "run round 2 next" in out

    def test_drain(self, db, count_rows, capsys):
        _seed(db, expired=2)

        cli.main(["--registry", REGISTRY, "drain"])

        assert "Round 1: drained" in capsys.readouterr().out
        assert count_rows(Notification) == 0
