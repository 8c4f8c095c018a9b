"""
Audit log service: best-effort recording, filtered listing, statistics and
retention rotation.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.catalog_app.models.audit_log import AuditLog
from src.catalog_app.services.audit_service import AuditLogService

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestAuditLogService:
    @pytest.fixture(autouse=True)
    def setup(self, test_db_session):
        self.db = test_db_session
        self.audit = AuditLogService()

    def record(self, action, ago=timedelta(0), **kwargs):
        kwargs.setdefault("actor", "admin_test")
        return self.audit.record(self.db, action, now=NOW - ago, **kwargs)

    def test_record_persists_entry(self):
        entry = self.record(
            "login_failed",
            target="alice",
            ip="10.0.0.1",
            metadata={"attempts_window": 2},
            severity="warning",
            success=False,
        )
        assert entry is not None
        page = self.audit.list_entries(self.db)
        item = page["items"][0]
        assert item["action"] == "login_failed"
        assert item["actor"] == "admin_test"
        assert item["metadata"] == {"attempts_window": 2}
        assert item["severity"] == "warning"
        assert item["success"] is False
        assert item["timestamp"].startswith("2026-01-15T12:00:00")

    def test_record_defaults(self):
        self.audit.record(self.db, "logout", severity="loud", now=NOW)
        row = self.db.query(AuditLog).one()
        assert row.actor == "anonymous"
        assert row.severity == "info"

    def test_record_failure_is_swallowed(self):
        broken = MagicMock()
        broken.add.side_effect = OperationalError("INSERT", {}, Exception("locked"))
        assert self.audit.record(broken, "login_success", actor="x") is None

    def test_list_is_newest_first_and_paginated(self):
        for i in range(30):
            self.record("login_success", ago=timedelta(minutes=30 - i), target=f"user{i}")

        page = self.audit.list_entries(self.db, page=1, per_page=25)
        assert page["total"] == 30
        assert page["total_pages"] == 2
        assert len(page["items"]) == 25
        assert page["items"][0]["target"] == "user29"

        second = self.audit.list_entries(self.db, page=2, per_page=25)
        assert len(second["items"]) == 5

    def test_invalid_per_page_falls_back(self):
        assert self.audit.list_entries(self.db, per_page=500)["per_page"] == 25

    def test_filters(self):
        self.record("login_success", actor="alice")
        self.record("login_failed", actor="bob", target="alice")
        self.record("user_created", actor="admin_test", target="carol")

        assert self.audit.list_entries(self.db, action="login_failed")["total"] == 1
        assert self.audit.list_entries(self.db, actor="alice")["total"] == 1
        assert self.audit.list_entries(self.db, search="alice")["total"] == 2
        assert self.audit.list_entries(self.db, search="carol")["total"] == 1

    def test_date_filters(self):
        self.record("login_success", ago=timedelta(days=3))
        self.record("login_success")

        today = NOW.date()
        assert self.audit.list_entries(self.db, from_date=today)["total"] == 1
        assert self.audit.list_entries(self.db, to_date=today - timedelta(days=1))["total"] == 1

    def test_stats(self):
        self.record("login_failed", ago=timedelta(hours=1), success=False)
        self.record("login_success", ago=timedelta(hours=2))
        self.record("login_success", ago=timedelta(days=10))
        self.record("user_created", ago=timedelta(days=200))

        stats = self.audit.stats(self.db, NOW)
        assert stats["total_records"] == 4
        assert stats["last_24h"] == 2
        assert stats["last_week"] == 2
        assert stats["last_month"] == 3
        assert stats["last_6_months"] == 3
        assert stats["older_than_6_months"] == 1
        assert stats["failures_24h"] == 1
        assert stats["top_actions"][0] == {"action": "login_success", "count": 2}
        assert stats["top_actors"] == [{"actor": "admin_test", "count": 3}]

    def test_rotate_dry_run(self):
        self.record("login_success", ago=timedelta(days=200))
        self.record("login_success", ago=timedelta(days=10))

        result = self.audit.rotate(self.db, retention_months=6, now=NOW, dry_run=True)
        assert result["eligible"] == 1
        assert result["deleted"] == 0
        assert self.db.query(AuditLog).count() == 2

    def test_rotate_deletes_in_batches(self):
        for i in range(250):
            self.record("login_failed", ago=timedelta(days=200, minutes=i))
        self.record("login_success", ago=timedelta(days=10))

        result = self.audit.rotate(self.db, retention_months=6, batch_size=100, now=NOW)
        assert result["eligible"] == 250
        assert result["deleted"] == 250
        assert result["batches"] == 3
        assert self.db.query(AuditLog).count() == 1

    def test_rotate_clamps_parameters(self):
        result = self.audit.rotate(self.db, retention_months=99, batch_size=5, now=NOW)
        assert result["retention_months"] == 24
        assert result["batch_size"] == 100
