"""
Generic request limiter (RateLimitService) and the atomic bucket upsert.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.catalog_app.models.security import RateLimitWindow
from src.catalog_app.services.errors import RateLimited
from src.catalog_app.services.throttle_service import (
    LOGIN_ACTION_IP,
    RateLimitService,
    read_window,
    upsert_window,
)

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestUpsertWindow:
    def test_insert_then_increment(self, test_db_session):
        for _ in range(3):
            upsert_window(test_db_session, "10.0.0.1", "audit_read", NOW, 60)
        assert read_window(test_db_session, "10.0.0.1", "audit_read").request_count == 3
        assert test_db_session.query(RateLimitWindow).count() == 1

    def test_keys_and_actions_are_independent(self, test_db_session):
        upsert_window(test_db_session, "10.0.0.1", "audit_read", NOW, 60)
        upsert_window(test_db_session, "10.0.0.1", "admin_users", NOW, 60)
        upsert_window(test_db_session, "10.0.0.2", "audit_read", NOW, 60)
        assert test_db_session.query(RateLimitWindow).count() == 3

    def test_reset_after_window(self, test_db_session):
        upsert_window(test_db_session, "10.0.0.1", "audit_read", NOW, 60)
        upsert_window(test_db_session, "10.0.0.1", "audit_read", NOW, 60)
        upsert_window(
            test_db_session, "10.0.0.1", "audit_read", NOW + timedelta(seconds=61), 60
        )
        assert read_window(test_db_session, "10.0.0.1", "audit_read").request_count == 1


class TestRateLimitService:
    @pytest.fixture(autouse=True)
    def setup(self, test_db_session):
        self.db = test_db_session
        self.service = RateLimitService()

    def hit(self, seconds=0, **kwargs):
        params = dict(limit=3, window_seconds=60, block_seconds=120)
        params.update(kwargs)
        return self.service.hit(
            self.db, "10.0.0.1", "audit_read", now=NOW + timedelta(seconds=seconds), **params
        )

    def test_counts_up_to_limit(self):
        assert [self.hit(), self.hit(), self.hit()] == [1, 2, 3]

    def test_blocks_once_limit_reached(self):
        for _ in range(3):
            self.hit()
        with pytest.raises(RateLimited) as exc:
            self.hit(seconds=10)
        assert exc.value.status_code == 429
        assert exc.value.retry_after == 110
        assert exc.value.headers() == {"Retry-After": "110"}
        assert exc.value.payload()["retryAfter"] == 110

    def test_blocked_request_is_not_counted(self):
        for _ in range(3):
            self.hit()
        with pytest.raises(RateLimited):
            self.hit(seconds=10)
        assert read_window(self.db, "10.0.0.1", "audit_read").request_count == 3

    def test_window_expiry_resets(self):
        for _ in range(3):
            self.hit()
        assert self.hit(seconds=121) == 1

    def test_block_elapsed_resets_inside_open_window(self):
        self.hit(limit=2, window_seconds=300, block_seconds=60)
        self.hit(limit=2, window_seconds=300, block_seconds=60)
        with pytest.raises(RateLimited):
            self.hit(seconds=30, limit=2, window_seconds=300, block_seconds=60)
        assert self.hit(seconds=61, limit=2, window_seconds=300, block_seconds=60) == 1

    def test_store_failure_fails_open(self):
        broken = MagicMock()
        broken.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        result = self.service.hit(broken, "10.0.0.1", "audit_read", now=NOW)
        assert result == 0
        broken.rollback.assert_called()

    def test_purge_keeps_login_buckets(self):
        self.hit()
        upsert_window(self.db, "10.0.0.1", LOGIN_ACTION_IP, NOW, 900)
        assert self.service.purge(self.db, NOW + timedelta(hours=2)) == 1
        remaining = self.db.query(RateLimitWindow).all()
        assert [w.action for w in remaining] == [LOGIN_ACTION_IP]
