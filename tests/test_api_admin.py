"""
Admin surface: user management and audit log endpoints (role + CSRF checks).
"""
import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.catalog_app.models.audit_log import AuditLog
from src.catalog_app.models.security import RateLimitWindow

pytestmark = pytest.mark.usefixtures("setup_test_db")


def csrf(client):
    return {"X-CSRF-Token": client.csrf}


class TestUsersApi:
    def test_list_requires_login(self, client):
        response = client.get("/api/users")
        assert response.status_code == 401

    def test_list_requires_admin(self, user_client):
        response = user_client.get("/api/users")
        assert response.status_code == 403
        assert response.json()["reason"] == "forbidden"

    def test_list_users(self, admin_client, regular_user):
        response = admin_client.get("/api/users")
        assert response.status_code == 200
        usernames = [u["username"] for u in response.json()]
        assert usernames == ["admin_test", "user_test"]
        assert "password_hash" not in response.json()[0]

    def test_create_requires_csrf(self, admin_client):
        response = admin_client.post(
            "/api/users", json={"username": "editor", "password": "LongEnough1"}
        )
        assert response.status_code == 400
        assert response.json()["csrf_required"] is True

    def test_pre_login_token_is_useless_after_login(self, client, login, admin_user, test_password):
        pre_login = client.get("/api/auth/login").json()["csrf_token"]
        login(client, admin_user.username, test_password)
        response = client.post(
            "/api/users",
            json={"username": "editor", "password": "LongEnough1"},
            headers={"X-CSRF-Token": pre_login},
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "csrf_invalid"

    def test_create_user(self, admin_client, test_db_session):
        response = admin_client.post(
            "/api/users",
            json={"username": "editor", "password": "LongEnough1", "role": "user"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 200
        assert response.json()["username"] == "editor"
        entry = test_db_session.query(AuditLog).filter(AuditLog.action == "user_created").one()
        assert entry.actor == "admin_test"
        assert entry.target == "editor"

    def test_create_user_validation(self, admin_client):
        response = admin_client.post(
            "/api/users",
            json={"username": "editor", "password": "short"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "weak_password"

    def test_change_own_password(self, user_client, login, test_password):
        response = user_client.post(
            "/api/users/me/password",
            json={"current_password": test_password, "new_password": "BrandNewPass9"},
            headers=csrf(user_client),
        )
        assert response.status_code == 200

        user_client.post("/api/auth/logout", headers=csrf(user_client))
        assert login(user_client, "user_test", "BrandNewPass9").status_code == 200

    def test_change_own_password_wrong_current(self, user_client):
        response = user_client.post(
            "/api/users/me/password",
            json={"current_password": "not-it-at-all", "new_password": "BrandNewPass9"},
            headers=csrf(user_client),
        )
        assert response.status_code == 401
        assert response.json()["reason"] == "invalid_current_password"

    def test_reset_password(self, admin_client, regular_user):
        response = admin_client.post(
            f"/api/users/{regular_user.id}/password",
            json={"new_password": "ResetPass123"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 200

    def test_reset_password_unknown_user(self, admin_client):
        response = admin_client.post(
            "/api/users/999/password",
            json={"new_password": "ResetPass123"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 404
        assert response.json()["reason"] == "user_not_found"

    def test_change_role(self, admin_client, regular_user):
        response = admin_client.post(
            f"/api/users/{regular_user.id}/role",
            json={"role": "admin"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 200
        assert response.json()["role"] == "admin"

    def test_last_admin_cannot_demote_self(self, admin_client, admin_user):
        response = admin_client.post(
            f"/api/users/{admin_user.id}/role",
            json={"role": "user"},
            headers=csrf(admin_client),
        )
        assert response.status_code == 403
        assert response.json()["reason"] == "last_admin"

    def test_password_reset_signs_the_user_out(
        self, admin_client, regular_user, test_password, login
    ):
        other = TestClient(app)
        assert login(other, regular_user.username, test_password).status_code == 200
        assert other.get("/api/auth/check").status_code == 200

        admin_client.post(
            f"/api/users/{regular_user.id}/password",
            json={"new_password": "ResetPass123"},
            headers=csrf(admin_client),
        )

        assert other.get("/api/auth/check").status_code == 401
        assert admin_client.get("/api/auth/check").status_code == 200

    def test_role_change_signs_the_user_out(
        self, admin_client, regular_user, test_password, login
    ):
        other = TestClient(app)
        login(other, regular_user.username, test_password)

        admin_client.post(
            f"/api/users/{regular_user.id}/role",
            json={"role": "admin"},
            headers=csrf(admin_client),
        )

        response = other.get("/api/auth/check")
        assert response.status_code == 401
        assert response.json()["reason"] == "not_logged_in"

    def test_own_password_change_keeps_the_session(self, user_client, test_password):
        user_client.post(
            "/api/users/me/password",
            json={"current_password": test_password, "new_password": "BrandNewPass9"},
            headers=csrf(user_client),
        )
        assert user_client.get("/api/auth/check").status_code == 200

    def test_admin_endpoints_are_rate_limited(self, admin_client, test_db_session):
        admin_client.get("/api/users")
        bucket = (
            test_db_session.query(RateLimitWindow)
            .filter(RateLimitWindow.action == "admin_users")
            .one()
        )
        assert bucket.request_count == 1


class TestAuditApi:
    def test_requires_admin(self, user_client):
        assert user_client.get("/api/audit").status_code == 403
        assert user_client.get("/api/audit/stats").status_code == 403

    def test_list(self, admin_client):
        response = admin_client.get("/api/audit")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["action"] == "login_success"
        assert data["items"][0]["actor"] == "admin_test"

    def test_list_filters(self, admin_client):
        assert admin_client.get("/api/audit?action=logout").json()["total"] == 0
        assert admin_client.get("/api/audit?actor=admin_test").json()["total"] == 1

    def test_list_rejects_bad_paging(self, admin_client):
        response = admin_client.get("/api/audit?per_page=500")
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_request"

    def test_stats(self, admin_client):
        response = admin_client.get("/api/audit/stats")
        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["total_records"] == 1
        assert stats["last_24h"] == 1

    def test_rotate_requires_csrf(self, admin_client):
        response = admin_client.post("/api/audit/rotate", json={"retention_months": 6})
        assert response.status_code == 400
        assert response.json()["reason"] == "csrf_invalid"

    def test_rotate(self, admin_client, test_db_session):
        response = admin_client.post(
            "/api/audit/rotate",
            json={"retention_months": 6, "dry_run": True},
            headers=csrf(admin_client),
        )
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["dry_run"] is True
        assert result["deleted"] == 0
        actions = [row.action for row in test_db_session.query(AuditLog)]
        assert "manual_log_rotation" in actions

    def test_rotate_validates_range(self, admin_client):
        response = admin_client.post(
            "/api/audit/rotate", json={"retention_months": 48}, headers=csrf(admin_client)
        )
        assert response.status_code == 400
