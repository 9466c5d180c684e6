"""Tests for role-based permissions and the access decorators."""
from datetime import datetime, timedelta

import pytest

from models import PERMISSIONS, ROLE_PERMISSIONS, SUPER_ADMIN_ROLE, AdminUser, AuditLog, Role

from conftest import ADMIN_PASSWORD, PASSWORD


class TestRoles:
    def test_default_roles_seeded(self, ctx):
        assert {role.name for role in Role.query.all()} == set(ROLE_PERMISSIONS)
        admin = AdminUser.query.filter_by(username="admin").one()
        assert admin.role.name == SUPER_ADMIN_ROLE

    def test_super_admin_grants_everything(self, ctx):
        role = Role.query.filter_by(name=SUPER_ADMIN_ROLE).one()
        assert all(role.grants(p) for p in PERMISSIONS)

    @pytest.mark.parametrize(
        "role_name, permission, expected",
        [
            ("admin", "verify_visits", True),
            ("admin", "user_management", False),
            ("supervisor", "fraud_detection", True),
            ("supervisor", "handle_complaints", False),
            ("analyst", "view_analytics", True),
            ("analyst", "verify_visits", False),
        ],
    )
    def test_role_matrix(self, ctx, make_admin, role_name, permission, expected):
        admin = make_admin(username=f"{role_name}-user", role_name=role_name)
        assert admin.has_permission(permission) is expected

    def test_lock_state(self, ctx, make_admin):
        admin = make_admin()
        now = datetime(2025, 3, 1, 12, 0)
        admin.locked_until = now + timedelta(minutes=5)
        assert admin.is_locked(now)
        assert not admin.is_locked(now + timedelta(minutes=6))


class TestDecorators:
    def login_admin(self, client, username, password=ADMIN_PASSWORD):
        response = client.post("/auth/admin/login", json={"username": username, "password": password})
        assert response.status_code == 200
        return response

    def test_anonymous_gets_401(self, client):
        response = client.get("/api/admin/visits")
        assert response.status_code == 401
        assert response.get_json()["code"] == "unauthorized"

    def test_missing_permission_is_audited(self, app, client, make_admin):
        with app.app_context():
            make_admin(username="viewer", role_name="analyst")
        self.login_admin(client, "viewer")

        response = client.get("/api/admin/visits")
        assert response.status_code == 403
        assert client.get("/api/admin/dashboard/stats").status_code == 200

        with app.app_context():
            denied = AuditLog.query.filter_by(action_type="UNAUTHORIZED_ACCESS").one()
            assert denied.actor_id == "viewer"
            assert denied.details["required"] == ["verify_visits"]

    def test_chw_cannot_use_admin_routes(self, app, client, make_chw):
        with app.app_context():
            email = make_chw().email
        assert client.post("/auth/chw/login", json={"email": email, "password": PASSWORD}).status_code == 200
        assert client.get("/api/admin/visits").status_code == 403

    def test_admin_cannot_use_chw_routes(self, client):
        self.login_admin(client, "admin")
        assert client.get("/api/chws/me").status_code == 403
        assert client.post("/api/visits", json={}).status_code == 403
