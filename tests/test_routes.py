"""HTTP-level tests for the JSON blueprints."""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from models import AdminUser, AuditLog, Visit

from conftest import ADMIN_PASSWORD, PASSWORD, to_millis


def admin_login(client, username="admin", password=ADMIN_PASSWORD):
    return client.post("/auth/admin/login", json={"username": username, "password": password})


def chw_login(client, email, password=PASSWORD):
    return client.post("/auth/chw/login", json={"email": email, "password": password})


@pytest.fixture
def field_data(app, make_chw, make_patient):
    """One CHW plus one enrolled patient, returned as plain values."""
    with app.app_context():
        chw = make_chw(chw_code="CHW-ROUTE")
        patient, tag = make_patient("PAT-ROUTE")
        return {"email": chw.email, "chw_id": chw.chw_code, "patient_id": patient.patient_code, "token": tag.token}


def visit_body(data, when=None, **extra):
    when = when or datetime.utcnow() - timedelta(hours=1)
    body = {
        "patient_id": data["patient_id"],
        "location": {"latitude": -1.2921, "longitude": 36.8219, "accuracy": 12},
        "timestamp": to_millis(when),
        "tag_payload": data["token"],
        "signature": "0xsigned",
        "visit_type": "routine_checkup",
        "duration": 25,
    }
    body.update(extra)
    return body


class TestService:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["database"] == "connected"
        assert body["ledger"] == "disabled"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route_is_json(self, client):
        response = client.get("/api/nowhere")
        assert response.status_code == 404
        assert response.get_json()["code"] == "not_found"


class TestAuth:
    def test_admin_login_and_logout(self, client):
        response = admin_login(client)
        assert response.status_code == 200
        assert response.get_json()["admin"]["role"] == "super_admin"
        assert client.post("/auth/logout").status_code == 200
        assert client.get("/api/admin/dashboard/stats").status_code == 401

    def test_bad_body_is_rejected(self, client):
        response = client.post("/auth/admin/login", json={"username": "admin"})
        assert response.status_code == 400
        assert "password" in response.get_json()["details"]["fields"]

    def test_lockout_after_failed_attempts(self, app, client):
        for _ in range(5):
            assert admin_login(client, password="wrong-password").status_code == 401
        response = admin_login(client)
        assert response.status_code == 403
        with app.app_context():
            assert AdminUser.query.filter_by(username="admin").one().locked_until is not None

    def test_chw_login(self, client, field_data):
        assert chw_login(client, field_data["email"], "not-the-password").status_code == 401
        response = chw_login(client, field_data["email"].upper())
        assert response.status_code == 200
        assert response.get_json()["chw"]["chw_id"] == field_data["chw_id"]
        assert client.get("/api/chws/me").get_json()["chw"]["chw_id"] == field_data["chw_id"]

    def test_change_password_policy(self, client, field_data):
        chw_login(client, field_data["email"])
        weak = client.post("/auth/change-password", json={"current_password": PASSWORD, "new_password": "alllowercase12"})
        assert weak.status_code == 400
        ok = client.post("/auth/change-password", json={"current_password": PASSWORD, "new_password": "Better-Secret#99"})
        assert ok.status_code == 200


class TestPatients:
    def test_enroll_and_verify_tag(self, app, client, make_chw):
        admin_login(client)
        response = client.post("/api/patients", json={"patient_id": "PAT-NEW", "age_group": "18-35", "consent_given": True})
        assert response.status_code == 201
        token = response.get_json()["tag"]["token"]
        assert client.post("/api/patients", json={"patient_id": "PAT-NEW"}).status_code == 409

        detail = client.get("/api/patients/PAT-NEW").get_json()
        assert all("token" not in tag for tag in detail["tags"])

        with app.app_context():
            email = make_chw().email
        client.post("/auth/logout")
        chw_login(client, email)
        verified = client.post("/api/patients/verify-tag", json={"token": token})
        assert verified.status_code == 200
        assert verified.get_json()["patient"]["patient_id"] == "PAT-NEW"
        assert client.post("/api/patients/verify-tag", json={"token": "bogus"}).status_code == 404

    def test_list_and_stats(self, app, client, make_patient):
        with app.app_context():
            make_patient("PAT-N1", region="North", age_group="18-35")
            make_patient("PAT-N2", region="North", age_group="36-50")
            make_patient("PAT-S1", region="South", age_group="18-35")
        admin_login(client)

        listed = client.get("/api/patients?region=North").get_json()
        assert sorted(p["patient_id"] for p in listed["patients"]) == ["PAT-N1", "PAT-N2"]
        assert listed["pagination"]["total"] == 2
        assert client.get("/api/patients?per_page=-1").get_json()["pagination"]["per_page"] == 1

        stats = client.get("/api/patients/stats").get_json()
        assert stats["total_patients"] == 3
        assert stats["active_patients"] == 3
        assert stats["by_region"] == {"North": 2, "South": 1}
        assert stats["by_age_group"] == {"18-35": 2, "36-50": 1}


class TestChwManagement:
    def test_detail_lists_recent_visits(self, client, field_data):
        chw_login(client, field_data["email"])
        visit_id = client.post("/api/visits", json=visit_body(field_data)).get_json()["visit"]["visit_id"]
        client.post("/auth/logout")
        admin_login(client)

        detail = client.get(f"/api/chws/{field_data['chw_id']}").get_json()
        assert detail["chw"]["is_active"] is True
        assert detail["visits_by_status"] == {"pending": 1}
        assert [v["visit_id"] for v in detail["recent_visits"]] == [visit_id]
        assert client.get("/api/chws/CHW-GHOST").status_code == 404

    def test_deactivation_blocks_field_work(self, app, client, field_data):
        field_client = app.test_client()
        assert chw_login(field_client, field_data["email"]).status_code == 200

        admin_login(client)
        response = client.post(f"/api/chws/{field_data['chw_id']}/deactivate")
        assert response.status_code == 200
        assert response.get_json()["chw"]["is_active"] is False
        assert client.post("/api/chws/CHW-GHOST/deactivate").status_code == 404

        assert field_client.post("/api/visits", json=visit_body(field_data)).status_code == 403
        assert chw_login(app.test_client(), field_data["email"]).status_code == 403
        with app.app_context():
            assert AuditLog.query.filter_by(action_type="CHW_DEACTIVATED").count() == 1

    def test_list_page_size_is_clamped(self, client, field_data):
        admin_login(client)
        listed = client.get("/api/chws?per_page=-1").get_json()
        assert listed["pagination"]["per_page"] == 1
        assert len(listed["chws"]) == 1


class TestVisits:
    def test_log_and_list_visit(self, client, field_data):
        chw_login(client, field_data["email"])
        response = client.post("/api/visits", json=visit_body(field_data))
        assert response.status_code == 201
        visit = response.get_json()["visit"]
        assert visit["status"] == "pending"
        assert visit["ledger_status"] == "unavailable"
        assert len(visit["visit_hash"]) == 64

        listed = client.get("/api/visits").get_json()
        assert [v["visit_id"] for v in listed["visits"]] == [visit["visit_id"]]
        assert client.get(f"/api/visits/{visit['visit_id']}").status_code == 200

    def test_missing_fields(self, client, field_data):
        chw_login(client, field_data["email"])
        response = client.post("/api/visits", json=visit_body(field_data, signature=None))
        assert response.status_code == 400
        assert response.get_json()["code"] == "invalid_input"

    def test_other_chw_cannot_read_visit(self, app, client, field_data, make_chw):
        chw_login(client, field_data["email"])
        visit_id = client.post("/api/visits", json=visit_body(field_data)).get_json()["visit"]["visit_id"]
        client.post("/auth/logout")
        with app.app_context():
            email = make_chw().email
        chw_login(client, email)
        assert client.get(f"/api/visits/{visit_id}").status_code == 404


class TestAdminReview:
    @pytest.fixture
    def visit_id(self, client, field_data):
        chw_login(client, field_data["email"])
        visit_id = client.post("/api/visits", json=visit_body(field_data)).get_json()["visit"]["visit_id"]
        client.post("/auth/logout")
        admin_login(client)
        return visit_id

    def test_verify_and_reject_transitions(self, app, client, visit_id):
        detail = client.get(f"/api/admin/visits/{visit_id}").get_json()["visit"]
        assert detail["integrity_ok"] is True
        assert detail["feedback"] is None

        assert client.post(f"/api/admin/visits/{visit_id}/reject", json={}).status_code == 400
        verified = client.post(f"/api/admin/visits/{visit_id}/verify", json={"notes": "Phoned patient"})
        assert verified.get_json()["status"] == "verified"
        assert client.post(f"/api/admin/visits/{visit_id}/verify").status_code == 200

        with app.app_context():
            assert Visit.query.filter_by(visit_id=visit_id).one().verified_by == "admin"
            assert AuditLog.query.filter_by(action_type="VISIT_VERIFIED").count() == 2

    def test_fraud_flags_raise_score(self, client, visit_id):
        first = client.post(f"/api/admin/visits/{visit_id}/fraud-flags", json={"type": "gps", "severity": "critical"})
        assert first.status_code == 201
        second = client.post(f"/api/admin/visits/{visit_id}/fraud-flags", json={"type": "sig", "severity": "critical"})
        body = second.get_json()
        assert body["fraud_score"] == 80
        assert body["review_candidate"] is True

        suspicious = client.get("/api/admin/suspicious-visits").get_json()["visits"]
        assert [v["visit_id"] for v in suspicious] == [visit_id]
        assert client.get("/api/admin/dashboard/stats").get_json()["fraud_alerts"] == 1

    def test_ledger_endpoints_without_sink(self, client, visit_id):
        assert client.get(f"/api/admin/visits/{visit_id}/ledger-status").status_code == 503
        assert client.post(f"/api/admin/visits/{visit_id}/anchor").status_code == 503

    def test_fraud_alerts_and_resolution(self, client, visit_id):
        scan = client.get("/api/admin/fraud-alerts").get_json()
        assert scan["summary"]["total"] == 0
        assert scan["failed_rules"] == []
        resolved = client.post("/api/admin/fraud-alerts/FREQ_abc/resolve", json={"resolution": "dismissed"})
        assert resolved.status_code == 200
        assert client.post("/api/admin/fraud-alerts/FREQ_abc/resolve", json={}).status_code == 400

    def test_alerts_report_event_and_scan_times(self, client, field_data):
        chw_login(client, field_data["email"])
        start = datetime.utcnow() - timedelta(minutes=40)
        for i in range(6):
            assert client.post("/api/visits", json=visit_body(field_data, when=start + timedelta(minutes=5 * i))).status_code == 201
        client.post("/auth/logout")
        admin_login(client)

        scan = client.get("/api/admin/fraud-alerts").get_json()
        assert [a["type"] for a in scan["alerts"]] == ["High Visit Frequency"]
        alert = scan["alerts"][0]
        assert alert["scanned_at"] == scan["scanned_at"]
        assert alert["detected_at"] < alert["scanned_at"]

    def test_analytics_timeframe(self, client, visit_id):
        assert client.get("/api/admin/analytics?timeframe=7d").status_code == 200
        assert client.get("/api/admin/analytics?timeframe=2w").status_code == 400

    def test_admin_sees_sensitive_detail(self, client, visit_id):
        response = client.get(f"/api/visits/{visit_id}")
        assert response.status_code == 200
        assert "signature" in response.get_json()["visit"]


class TestFeedbackFlow:
    PHONE = "+254711000222"

    def test_end_to_end(self, app, client, field_data):
        chw_login(client, field_data["email"])
        visit_id = client.post("/api/visits", json=visit_body(field_data)).get_json()["visit"]["visit_id"]
        client.post("/auth/logout")

        assert client.get(f"/api/feedback/eligibility/{visit_id}").get_json()["eligible"] is True

        with patch("utils.feedback_gate.generate_otp", return_value="555123"):
            sent = client.post("/api/feedback/otp", json={"phone": self.PHONE, "visit_id": visit_id})
        assert sent.status_code == 200
        assert sent.get_json()["channel"] == "logged"

        early = client.post("/api/feedback", json={"visit_id": visit_id, "phone": self.PHONE, "rating": {"overall": 5}})
        assert early.status_code == 403

        wrong = client.post("/api/feedback/otp/verify", json={"phone": self.PHONE, "otp": "000000", "visit_id": visit_id})
        assert wrong.status_code == 400
        assert wrong.get_json()["code"] == "otp_mismatch"
        ok = client.post("/api/feedback/otp/verify", json={"phone": self.PHONE, "otp": "555123", "visit_id": visit_id})
        assert ok.status_code == 200

        submitted = client.post(
            "/api/feedback",
            json={"visit_id": visit_id, "phone": self.PHONE, "rating": {"overall": 5}, "comments": {"general": "Great"}},
        )
        assert submitted.status_code == 201
        assert submitted.get_json()["status"] == "submitted"

        again = client.post("/api/feedback", json={"visit_id": visit_id, "phone": self.PHONE, "rating": {"overall": 1}})
        assert again.status_code == 403
        assert client.get(f"/api/feedback/eligibility/{visit_id}").get_json()["reason"] == "feedback_exists"

        with app.app_context():
            assert Visit.query.filter_by(visit_id=visit_id).one().has_feedback

    def test_missing_fields(self, client):
        response = client.post("/api/feedback/otp", json={"phone": self.PHONE})
        assert response.status_code == 400
        assert response.get_json()["details"]["fields"] == ["visit_id"]
