"""Tests for the OTP-gated feedback flow."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from models import Feedback
from utils.anomaly_engine import run_anomaly_scan
from utils.errors import (
    Conflict,
    Expired,
    ExternalUnavailable,
    FeedbackNotEligible,
    Forbidden,
    InvalidInput,
    NotFound,
    OtpMismatch,
)
from utils.feedback_gate import (
    check_eligibility,
    request_otp,
    resolve_feedback,
    review_feedback,
    submit_feedback,
    verify_otp,
)

NOW = datetime(2025, 3, 1, 12, 0, 0)
PHONE = "+254711000111"
OTP = "482913"


@pytest.fixture
def fixed_otp():
    with patch("utils.feedback_gate.generate_otp", return_value=OTP) as mocked:
        yield mocked


@pytest.fixture
def visit(ctx, make_chw, make_patient, make_visit):
    chw = make_chw()
    patient, tag = make_patient()
    return make_visit(chw, patient, tag, NOW - timedelta(days=1))


def rating_payload(overall=4, **extra):
    payload = {
        "rating": {"overall": overall, "categories": {"professionalism": 5, "timeliness": 3}},
        "comments": {"positive": "Friendly and on time"},
    }
    payload.update(extra)
    return payload


def verified_grant(visit_id, now=NOW):
    request_otp(PHONE, visit_id, now=now)
    return verify_otp(PHONE, OTP, visit_id, now=now + timedelta(minutes=1))


class TestEligibility:
    def test_recent_visit_is_eligible(self, visit):
        result = check_eligibility(visit.visit_id, now=NOW)
        assert result["eligible"] is True
        assert result["visit"]["chw_id"] == visit.chw_code

    def test_unknown_visit(self, ctx):
        assert check_eligibility("nope", now=NOW) == {"eligible": False, "reason": "visit_not_found"}

    def test_window_closes_after_seven_days(self, visit):
        later = visit.timestamp + timedelta(days=7, seconds=1)
        assert check_eligibility(visit.visit_id, now=later) == {"eligible": False, "reason": "window_expired"}
        assert check_eligibility(visit.visit_id, now=visit.timestamp + timedelta(days=7))["eligible"]

    def test_future_dated_visit_not_eligible(self, ctx, make_chw, make_patient, make_visit):
        chw = make_chw()
        patient, tag = make_patient()
        ahead = NOW + timedelta(days=1)
        visit = make_visit(chw, patient, tag, ahead, now=ahead)
        assert check_eligibility(visit.visit_id, now=NOW) == {"eligible": False, "reason": "visit_in_future"}
        assert check_eligibility(visit.visit_id, now=NOW + timedelta(days=30))["reason"] == "window_expired"
        with pytest.raises(FeedbackNotEligible):
            request_otp(PHONE, visit.visit_id, now=NOW)

    def test_visit_within_clock_skew_is_eligible(self, ctx, make_chw, make_patient, make_visit):
        chw = make_chw()
        patient, tag = make_patient()
        visit = make_visit(chw, patient, tag, NOW + timedelta(minutes=2), now=NOW)
        assert check_eligibility(visit.visit_id, now=NOW)["eligible"] is True


class TestOtp:
    def test_request_and_verify(self, visit, fixed_otp):
        result = request_otp(PHONE, visit.visit_id, now=NOW)
        assert result["channel"] == "logged"
        assert result["expires_in"] == 600
        grant = verify_otp(PHONE, OTP, visit.visit_id, now=NOW + timedelta(minutes=2))
        assert grant["visit_id"] == visit.visit_id
        assert grant["phone"] == PHONE
        assert grant["attempts"] == 1

    def test_otp_is_single_use(self, visit, fixed_otp):
        verified_grant(visit.visit_id)
        with pytest.raises(NotFound):
            verify_otp(PHONE, OTP, visit.visit_id, now=NOW + timedelta(minutes=2))

    def test_expired_otp_is_cleared(self, visit, fixed_otp):
        request_otp(PHONE, visit.visit_id, now=NOW)
        with pytest.raises(Expired):
            verify_otp(PHONE, OTP, visit.visit_id, now=NOW + timedelta(minutes=10, seconds=1))
        with pytest.raises(NotFound):
            verify_otp(PHONE, OTP, visit.visit_id, now=NOW + timedelta(minutes=11))

    def test_wrong_code_counts_attempts(self, visit, fixed_otp):
        request_otp(PHONE, visit.visit_id, now=NOW)
        with pytest.raises(OtpMismatch):
            verify_otp(PHONE, "000000", visit.visit_id, now=NOW)
        grant = verify_otp(PHONE, OTP, visit.visit_id, now=NOW)
        assert grant["attempts"] == 2

    def test_entry_cleared_after_max_attempts(self, visit, fixed_otp):
        request_otp(PHONE, visit.visit_id, now=NOW)
        for _ in range(5):
            with pytest.raises(OtpMismatch):
                verify_otp(PHONE, "000000", visit.visit_id, now=NOW)
        with pytest.raises(NotFound):
            verify_otp(PHONE, OTP, visit.visit_id, now=NOW)

    def test_code_bound_to_visit(self, visit, fixed_otp):
        request_otp(PHONE, visit.visit_id, now=NOW)
        with pytest.raises(OtpMismatch):
            verify_otp(PHONE, OTP, "another-visit", now=NOW)

    def test_invalid_phone(self, visit):
        with pytest.raises(InvalidInput):
            request_otp("0712-abc", visit.visit_id, now=NOW)

    def test_request_for_old_visit_is_rejected(self, visit):
        with pytest.raises(FeedbackNotEligible):
            request_otp(PHONE, visit.visit_id, now=NOW + timedelta(days=10))

    def test_request_for_unknown_visit(self, ctx):
        with pytest.raises(NotFound):
            request_otp(PHONE, "missing", now=NOW)

    def test_sms_gateway_delivery(self, visit, fixed_otp, ctx):
        ctx.config["SMS_GATEWAY_URL"] = "https://sms.example.org/send"
        response = MagicMock()
        response.json.return_value = {"message_id": "m-1"}
        with patch("utils.sms_service.requests.post", return_value=response) as post:
            result = request_otp(PHONE, visit.visit_id, now=NOW)
        assert result["channel"] == "sms"
        sent = post.call_args.kwargs["json"]
        assert sent["to"] == PHONE
        assert sent["message"] == (
            f"Your Health Visit feedback verification code is: {OTP}. Valid for 10 minutes. Visit ID: {visit.visit_id}"
        )

    def test_undeliverable_in_production(self, visit, fixed_otp, ctx):
        ctx.config["ENV"] = "production"
        ctx.config["SMS_GATEWAY_URL"] = "https://sms.example.org/send"
        with patch("utils.sms_service.requests.post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(ExternalUnavailable):
                request_otp(PHONE, visit.visit_id, now=NOW)
        with pytest.raises(NotFound):
            verify_otp(PHONE, OTP, visit.visit_id, now=NOW)


class TestSubmit:
    def test_submit_marks_visit(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        feedback = submit_feedback(visit.visit_id, PHONE, rating_payload(), grant, now=NOW + timedelta(minutes=2))
        assert feedback.status == "submitted"
        assert feedback.otp_verified
        assert feedback.otp_phone == PHONE
        assert feedback.rating_professionalism == 5
        assert feedback.rating_communication is None
        assert len(feedback.feedback_hash) == 64
        assert visit.has_feedback
        assert visit.feedback_hash == feedback.feedback_hash
        assert check_eligibility(visit.visit_id, now=NOW)["reason"] == "feedback_exists"

    def test_second_submission_conflicts(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        submit_feedback(visit.visit_id, PHONE, rating_payload(), grant, now=NOW)
        with pytest.raises(Conflict):
            submit_feedback(visit.visit_id, PHONE, rating_payload(), grant, now=NOW)
        assert Feedback.query.filter_by(visit_id=visit.visit_id).count() == 1

    def test_otp_request_after_submission_conflicts(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        submit_feedback(visit.visit_id, PHONE, rating_payload(), grant, now=NOW)
        with pytest.raises(Conflict):
            request_otp(PHONE, visit.visit_id, now=NOW)

    def test_requires_grant(self, visit):
        with pytest.raises(Forbidden):
            submit_feedback(visit.visit_id, PHONE, rating_payload(), None, now=NOW)

    def test_grant_must_match_phone(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        with pytest.raises(Forbidden):
            submit_feedback(visit.visit_id, "+254722000999", rating_payload(), grant, now=NOW)

    def test_outside_window_rejected(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        with pytest.raises(FeedbackNotEligible):
            submit_feedback(visit.visit_id, PHONE, rating_payload(), grant, now=visit.timestamp + timedelta(days=8))
        assert not visit.has_feedback

    def test_rating_must_be_in_range(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        with pytest.raises(InvalidInput):
            submit_feedback(visit.visit_id, PHONE, rating_payload(overall=6), grant, now=NOW)

    def test_complaint_lowers_sentiment(self, visit, fixed_otp):
        grant = verified_grant(visit.visit_id)
        payload = rating_payload(
            overall=3,
            complaint={"has_complaint": True, "type": "missing_services", "severity": "high", "details": "No vaccine"},
        )
        feedback = submit_feedback(visit.visit_id, PHONE, payload, grant, now=NOW)
        assert feedback.sentiment_score == 35


class TestReview:
    def test_review_then_resolve(self, visit, fixed_otp, make_admin):
        admin = make_admin()
        feedback = submit_feedback(visit.visit_id, PHONE, rating_payload(), verified_grant(visit.visit_id), now=NOW)
        reviewed = review_feedback(feedback.feedback_id, admin, "Called patient")
        assert reviewed.status == "reviewed"
        assert reviewed.reviewed_by == admin.username
        resolved = resolve_feedback(feedback.feedback_id, admin)
        assert resolved.status == "resolved"
        with pytest.raises(Conflict):
            review_feedback(feedback.feedback_id, admin)


class TestLowRatingScan:
    def test_three_low_ratings_raise_alert(self, ctx, make_chw, make_patient, make_visit, fixed_otp):
        chw = make_chw(chw_code="CHW-LOW")
        for i in range(3):
            patient, tag = make_patient()
            visit = make_visit(chw, patient, tag, NOW - timedelta(days=2, hours=i))
            submit_feedback(visit.visit_id, PHONE, rating_payload(overall=1 + (i % 2)), verified_grant(visit.visit_id), now=NOW)

        alerts = run_anomaly_scan(ctx.config, now=NOW)["alerts"]
        low = [a for a in alerts if a["type"] == "Low Feedback Ratings"]
        assert len(low) == 1
        assert low[0]["chw_id"] == "CHW-LOW"
        assert low[0]["evidence"]["low_rating_count"] == 3
        assert low[0]["evidence"]["average_rating"] == pytest.approx(1.3)
