"""HTTP SMS gateway client used for feedback OTP delivery."""
import requests
from flask import current_app


class SmsDeliveryError(Exception):
    """Raised when the SMS gateway is unreachable or rejects a message."""


OTP_MESSAGE = "Your Health Visit feedback verification code is: {otp}. Valid for {minutes} minutes. Visit ID: {visit_id}"


def gateway_configured() -> bool:
    return bool(current_app.config.get("SMS_GATEWAY_URL"))


def send_sms(phone: str, message: str) -> str:
    """Post one message to the gateway and return its message reference."""
    if not gateway_configured():
        raise SmsDeliveryError("SMS gateway is not configured")
    headers = {"Content-Type": "application/json"}
    token = current_app.config.get("SMS_GATEWAY_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    payload = {"to": phone, "message": message}
    if current_app.config.get("SMS_SENDER_ID"):
        payload["from"] = current_app.config["SMS_SENDER_ID"]
    try:
        response = requests.post(
            current_app.config["SMS_GATEWAY_URL"],
            json=payload,
            headers=headers,
            timeout=float(current_app.config.get("EXTERNAL_TIMEOUT_SECONDS", 5)),
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise SmsDeliveryError(str(exc)) from exc
    try:
        reference = (response.json() or {}).get("message_id")
    except ValueError:
        reference = None
    return str(reference or "")


def dispatch_otp(phone: str, otp: str, visit_id: str, ttl_seconds: int) -> str:
    """Deliver an OTP; returns "sms", "logged" or "failed"."""
    message = OTP_MESSAGE.format(otp=otp, minutes=max(ttl_seconds // 60, 1), visit_id=visit_id)
    production = current_app.config.get("ENV") == "production"

    if gateway_configured():
        try:
            reference = send_sms(phone, message)
        except SmsDeliveryError as exc:
            current_app.logger.warning("OTP SMS delivery failed", extra={"visit_id": visit_id, "error": str(exc)})
        else:
            current_app.logger.info("OTP sent via SMS", extra={"visit_id": visit_id, "message_id": reference})
            return "sms"

    if production:
        current_app.logger.error("OTP could not be delivered", extra={"visit_id": visit_id})
        return "failed"
    current_app.logger.info("OTP (non-production delivery): %s", otp, extra={"visit_id": visit_id, "phone": phone})
    return "logged"
