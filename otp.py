"""
Phone verification by one-time password.

Codes go out through an SmsSender. The real SMS gateway is an external
service; LoggingSmsSender is what ships and is what the tests replace.
"""
import logging
import os
import re
import secrets
from datetime import timedelta
from typing import Optional

from database import as_utc, utcnow

logger = logging.getLogger(__name__)

OTP_LENGTH = int(os.getenv("OTP_LENGTH", "5"))
OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", "120"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
VERIFIED_WINDOW = timedelta(hours=24)

BD_PHONE_RE = re.compile(r"^(?:\+88|88)?(01[3-9][0-9]{8})$")


class OtpError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SmsSender:
    def send(self, phone: str, message: str) -> bool:
        raise NotImplementedError


class LoggingSmsSender(SmsSender):
    def send(self, phone: str, message: str) -> bool:
        logger.info("SMS to %s: %s", phone, message)
        return True


sms_sender: SmsSender = LoggingSmsSender()


def get_sms_sender() -> SmsSender:
    return sms_sender


def generate_otp(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def is_valid_bd_phone(phone: str) -> bool:
    return bool(BD_PHONE_RE.match(phone or ""))


def format_phone(phone: str) -> str:
    """Normalise to 880XXXXXXXXXX."""
    digits = re.sub(r"[^0-9]", "", phone or "")
    if len(digits) == 11 and digits.startswith("01"):
        return "880" + digits[1:]
    return digits


def _live_record(db, phone: str) -> Optional[dict]:
    now = utcnow()
    for record in db["otp"].find({"phone": phone}):
        if as_utc(record["expiresAt"]) > now:
            return record
    return None


def send_otp(db, phone: str, sender: SmsSender) -> None:
    if not is_valid_bd_phone(phone):
        raise OtpError("Invalid Bangladeshi phone number")
    formatted = format_phone(phone)

    record = _live_record(db, formatted)
    if record:
        code = record["otp"]
    else:
        code = generate_otp()
        db["otp"].delete_many({"phone": formatted})
        db["otp"].insert_one({
            "phone": formatted,
            "otp": code,
            "verified": False,
            "attempts": 0,
            "expiresAt": utcnow() + timedelta(seconds=OTP_TTL_SECONDS),
            "createdAt": utcnow(),
        })
        logger.info("Issued OTP for %s", formatted)

    if not sender.send(formatted, f"Your verification code is {code}"):
        raise OtpError("Failed to send OTP", status_code=500)


def verify_otp(db, phone: str, code: str) -> None:
    formatted = format_phone(phone)
    record = _live_record(db, formatted)
    if not record:
        raise OtpError("OTP expired or not found")

    if record.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        db["otp"].delete_one({"_id": record["_id"]})
        raise OtpError("Too many attempts. Request new OTP.")

    submitted = code.strip()
    if submitted.isascii() and secrets.compare_digest(record["otp"], submitted):
        db["otp"].update_one({"_id": record["_id"]}, {"$set": {"verified": True, "verifiedAt": utcnow()}})
        return

    attempts = record.get("attempts", 0) + 1
    db["otp"].update_one({"_id": record["_id"]}, {"$set": {"attempts": attempts}})
    remaining = OTP_MAX_ATTEMPTS - attempts
    raise OtpError(f"Invalid OTP. {remaining} attempt{'s' if remaining != 1 else ''} left.")


def check_verified(db, phone: str) -> Optional[str]:
    """Return the verification time when the phone was verified in the last 24 hours."""
    formatted = format_phone(phone)
    cutoff = utcnow() - VERIFIED_WINDOW
    for record in db["otp"].find({"phone": formatted, "verified": True}):
        verified_at = as_utc(record.get("verifiedAt") or record.get("expiresAt"))
        if verified_at and verified_at > cutoff:
            return verified_at.isoformat()
    return None
