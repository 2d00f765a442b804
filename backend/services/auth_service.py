from typing import Any, Callable, Dict, Optional
import logging

from starlette.concurrency import run_in_threadpool

from core.config import get_settings
from core.exceptions import AppError, DeliveryError, InternalError, NotFoundError, OTPError, ValidationError
from core.security import create_session_token
from services.mail_transport import DeliveryKind, DeliveryResult, MailTransport
from services.otp_service import (
    OTPCheck,
    OTPFailure,
    OTPService,
    PURPOSE_LOGIN,
    PURPOSE_PASSWORD_RESET,
    PURPOSE_VERIFICATION,
    StorageShape,
    shape_for_purpose,
)
from services.otp_store import EMAIL, OTPRecord, Subject
from services.user_service import UserRepository, public_user, verification_updates
from utils.timing import timeit

logger = logging.getLogger(__name__)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class AuthFlowService:
    """HTTP-facing OTP flows: forgot/reset password, send and verify OTP.

    Delivery is a single synchronous attempt per request; a failed send is
    surfaced to the caller, who retries by calling the endpoint again (which
    issues a fresh code).
    """

    def __init__(
        self,
        users: UserRepository,
        otp_service: OTPService,
        mail: MailTransport,
        settings_provider: Callable[[], Any] = get_settings,
    ):
        self.users = users
        self.otp = otp_service
        self.mail = mail
        self._settings = settings_provider

    @property
    def production(self) -> bool:
        return self._settings().is_production

    async def _deliver(self, email: str, code: str, purpose: str) -> DeliveryResult:
        # smtplib blocks; keep it off the event loop
        return await run_in_threadpool(self.mail.send_otp, email, code, purpose)

    def _log_sms(self, record: OTPRecord) -> None:
        logger.info(f"SMS delivery is not implemented; {record.purpose} OTP issued for phone {record.subject.value}")
        if not self.production:
            logger.info(f"OTP for {record.subject.value}: {record.code}")

    def _sent(self, message: str, record: Optional[OTPRecord] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": message, "otpExpiresIn": self.otp.ttl_seconds}
        if record is not None and not self.production:
            payload["devOtp"] = record.code
        return payload

    @staticmethod
    def _raise_for(check: OTPCheck) -> None:
        if not check.ok:
            raise OTPError(check.reason.value)

    @timeit("request_password_reset")
    async def request_password_reset(self, email: Optional[str]) -> Dict[str, Any]:
        """Issue a password_reset OTP on the user and email it."""
        try:
            email = _clean(email)
            if not email:
                raise ValidationError("Please provide email")
            user = await self.users.find_by_email(email)
            if not user:
                raise NotFoundError("User not found with this email")

            record = await self.otp.issue(Subject(EMAIL, email), PURPOSE_PASSWORD_RESET, StorageShape.EMBEDDED)
            result = await self._deliver(email, record.code, PURPOSE_PASSWORD_RESET)
            if not result.success:
                if result.kind == DeliveryKind.AUTH:
                    raise DeliveryError(result, "SMTP authentication failed.")
                raise DeliveryError(result, result.error or "Failed to send reset email.")

            minutes = max(1, self.otp.ttl_seconds // 60)
            return {"message": f"Password reset OTP has been sent to your email. It will expire in {minutes} minutes."}
        except AppError:
            raise
        except Exception as e:
            logger.error(f"Error requesting password reset: {e}")
            raise InternalError(detail=str(e)) from e

    @timeit("reset_password")
    async def reset_password(self, email: Optional[str], otp: Optional[str], new_password: Optional[str]) -> Dict[str, Any]:
        try:
            email = _clean(email)
            if not email or not otp or not new_password:
                raise ValidationError("Please provide email, OTP and new password")

            check = await self.otp.consume_for_reset(Subject(EMAIL, email), otp, new_password)
            self._raise_for(check)
            return {"message": "Password has been reset successfully. You can now log in."}
        except AppError:
            raise
        except Exception as e:
            logger.error(f"Error resetting password with OTP: {e}")
            raise InternalError(detail=str(e)) from e

    @timeit("send_otp")
    async def send_otp(self, email: Optional[str], phone: Optional[str], purpose: Optional[str]) -> Dict[str, Any]:
        try:
            email = _clean(email)
            phone = _clean(phone)
            purpose = _clean(purpose) or PURPOSE_VERIFICATION
            subject = Subject.from_fields(email, phone)

            if shape_for_purpose(purpose) is StorageShape.STANDALONE:
                return await self._send_application_otp(subject, purpose)

            if subject is None:
                raise ValidationError("Please provide email or phone")
            user = await self.users.find_by_subject(subject)
            if not user:
                if purpose == PURPOSE_LOGIN:
                    # Same envelope as a real send so login cannot probe for accounts
                    logger.info(f"Login OTP requested for unknown {subject.channel}; nothing issued")
                    return self._sent("OTP sent successfully")
                raise NotFoundError("User not found")

            record = await self.otp.issue(subject, purpose, StorageShape.EMBEDDED)
            if subject.channel == EMAIL:
                result = await self._deliver(subject.value, record.code, purpose)
                if not result.success:
                    raise DeliveryError(result, "Failed to send OTP email")
            else:
                self._log_sms(record)
            return self._sent("OTP sent successfully", record)
        except AppError:
            raise
        except Exception as e:
            logger.error(f"Error sending OTP: {e}")
            raise InternalError(detail=str(e)) from e

    async def _send_application_otp(self, subject: Optional[Subject], purpose: str) -> Dict[str, Any]:
        if subject is None:
            raise ValidationError("Please provide email or phone for application OTP")

        record = await self.otp.issue(subject, purpose, StorageShape.STANDALONE)
        if subject.channel != EMAIL:
            self._log_sms(record)
            return self._sent("OTP sent successfully", record)

        result = await self._deliver(subject.value, record.code, purpose)
        if not result.success:
            dev_otp = None if self.production else record.code
            raise DeliveryError(result, result.error or "Failed to send OTP email.", dev_otp=dev_otp)
        logger.info(f"Application OTP emailed to {subject.value} (message id {result.message_id})")
        return self._sent("OTP sent successfully to your email address. Please check your inbox.", record)

    @timeit("verify_otp")
    async def verify_otp(self, email: Optional[str], phone: Optional[str], otp: Optional[str], purpose: Optional[str]) -> Dict[str, Any]:
        """Check an OTP and, outside the application flow, sign the user in.

        When both email and phone are given, they must belong to the same user;
        the code is then looked up on that user through the email.
        """
        try:
            email = _clean(email)
            phone = _clean(phone)
            if not otp or not (email or phone):
                raise ValidationError("Please provide OTP and email or phone")
            purpose = _clean(purpose) or PURPOSE_VERIFICATION
            subject = Subject.from_fields(email, phone)

            if shape_for_purpose(purpose) is StorageShape.STANDALONE:
                check = await self.otp.validate(subject, purpose, otp, StorageShape.STANDALONE)
                self._raise_for(check)
                return {"message": "OTP verified successfully", "email": email, "phone": phone}

            if email and phone and not await self.users.find_matching(email, phone):
                raise OTPError(OTPFailure.NOT_FOUND.value)
            updates = verification_updates(purpose, email, phone)
            check = await self.otp.validate(subject, purpose, otp, StorageShape.EMBEDDED, extra_updates=updates)
            self._raise_for(check)
            user = check.owner
            return {
                "message": "OTP verified successfully",
                "token": create_session_token(user["_id"]),
                "user": public_user(user, updates),
            }
        except AppError:
            raise
        except Exception as e:
            logger.error(f"Error verifying OTP: {e}")
            raise InternalError(detail=str(e)) from e
