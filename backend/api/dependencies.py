from fastapi import Depends, Request
from core.config import get_settings
from core.exceptions import InternalError
from db.mongodb import get_mongo_db
from services.auth_service import AuthFlowService
from services.mail_transport import MailTransport
from services.otp_service import OTPService
from services.otp_store import EmbeddedOTPStore, StandaloneOTPStore
from services.user_service import UserRepository


def get_db():
    db = get_mongo_db()
    if db is None:
        raise InternalError("Database is not configured", detail="MONGO_URI is not set")
    return db

def get_mail_transport(request: Request) -> MailTransport:
    # Built once by the composition root in main.py
    return request.app.state.mail_transport

def get_otp_service(db=Depends(get_db)) -> OTPService:
    settings = get_settings()
    return OTPService(
        embedded=EmbeddedOTPStore(db.users),
        standalone=StandaloneOTPStore(db.otps),
        ttl_seconds=settings.OTP_TTL_SECONDS,
        code_length=settings.OTP_LENGTH,
    )

def get_auth_flows(
    db=Depends(get_db),
    otp_service: OTPService = Depends(get_otp_service),
    mail: MailTransport = Depends(get_mail_transport),
) -> AuthFlowService:
    return AuthFlowService(UserRepository(db.users), otp_service, mail)
