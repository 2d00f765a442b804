from fastapi import APIRouter, Depends
from api.dependencies import get_auth_flows
from schemas.otp_schema import ForgotPasswordRequest, ResetPasswordRequest, SendOTPRequest, VerifyOTPRequest
from services.auth_service import AuthFlowService
from utils.responses import success_json

router = APIRouter()

@router.post("/forgot-password")
async def forgot_password(payload: ForgotPasswordRequest, flows: AuthFlowService = Depends(get_auth_flows)):
    return success_json(**await flows.request_password_reset(payload.email))

@router.post("/reset-password")
async def reset_password(payload: ResetPasswordRequest, flows: AuthFlowService = Depends(get_auth_flows)):
    return success_json(**await flows.reset_password(payload.email, payload.otp, payload.new_password))

@router.post("/send-otp")
async def send_otp(payload: SendOTPRequest, flows: AuthFlowService = Depends(get_auth_flows)):
    return success_json(**await flows.send_otp(payload.email, payload.phone, payload.purpose))

@router.post("/verify-otp")
async def verify_otp(payload: VerifyOTPRequest, flows: AuthFlowService = Depends(get_auth_flows)):
    return success_json(**await flows.verify_otp(payload.email, payload.phone, payload.otp, payload.purpose))
