from pydantic import AliasChoices, BaseModel, Field
from typing import Optional

# Every field is optional here; the flows report missing ones with their own
# 400 messages instead of a generic schema error.


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None


class ResetPasswordRequest(BaseModel):
    email: Optional[str] = None
    otp: Optional[str] = None
    new_password: Optional[str] = Field(default=None, validation_alias=AliasChoices("newPassword", "new_password"))


class SendOTPRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    purpose: Optional[str] = None


class VerifyOTPRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    otp: Optional[str] = None
    purpose: Optional[str] = None
