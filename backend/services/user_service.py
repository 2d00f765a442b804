from typing import Any, Dict, Optional
import logging

from services.otp_store import EMAIL, PHONE, Subject

logger = logging.getLogger(__name__)


class UserRepository:
    """Lookups over the ``users`` collection needed by the OTP flows."""

    def __init__(self, users):
        self.users = users

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.users.find_one({"email": email})

    async def find_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        return await self.users.find_one({"phone": phone})

    async def find_by_subject(self, subject: Subject) -> Optional[Dict[str, Any]]:
        if subject.channel == EMAIL:
            return await self.find_by_email(subject.value)
        return await self.find_by_phone(subject.value)

    async def find_matching(self, email: str, phone: str) -> Optional[Dict[str, Any]]:
        """The one user holding both this email and this phone."""
        return await self.users.find_one({"email": email, "phone": phone})


def verification_updates(purpose: str, email: Optional[str], phone: Optional[str]) -> Dict[str, bool]:
    """Per-channel verified flags a successful OTP check should set."""
    updates: Dict[str, bool] = {}
    if purpose == EMAIL or (purpose == "verification" and email):
        updates["is_verified.email"] = True
    if purpose == PHONE or (purpose == "verification" and phone):
        updates["is_verified.phone"] = True
    return updates


def public_user(doc: Dict[str, Any], applied_updates: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
    """User fields safe to return to the client."""
    verified = dict(doc.get("is_verified") or {"email": False, "phone": False})
    for key, value in (applied_updates or {}).items():
        verified[key.split(".", 1)[1]] = value
    return {
        "id": str(doc.get("_id")),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "phone": doc.get("phone"),
        "role": doc.get("role", "user"),
        "isVerified": {"email": bool(verified.get("email")), "phone": bool(verified.get("phone"))},
    }
