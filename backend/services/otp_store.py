"""
Persistence for one-time codes.

An OTP is one semantic entity stored in one of two shapes:

* ``EmbeddedOTPStore`` keeps a single ``otp`` slot on the user document.
  Policy ``overwrite-on-reissue``: issuing any new code silently replaces the
  pending one, whatever its purpose.
* ``StandaloneOTPStore`` keeps independent documents in the ``otps``
  collection for subjects that have no account yet. Policy
  ``explicit-supersession``: issuing deletes every record for the
  (subject, purpose) pair before inserting; consumed records are marked
  ``verified`` and kept.

Stores only move documents around; the decision logic (existence, expiry,
value match) lives in ``services.otp_service.OTPService``.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

EMAIL = "email"
PHONE = "phone"


@dataclass(frozen=True)
class Subject:
    """Who an OTP is for: an email address or a phone number."""

    channel: str
    value: str

    @classmethod
    def from_fields(cls, email: Optional[str] = None, phone: Optional[str] = None) -> Optional["Subject"]:
        # Email wins when both are supplied
        if email:
            return cls(EMAIL, email)
        if phone:
            return cls(PHONE, phone)
        return None

    @property
    def query(self) -> Dict[str, str]:
        return {self.channel: self.value}


@dataclass(frozen=True)
class OTPRecord:
    subject: Subject
    code: str
    purpose: str
    expires_at: datetime
    verified: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class StoredOTP:
    """A loaded record plus the store-specific handle needed to act on it."""

    handle: Any
    record: OTPRecord
    owner: Optional[Dict[str, Any]] = None


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OTPStore(ABC):
    policy: str = ""

    @abstractmethod
    async def save(self, record: OTPRecord) -> None:
        """Persist a freshly issued record."""

    @abstractmethod
    async def load(self, subject: Subject, purpose: str) -> Optional[StoredOTP]:
        """Return the active record for (subject, purpose), if any."""

    @abstractmethod
    async def discard_expired(self, stored: StoredOTP) -> None:
        """Called when validation finds the record expired."""

    @abstractmethod
    async def consume(self, stored: StoredOTP, now: datetime, extra_updates: Optional[Dict[str, Any]] = None) -> bool:
        """Mark the record used. Returns False if someone else consumed it first."""


class EmbeddedOTPStore(OTPStore):
    policy = "overwrite-on-reissue"

    def __init__(self, users):
        self.users = users

    async def save(self, record: OTPRecord) -> None:
        result = await self.users.update_one(
            record.subject.query,
            {"$set": {"otp": {
                "code": record.code,
                "expires_at": record.expires_at,
                "purpose": record.purpose,
            }}},
        )
        if result.matched_count == 0:
            raise NotFoundError("User not found")

    async def load(self, subject: Subject, purpose: str) -> Optional[StoredOTP]:
        user = await self.users.find_one(subject.query)
        if not user:
            return None
        slot = user.get("otp")
        if not slot or slot.get("purpose") != purpose:
            return None
        record = OTPRecord(
            subject=subject,
            code=slot.get("code"),
            purpose=slot.get("purpose"),
            expires_at=as_utc(slot["expires_at"]),
        )
        return StoredOTP(handle=user["_id"], record=record, owner=user)

    async def discard_expired(self, stored: StoredOTP) -> None:
        # Expired slots stay until the next issue overwrites them
        return None

    async def consume(self, stored: StoredOTP, now: datetime, extra_updates: Optional[Dict[str, Any]] = None) -> bool:
        update: Dict[str, Any] = {"$unset": {"otp": ""}}
        if extra_updates:
            update["$set"] = dict(extra_updates)
        result = await self.users.update_one(
            {
                "_id": stored.handle,
                "otp.code": stored.record.code,
                "otp.purpose": stored.record.purpose,
            },
            update,
        )
        return result.modified_count == 1


class StandaloneOTPStore(OTPStore):
    policy = "explicit-supersession"

    def __init__(self, otps):
        self.otps = otps

    async def save(self, record: OTPRecord) -> None:
        pair = {**record.subject.query, "purpose": record.purpose}
        doc = {
            **pair,
            "code": record.code,
            "expires_at": record.expires_at,
            "verified": False,
            "created_at": record.created_at,
        }
        await self.otps.delete_many(pair)
        try:
            await self.otps.insert_one(doc)
        except DuplicateKeyError:
            # A concurrent issue for the same pair got in between; latest issue wins
            logger.warning(f"Concurrent OTP issue for {record.subject.channel} / {record.purpose}; replacing active record")
            await self.otps.replace_one({**pair, "verified": False}, doc, upsert=True)

    async def load(self, subject: Subject, purpose: str) -> Optional[StoredOTP]:
        doc = await self.otps.find_one({**subject.query, "purpose": purpose, "verified": False})
        if not doc:
            return None
        record = OTPRecord(
            subject=subject,
            code=doc.get("code"),
            purpose=doc.get("purpose"),
            expires_at=as_utc(doc["expires_at"]),
            verified=bool(doc.get("verified")),
            created_at=doc.get("created_at"),
        )
        return StoredOTP(handle=doc["_id"], record=record)

    async def discard_expired(self, stored: StoredOTP) -> None:
        try:
            await self.otps.delete_one({"_id": stored.handle})
        except PyMongoError as e:
            logger.warning(f"Could not delete expired OTP record {stored.handle}: {e}")

    async def consume(self, stored: StoredOTP, now: datetime, extra_updates: Optional[Dict[str, Any]] = None) -> bool:
        result = await self.otps.update_one(
            {"_id": stored.handle, "verified": False},
            {"$set": {"verified": True, "verified_at": now}},
        )
        return result.modified_count == 1
