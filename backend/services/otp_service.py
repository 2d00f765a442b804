"""
OTP lifecycle: issue, validate and consume one-time codes.

Per record: ABSENT -> ISSUED -> CONSUMED | EXPIRED | OVERWRITTEN. Validation
checks run in a fixed order (existence, expiry, value) so an expired code
that is also wrong reports EXPIRED. A mismatch never consumes the record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from core.security import get_password_hash
from services.otp_store import OTPRecord, OTPStore, Subject
from utils.otp import generate_otp

logger = logging.getLogger(__name__)

PURPOSE_VERIFICATION = "verification"
PURPOSE_PASSWORD_RESET = "password_reset"
PURPOSE_LOGIN = "login"
PURPOSE_APPLICATION = "application"


class StorageShape(str, Enum):
    EMBEDDED = "embedded"
    STANDALONE = "standalone"


class OTPFailure(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    MISMATCH = "MISMATCH"


@dataclass(frozen=True)
class OTPCheck:
    ok: bool
    reason: Optional[OTPFailure] = None
    purpose: Optional[str] = None
    owner: Optional[Dict[str, Any]] = None


def shape_for_purpose(purpose: Optional[str]) -> StorageShape:
    """Application OTPs belong to no account yet; everything else lives on the user."""
    if purpose == PURPOSE_APPLICATION:
        return StorageShape.STANDALONE
    return StorageShape.EMBEDDED


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPService:
    def __init__(
        self,
        embedded: OTPStore,
        standalone: OTPStore,
        ttl_seconds: int = 600,
        code_length: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._stores = {StorageShape.EMBEDDED: embedded, StorageShape.STANDALONE: standalone}
        self.ttl_seconds = ttl_seconds
        self.code_length = code_length
        self._clock = clock

    def store_for(self, shape: StorageShape) -> OTPStore:
        return self._stores[StorageShape(shape)]

    async def issue(self, subject: Subject, purpose: str, shape: StorageShape) -> OTPRecord:
        now = self._clock()
        record = OTPRecord(
            subject=subject,
            code=generate_otp(self.code_length),
            purpose=purpose,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            created_at=now,
        )
        store = self.store_for(shape)
        await store.save(record)
        logger.info(f"Issued {purpose} OTP for {subject.channel} ({store.policy})")
        return record

    async def validate(
        self,
        subject: Subject,
        purpose: str,
        code: str,
        shape: StorageShape,
        extra_updates: Optional[Dict[str, Any]] = None,
    ) -> OTPCheck:
        """Check ``code`` against the active record and consume it on success.

        ``extra_updates`` are written to the owning user document in the same
        update that clears the embedded slot; the standalone store ignores them.
        """
        store = self.store_for(shape)
        stored = await store.load(subject, purpose)
        if stored is None:
            return OTPCheck(ok=False, reason=OTPFailure.NOT_FOUND)

        now = self._clock()
        if now > stored.record.expires_at:
            await store.discard_expired(stored)
            return OTPCheck(ok=False, reason=OTPFailure.EXPIRED)

        if stored.record.code != code:
            return OTPCheck(ok=False, reason=OTPFailure.MISMATCH)

        if not await store.consume(stored, now, extra_updates):
            # Consumed or reissued between our read and write
            return OTPCheck(ok=False, reason=OTPFailure.NOT_FOUND)

        logger.info(f"Consumed {purpose} OTP for {subject.channel}")
        return OTPCheck(ok=True, purpose=stored.record.purpose, owner=stored.owner)

    async def consume_for_reset(self, subject: Subject, code: str, new_password: str) -> OTPCheck:
        """Validate a password-reset code and replace the password in one write.

        The new hash and the slot clearing land in a single document update,
        so a failed write leaves the OTP unconsumed.
        """
        return await self.validate(
            subject,
            PURPOSE_PASSWORD_RESET,
            code,
            StorageShape.EMBEDDED,
            extra_updates={"password": get_password_hash(new_password)},
        )
