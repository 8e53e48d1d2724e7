"""In-process one-time code authority.

Codes are keyed by (subject id, purpose), hashed with HMAC-SHA-256 before they
are stored, and consumed on the first successful verification. Expiry is
checked on every read; ``purge_expired`` only bounds memory.
"""
import hashlib
import hmac
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from agrirent.config import settings

logger = structlog.get_logger()

NOT_FOUND = "NOT_FOUND"
EXPIRED = "EXPIRED"
MISMATCH = "MISMATCH"
MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"


@dataclass(frozen=True)
class OTPVerification:
    valid: bool
    reason: str | None = None


@dataclass
class _OTPRecord:
    digest: str
    expires_at: float
    attempts: int = 0


def normalize_code(candidate) -> str:
    """Codes may arrive as ints from JSON clients; compare their exact string form."""
    if candidate is None:
        return ""
    return str(candidate).strip()


class OTPAuthority:
    def __init__(
        self,
        hmac_key: str | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._hmac_key = settings.OTP_HMAC_KEY if hmac_key is None else hmac_key
        self._max_attempts = settings.OTP_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._clock = clock
        self._records: dict[tuple[str, str], _OTPRecord] = {}
        self._lock = threading.Lock()

    def _hash(self, code: str) -> str:
        if not self._hmac_key:
            raise RuntimeError(
                "OTP_HMAC_KEY is not configured. "
                "Set a dedicated HMAC key so one-time codes are never stored in clear."
            )
        return hmac.new(self._hmac_key.encode(), code.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _key(subject_id, purpose) -> tuple[str, str]:
        return str(subject_id), str(getattr(purpose, "value", purpose))

    @staticmethod
    def generate(length: int | None = None) -> str:
        length = length or settings.OTP_LENGTH
        return "".join(str(secrets.randbelow(10)) for _ in range(length))

    def issue(self, subject_id, purpose, code, ttl_minutes: float | None = None) -> float:
        """Store ``code`` for the key, replacing any previous one. Returns the expiry (epoch seconds)."""
        ttl = settings.OTP_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        digest = self._hash(normalize_code(code))
        expires_at = self._clock() + ttl * 60
        key = self._key(subject_id, purpose)
        with self._lock:
            self._records[key] = _OTPRecord(digest=digest, expires_at=expires_at)
        logger.info("otp_issued", subject_id=key[0], purpose=key[1], ttl_minutes=ttl)
        return expires_at

    def verify(self, subject_id, purpose, candidate) -> OTPVerification:
        key = self._key(subject_id, purpose)
        candidate_digest = self._hash(normalize_code(candidate))
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return OTPVerification(False, NOT_FOUND)
            if self._clock() >= record.expires_at:
                del self._records[key]
                return OTPVerification(False, EXPIRED)
            if record.attempts >= self._max_attempts:
                return OTPVerification(False, MAX_ATTEMPTS_EXCEEDED)
            if not secrets.compare_digest(record.digest, candidate_digest):
                record.attempts += 1
                return OTPVerification(False, MISMATCH)
            del self._records[key]
        return OTPVerification(True)

    def remaining_seconds(self, subject_id, purpose) -> int:
        """Seconds until the active code expires, 0 when there is none."""
        key = self._key(subject_id, purpose)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return 0
            return max(0, int(record.expires_at - self._clock()))

    def discard(self, subject_id, purpose) -> None:
        with self._lock:
            self._records.pop(self._key(subject_id, purpose), None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if now >= record.expires_at]
            for key in expired:
                del self._records[key]
        if expired:
            logger.info("otp_purged", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
