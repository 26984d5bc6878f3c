import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from .config import settings


logger = logging.getLogger(__name__)


class OtpError(Exception):
    pass


@dataclass
class OtpEntry:
    otp: str
    role: str
    expires_at: float


def generate_otp(length: int = 6) -> str:
    alphabet = "0123456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))


class OtpStore:
    """Registration OTPs keyed by phone number, held in process memory.

    Entries do not survive a restart and are not shared between workers.
    """

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.otp_exp_minutes * 60 if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: dict[str, OtpEntry] = {}

    def issue(self, phone: str, role: str) -> str:
        self.purge_expired()
        otp = generate_otp()
        self._entries[phone] = OtpEntry(otp=otp, role=role, expires_at=self._clock() + self.ttl_seconds)
        return otp

    def verify(self, phone: str, otp: str) -> OtpEntry:
        entry = self._entries.get(phone)
        if entry is None:
            raise OtpError("OTP expired or invalid")
        if not secrets.compare_digest(entry.otp, otp):
            raise OtpError("Incorrect OTP")
        if self._clock() > entry.expires_at:
            self._entries.pop(phone, None)
            raise OtpError("OTP expired, please request a new one")
        return entry

    def discard(self, phone: str) -> None:
        self._entries.pop(phone, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [phone for phone, entry in self._entries.items() if now > entry.expires_at]
        for phone in expired:
            del self._entries[phone]
        return len(expired)

    def __contains__(self, phone: str) -> bool:
        return phone in self._entries


def dispatch_otp(phone: str, otp: str) -> None:
    # TODO: deliver through an SMS gateway once one is provisioned; until then the code is only logged.
    if settings.is_development:
        logger.info(f"OTP for {phone}: {otp}")
    else:
        logger.info(f"OTP issued for phone ending in {phone[-4:]}")


otp_store = OtpStore()
