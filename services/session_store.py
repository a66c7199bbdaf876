"""
Session Store: the visitor-held map of tracking id -> most recent click time.

The map travels in the `_ad_clicks` cookie as `id:ts[,id:ts]*`, HMAC-signed.
The same format (under `_ad_last_conv`) carries the conversion dedup marker.
Identifiers are only checked for shape here; existence is the caller's job.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

from constants import TRACKING_ID_PATTERN, SESSION_TOKEN_PATTERN
from utils.signing import sign_value, unsign_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CookieInstruction:
    """A Set-Cookie the web layer must apply to the response."""
    name: str
    value: str
    max_age: int
    httponly: bool = True
    secure: bool = True
    samesite: str = "Lax"
    path: str = "/"


class SessionStore:
    def __init__(self, secret_key, max_entries=50, cookie_name="_ad_clicks",
                 lifetime_seconds=90 * 86400, secure=True, clock=time.time):
        self.secret_key = secret_key
        self.max_entries = max_entries
        self.cookie_name = cookie_name
        self.lifetime_seconds = lifetime_seconds
        self.secure = secure
        self._clock = clock

    @staticmethod
    def validate_id(tracking_id) -> bool:
        return isinstance(tracking_id, str) and bool(TRACKING_ID_PATTERN.match(tracking_id))

    def parse(self, token: Optional[str]) -> dict:
        """
        Parse an unsigned token into {id: ts}.

        A token failing the grammar is discarded as a whole: one corrupt entry
        invalidates the session rather than risk reading false identifiers.
        """
        if not token:
            return {}

        if not SESSION_TOKEN_PATTERN.match(token):
            logger.warning(f"[Session] Corrupt {self.cookie_name} token discarded.", extra={"stage": "parse"})
            return {}

        entries = {}
        for pair in token.split(","):
            tracking_id, ts = pair.split(":")
            entries[tracking_id] = int(ts)
        return entries

    def add(self, entries: dict, tracking_id: str, ts: Optional[int] = None) -> dict:
        """Insert or refresh tracking_id, then evict oldest entries beyond max_entries."""
        updated = dict(entries)
        updated[tracking_id] = int(self._clock()) if ts is None else int(ts)

        if len(updated) > self.max_entries:
            # sorted() is stable: equal timestamps keep insertion order
            ordered = sorted(updated.items(), key=lambda item: item[1])
            updated = dict(ordered[len(ordered) - self.max_entries:])

        return updated

    @staticmethod
    def serialize(entries: dict) -> str:
        return ",".join(f"{tracking_id}:{ts}" for tracking_id, ts in entries.items())

    def read(self, cookie_value: Optional[str]) -> dict:
        """Verify the signature on a cookie value and parse it."""
        if not cookie_value:
            return {}

        payload = unsign_value(cookie_value, self.secret_key)
        if payload is None:
            logger.warning(f"[Session] {self.cookie_name} signature invalid, discarded.", extra={"stage": "verify"})
            return {}

        return self.parse(payload)

    def write(self, entries: dict, max_age: Optional[int] = None) -> CookieInstruction:
        return CookieInstruction(
            name=self.cookie_name,
            value=sign_value(self.serialize(entries), self.secret_key),
            max_age=self.lifetime_seconds if max_age is None else max_age,
            httponly=True,
            secure=self.secure,
        )
