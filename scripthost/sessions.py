import logging
import secrets
import threading
import time
from typing import Dict, NamedTuple, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

logger = logging.getLogger("scripthost.sessions")


class Identity(NamedTuple):
    user_id: int
    username: str
    expires_at: float


class SessionRegistry:
    """Server-side map from session tokens to the identity that logged in.

    Tokens are signed, time-stamped session ids. A token is honoured only
    while its signature is valid, it is younger than ``lifetime_seconds`` and
    its id has not been revoked or purged.
    """

    def __init__(self, secret_key: str, lifetime_seconds: int) -> None:
        self.lifetime_seconds = max(1, int(lifetime_seconds))
        self._serializer = URLSafeTimedSerializer(secret_key, salt="scripthost-session")
        self._sessions: Dict[str, Identity] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def issue(self, user_id: int, username: str) -> str:
        session_id = secrets.token_urlsafe(32)
        identity = Identity(int(user_id), username, time.time() + self.lifetime_seconds)
        with self._lock:
            self._sessions[session_id] = identity
        return self._serializer.dumps(session_id)

    def _session_id(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._serializer.loads(token, max_age=self.lifetime_seconds)
        except SignatureExpired:
            return None
        except BadSignature:
            logger.warning("session_token_bad_signature")
            return None

    def resolve(self, token: Optional[str]) -> Optional[Identity]:
        session_id = self._session_id(token)
        if session_id is None:
            return None
        with self._lock:
            identity = self._sessions.get(session_id)
            if identity is None:
                return None
            if identity.expires_at <= time.time():
                del self._sessions[session_id]
                return None
            return identity

    def revoke(self, token: Optional[str]) -> bool:
        session_id = self._session_id(token)
        if session_id is None:
            return False
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def purge_expired(self) -> int:
        now = time.time()
        with self._lock:
            expired = [key for key, value in self._sessions.items() if value.expires_at <= now]
            for key in expired:
                del self._sessions[key]
        if expired:
            logger.info("sessions_purged count=%d", len(expired))
        return len(expired)
