import secrets
import time
from dataclasses import dataclass
from typing import Optional

from security.store import InMemoryStore


@dataclass
class Session:
    session_id: str
    user_id: str
    token_version: int
    last_activity: float
    device_fingerprint: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    provider: Optional[str] = None


def _generate_session_id() -> str:
    # 256 bits
    return secrets.token_hex(32)


class SessionRegistry:
    """
    Active sessions keyed by session id. Lookups never raise: a missing
    session is reported as None / False and the caller decides what it means.
    """

    def __init__(self, store=None, clock=time.time):
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock

    def _version_now(self) -> int:
        return int(self._clock() * 1000)

    def create(self, user_id: str, device_fingerprint: str = None, **profile) -> str:
        session_id = _generate_session_id()
        self._store.set(session_id, Session(
            session_id=session_id,
            user_id=str(user_id),
            token_version=self._version_now(),
            last_activity=self._clock(),
            device_fingerprint=device_fingerprint,
            email=profile.get("email"),
            username=profile.get("username"),
            provider=profile.get("provider"),
        ))
        return session_id

    def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        return self._store.get(session_id)

    def touch(self, session_id: str) -> None:
        sess = self.get(session_id)
        if sess is None:
            return
        sess.last_activity = self._clock()
        self._store.set(session_id, sess)

    def bump_version(self, session_id: str) -> Optional[int]:
        sess = self.get(session_id)
        if sess is None:
            return None
        # Strictly increasing even when two bumps land on the same millisecond
        sess.token_version = max(self._version_now(), sess.token_version + 1)
        sess.last_activity = self._clock()
        self._store.set(session_id, sess)
        return sess.token_version

    def delete(self, session_id: str) -> bool:
        if not session_id:
            return False
        return self._store.delete(session_id)

    def delete_all_for_user(self, user_id: str) -> int:
        # O(n) over all live sessions
        count = 0
        for session_id, sess in self._store.items():
            if sess.user_id == str(user_id) and self._store.delete(session_id):
                count += 1
        return count

    def list_for_user(self, user_id: str) -> list:
        return [sess for _, sess in self._store.items() if sess.user_id == str(user_id)]

    def is_idle(self, sess: Session, idle_seconds: float) -> bool:
        return self._clock() - sess.last_activity > idle_seconds

    def sweep_expired(self, idle_seconds: float) -> int:
        count = 0
        for session_id, sess in self._store.items():
            if self.is_idle(sess, idle_seconds) and self._store.delete(session_id):
                count += 1
        return count

    def __len__(self) -> int:
        return len(self._store)
