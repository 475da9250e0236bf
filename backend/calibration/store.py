import threading
from contextlib import contextmanager
from typing import Iterator

from calibration.models import CalibrationProfile

DEFAULT_SESSION = "default"
LOCK_STRIPES = 64


class ProfileStore:
    """Calibration profiles keyed by session id.

    Sessions share a fixed pool of lock stripes picked by ``hash(session_id)``,
    so the same session is always serialized and unknown session ids cost
    nothing until a profile is stored for them.
    """

    def __init__(self, stripes: int = LOCK_STRIPES) -> None:
        self._profiles: dict[str, CalibrationProfile] = {}
        self._stripes = [threading.Lock() for _ in range(max(1, stripes))]
        # guards the dict itself; taken inside a stripe, never the other way round
        self._lock = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.Lock:
        return self._stripes[hash(session_id) % len(self._stripes)]

    @contextmanager
    def locked(self, session_id: str) -> Iterator[None]:
        with self._session_lock(session_id):
            yield

    def get(self, session_id: str = DEFAULT_SESSION) -> CalibrationProfile | None:
        with self.locked(session_id):
            return self._profiles.get(session_id)

    def put(self, profile: CalibrationProfile, session_id: str = DEFAULT_SESSION) -> CalibrationProfile:
        with self.locked(session_id), self._lock:
            self._profiles[session_id] = profile
        return profile

    def reset(self, session_id: str = DEFAULT_SESSION) -> bool:
        with self.locked(session_id), self._lock:
            return self._profiles.pop(session_id, None) is not None

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._profiles.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)
