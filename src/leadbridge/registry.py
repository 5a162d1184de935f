"""In-memory session store shared by every call worker.

All session mutation goes through ``SessionRegistry.upsert`` so that the lead
and sales legs' callbacks never lose each other's writes.  Readers get a
detached copy from ``get``; holding on to it never leaks changes back in.
"""

import copy
import logging
import threading
from typing import Callable, Optional, TypeVar

from leadbridge.session import CallSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, CallSession] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._sessions

    def add(self, session: CallSession) -> None:
        with self._lock:
            if session.call_id in self._sessions:
                logger.warning("Session %s already registered, keeping existing", session.call_id)
                return
            self._sessions[session.call_id] = session

    def get(self, call_id: str | None) -> Optional[CallSession]:
        if not call_id:
            return None
        with self._lock:
            session = self._sessions.get(call_id)
            return copy.deepcopy(session) if session is not None else None

    def upsert(
        self,
        call_id: str | None,
        mutator: Callable[[CallSession], T],
        create: Callable[[], CallSession] | None = None,
    ) -> Optional[T]:
        """Atomically apply ``mutator`` to the stored session.

        If the session does not exist and ``create`` is given, the new
        session is stored first.  Unknown ids without a factory are a no-op
        and return None.
        """
        if not call_id:
            return None
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                if create is None:
                    logger.debug("No session for %s, ignoring update", call_id)
                    return None
                session = create()
                self._sessions[call_id] = session
            return mutator(session)

    def remove(self, call_id: str) -> Optional[CallSession]:
        with self._lock:
            return self._sessions.pop(call_id, None)

    def pair_of(self, call_id: str) -> Optional[CallSession]:
        """Snapshot of the other leg of ``call_id``'s transaction."""
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None or not session.paired_call_id:
                return None
            paired = self._sessions.get(session.paired_call_id)
            return copy.deepcopy(paired) if paired is not None else None

    def find(self, predicate: Callable[[CallSession], bool]) -> list[CallSession]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._sessions.values() if predicate(s)]
