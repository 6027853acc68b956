import threading
from typing import Callable, Optional

from bridge_session import BridgeSession
from rover_config import RoverConfig


class RoverSessionRegistry:
    """Holds one BridgeSession per rover id."""

    def __init__(self, config_factory: Callable[[str], RoverConfig],
                 session_factory: Optional[Callable[[str, RoverConfig], BridgeSession]] = None):
        self._config_factory = config_factory
        self._session_factory = session_factory or (lambda rover_id, config: BridgeSession(rover_id, config))
        self._sessions: dict[str, BridgeSession] = {}  # rover_id -> BridgeSession
        self._listeners: list = []
        self._lock = threading.Lock()

    def get_session(self, rover_id) -> BridgeSession:
        """Return the rover's session, creating it on first use."""
        rover_id = str(rover_id)
        with self._lock:
            session = self._sessions.get(rover_id)
            if session is not None:
                return session
            session = self._session_factory(rover_id, self._config_factory(rover_id))
            session.on_state_change(lambda status, rid=rover_id: self._dispatch(rid, status))
            self._sessions[rover_id] = session

        print(f"[Registry] Created session for rover {rover_id}")
        return session

    def get(self, rover_id) -> Optional[BridgeSession]:
        with self._lock:
            return self._sessions.get(str(rover_id))

    async def remove(self, rover_id) -> bool:
        """Disconnect and forget a rover's session."""
        with self._lock:
            session = self._sessions.pop(str(rover_id), None)
        if session is None:
            return False
        await session.aclose()
        return True

    async def disconnect_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.disconnect()

    async def close(self):
        with self._lock:
            rover_ids = list(self._sessions.keys())
        for rover_id in rover_ids:
            await self.remove(rover_id)

    def rover_ids(self) -> list:
        with self._lock:
            return list(self._sessions.keys())

    def all_statuses(self) -> dict:
        with self._lock:
            sessions = dict(self._sessions)
        return {rid: s.status for rid, s in sessions.items()}

    # --- Listeners (every session this registry creates) ---

    def on_state_change(self, callback: Callable):
        self._listeners.append(callback)

    def remove_state_listener(self, callback: Callable):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _dispatch(self, rover_id: str, status: dict):
        for callback in list(self._listeners):
            try:
                callback(rover_id, status)
            except Exception as e:
                print(f"[Registry] Listener error for rover {rover_id}: {e}")
