import threading
from typing import Dict, Optional, Tuple

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """Live stream handles keyed by ``(room_id, user_name)``.

    Outlives any loaded Room: rooms are rebuilt from snapshots, streams are
    looked up here. Every method takes the internal lock, so it can be
    shared by all connection tasks (and threads).
    """

    def __init__(self):
        self._streams: Dict[Tuple[str, str], object] = {}
        self._lock = threading.Lock()

    def register(self, room_id: str, user_name: str, stream) -> None:
        with self._lock:
            replaced = self._streams.get((room_id, user_name))
            self._streams[(room_id, user_name)] = stream
        if replaced is not None and replaced is not stream:
            logger.warning(f"Replaced stream for user {user_name} in room {room_id}")
        logger.debug(f"Registered stream for user {user_name} in room {room_id}")

    def unregister(self, room_id: str, user_name: str, stream=None) -> bool:
        """Drop the entry. With ``stream`` given, only drop it if it is still that stream."""
        with self._lock:
            current = self._streams.get((room_id, user_name))
            if current is None or (stream is not None and current is not stream):
                return False
            del self._streams[(room_id, user_name)]
        logger.debug(f"Unregistered stream for user {user_name} in room {room_id}")
        return True

    def get(self, room_id: str, user_name: str) -> Optional[object]:
        with self._lock:
            return self._streams.get((room_id, user_name))

    def streams_for_room(self, room_id: str) -> Dict[str, object]:
        with self._lock:
            return {name: stream for (rid, name), stream in self._streams.items() if rid == room_id}

    def __len__(self):
        with self._lock:
            return len(self._streams)


connection_registry = ConnectionRegistry()
