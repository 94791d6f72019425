from typing import List

from connection_registry import ConnectionRegistry
from logging_config import get_logger
from room_state import Room

logger = get_logger(__name__)


def reconcile(room: Room, registry: ConnectionRegistry) -> List[str]:
    """Attach live streams from the registry to a freshly loaded room.

    Users in the snapshot without a registry entry keep their slot and votes
    but get no stream, so broadcasts skip them. A registry entry whose name
    is missing from the snapshot (a concurrent writer dropped the join) is
    only logged. Returns the names that ended up reachable.
    """
    live = registry.streams_for_room(room.id)

    for name, user in room.users.items():
        stream = live.get(name)
        if stream is None:
            if user.live_stream is not None:
                logger.debug(f"User {name} in room {room.id} has no live connection, detaching stream")
            user.live_stream = None
        else:
            user.live_stream = stream

    for name in live:
        if name not in room.users:
            logger.warning(f"Live connection for {name} is not in the snapshot of room {room.id}, unreachable until rejoin")

    attached = [user.name for user in room.reachable_users()]
    logger.debug(f"Reconciled room {room.id}: {len(attached)}/{len(room.users)} users reachable")
    return attached
