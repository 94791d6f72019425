import asyncio
import json
from typing import List

from logging_config import get_logger
from room_lock import RoomLock
from room_state import Room

logger = get_logger(__name__)

ROOM_STATE_MESSAGE = "roomState"


def room_state_message(room: Room) -> dict:
    return {"type": ROOM_STATE_MESSAGE, "payload": room.to_record()}


async def broadcast(room: Room, lock: RoomLock) -> List[str]:
    """Send the current room view to every reachable user, at most once each.

    The message and recipient list are built under the room's shared lock;
    the sends happen after it is released. A failing recipient is logged and
    skipped. Returns the names the message was delivered to.

    The manager passes a room it loaded privately, so the shared lock only
    orders composition after any writer already queued on the same room.
    Other broadcasts compose alongside it and never wait on one another.
    """
    async with lock.read():
        message_json = json.dumps(room_state_message(room))
        recipients = [(user.name, user.live_stream) for user in room.reachable_users()]

    if not recipients:
        logger.debug(f"No reachable users in room {room.id}, nothing to broadcast")
        return []

    results = await asyncio.gather(
        *(_send(stream, message_json) for _, stream in recipients),
        return_exceptions=True,
    )

    delivered = []
    for (name, _), result in zip(recipients, results):
        if isinstance(result, Exception):
            logger.warning(f"Error broadcasting to user {name} in room {room.id}: {result}")
        else:
            delivered.append(name)
    logger.debug(f"Broadcasted room state to {len(delivered)}/{len(recipients)} users in room {room.id}")
    return delivered


async def _send(stream, message_json: str):
    await stream.send_text(message_json)
