import uuid
import weakref
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis
from pydantic import ValidationError

from backend import RedisBackend, redis_backend
from broadcaster import broadcast
from connection_registry import ConnectionRegistry, connection_registry
from errors import InvalidInput, RoomNotFound, StaleTicketVote, StoreUnavailable, Unauthorized, UserAlreadyJoined
from logging_config import get_logger, log_event
from reconciler import reconcile
from room_lock import RoomLock
from room_state import Room
from schemas.rooms import InboundMessage

logger = get_logger(__name__)

# Rooms kept in process as a fallback when Redis cannot be read
LAST_KNOWN_CACHE_SIZE = 1024


class RoomSessionManager:
    """Applies room operations against snapshots in the store.

    Every operation reloads the room from Redis under that room's write
    lock, mutates it, saves it, re-attaches live streams from the registry
    and broadcasts the result. Rooms never share a lock.

    With ``allow_reconnect`` a join under a name that is still in the
    snapshot but has no live stream re-attaches that user instead of being
    refused; only a name with a live stream counts as already joined.
    """

    def __init__(self, backend: RedisBackend, registry: ConnectionRegistry, allow_reconnect: bool = True):
        self.backend = backend
        self.registry = registry
        self.allow_reconnect = allow_reconnect
        # A lock lives only while some task holds a reference to it
        self._locks: "weakref.WeakValueDictionary[str, RoomLock]" = weakref.WeakValueDictionary()
        self._last_known: "OrderedDict[str, dict]" = OrderedDict()

    def lock_for(self, room_id: str) -> RoomLock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = RoomLock()
            self._locks[room_id] = lock
        return lock

    # -- persistence -------------------------------------------------------

    def _remember(self, room: Room):
        self._last_known[room.id] = room.to_record()
        self._last_known.move_to_end(room.id)
        while len(self._last_known) > LAST_KNOWN_CACHE_SIZE:
            self._last_known.popitem(last=False)

    def _load(self, room_id: str) -> Room:
        try:
            data = self.backend.get_room_data(room_id)
        except redis.RedisError as e:
            cached = self._last_known.get(room_id)
            if cached is None:
                logger.error(f"Redis error loading room {room_id} and no cached copy: {e}")
                raise StoreUnavailable(f"cannot load room {room_id}") from e
            logger.error(f"Redis error loading room {room_id}, using last known state: {e}")
            return Room.from_record(cached)
        if data is None:
            raise RoomNotFound(f"room {room_id} not found")
        room = Room.from_json(data)
        self._remember(room)
        return room

    def _persist(self, room: Room) -> bool:
        self._remember(room)
        try:
            self.backend.save_room_data(room.id, room.to_json())
            return True
        except redis.RedisError as e:
            # Live clients still get the update; durability is best-effort
            logger.error(f"Failed to persist room {room.id}: {e}")
            log_event(logger, "error", room.id, error="persist_failed")
            return False

    # -- operations --------------------------------------------------------

    async def create_room(self, ticket_ids) -> str:
        room = Room.create(uuid.uuid4().hex, ticket_ids)
        async with self.lock_for(room.id).write():
            self._persist(room)
        log_event(logger, "room_created", room.id)
        logger.info(f"Room {room.id} created with {len(room.tickets)} tickets")
        return room.id

    async def get_room(self, room_id: str) -> Room:
        lock = self.lock_for(room_id)
        async with lock.read():
            room = self._load(room_id)
            reconcile(room, self.registry)
        return room

    async def join(self, room_id: str, user_name: str, as_game_master: bool = False, stream=None) -> Room:
        if not user_name:
            raise InvalidInput("user name is required")
        lock = self.lock_for(room_id)
        async with lock.write():
            room = self._load(room_id)
            if user_name in room.users:
                if not self.allow_reconnect or self.registry.get(room_id, user_name) is not None:
                    log_event(logger, "error", room_id, user=user_name, error="user_exists")
                    raise UserAlreadyJoined(f"{user_name} already joined room {room_id}")
                logger.info(f"User {user_name} reconnecting to room {room_id}")
            else:
                room.add_user(user_name)

            if as_game_master:
                if room.claim_game_master(user_name):
                    logger.info(f"Game master set for room {room_id}: {user_name}")
                elif not room.is_game_master(user_name):
                    logger.info(f"Ignoring game master claim by {user_name} in room {room_id}, held by {room.game_master}")

            if stream is not None:
                self.registry.register(room_id, user_name, stream)
            self._persist(room)
            reconcile(room, self.registry)
        log_event(logger, "user_joined", room_id, user=user_name)
        await broadcast(room, lock)
        return room

    async def vote(self, room_id: str, user_name: str, ticket_id: str, vote: Any) -> Optional[Room]:
        def apply(room: Room):
            value = room.record_vote(user_name, ticket_id, vote)
            logger.info(f"Vote recorded for user {user_name} on ticket {ticket_id}: {value}")

        return await self._apply(room_id, user_name, "vote", apply)

    async def reveal(self, room_id: str, user_name: str) -> Optional[Room]:
        def apply(room: Room):
            room.reveal(user_name)
            logger.info(f"Votes revealed in room {room_id} by game master {user_name}")

        return await self._apply(room_id, user_name, "reveal", apply)

    async def advance(self, room_id: str, user_name: str) -> Optional[Room]:
        def apply(room: Room):
            old = room.current_ticket
            if room.advance(user_name):
                logger.info(f"Advanced to next ticket in room {room_id}: {old} -> {room.current_ticket}")
            else:
                logger.info(f"Attempted to advance past last ticket in room {room_id}")

        return await self._apply(room_id, user_name, "next", apply)

    async def retreat(self, room_id: str, user_name: str) -> Optional[Room]:
        def apply(room: Room):
            old = room.current_ticket
            if room.retreat(user_name):
                logger.info(f"Went back to previous ticket in room {room_id}: {old} -> {room.current_ticket}")
            else:
                logger.info(f"Attempted to go back before first ticket in room {room_id}")

        return await self._apply(room_id, user_name, "previous", apply)

    async def leave(self, room_id: str, user_name: str, stream=None) -> Room:
        self.registry.unregister(room_id, user_name, stream)
        lock = self.lock_for(room_id)
        async with lock.write():
            room = self._load(room_id)
            was_game_master = room.is_game_master(user_name)
            room.remove_user(user_name)
            if was_game_master:
                logger.info(f"Game master removed from room {room_id}")
            self._persist(room)
            # Only to find the remaining streams: the room was rebuilt from its snapshot
            reconcile(room, self.registry)
        log_event(logger, "user_left", room_id, user=user_name)
        await broadcast(room, lock)
        return room

    async def _apply(self, room_id: str, user_name: str, action: str, apply: Callable[[Room], None]) -> Optional[Room]:
        """Load, mutate, persist, reconcile, broadcast. Rejected actions return None untouched."""
        lock = self.lock_for(room_id)
        async with lock.write():
            room = self._load(room_id)
            try:
                apply(room)
            except Unauthorized as e:
                logger.info(f"Ignored {action} from {user_name} in room {room_id}: {e}")
                return None
            except StaleTicketVote as e:
                logger.info(f"Vote for wrong ticket from user {user_name} in room {room_id}: {e}")
                return None
            except InvalidInput as e:
                logger.info(f"Invalid {action} payload from user {user_name} in room {room_id}: {e}")
                return None
            self._persist(room)
            reconcile(room, self.registry)
        await broadcast(room, lock)
        return room

    # -- inbound protocol --------------------------------------------------

    async def handle_message(self, room_id: str, user_name: str, raw: Any) -> Optional[Room]:
        """Dispatch one inbound envelope. Bad or unknown messages are logged and ignored."""
        try:
            message = InboundMessage.model_validate_json(raw) if isinstance(raw, (str, bytes)) \
                else InboundMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Malformed message from user {user_name} in room {room_id}: {e.error_count()} errors")
            return None

        logger.debug(f"Received message from user {user_name} in room {room_id}: type={message.type}")
        if message.type == "vote":
            payload = message.payload
            if not isinstance(payload, dict) or not isinstance(payload.get("ticketId"), str) or "vote" not in payload:
                logger.info(f"Invalid vote payload from user {user_name} in room {room_id}")
                return None
            return await self.vote(room_id, user_name, payload["ticketId"], payload["vote"])
        if message.type == "reveal":
            return await self.reveal(room_id, user_name)
        if message.type == "next":
            return await self.advance(room_id, user_name)
        if message.type == "previous":
            return await self.retreat(room_id, user_name)
        logger.info(f"Unknown message type from user {user_name} in room {room_id}: {message.type}")
        return None


session_manager = RoomSessionManager(redis_backend, connection_registry)
