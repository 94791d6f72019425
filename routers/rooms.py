import secrets
from fastapi import APIRouter, Depends, HTTPException, Query, Request
import redis
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, DeleteRoomsResponse, HealthResponse, RoomView, StatusResponse
from session_manager import session_manager
from backend import redis_backend
from errors import InvalidInput, RoomNotFound, StoreUnavailable
from constants import VERSION
import constants
from logging_config import get_logger, log_event

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api", tags=["rooms"])
health_router = APIRouter(tags=["health"])


def require_admin_key(key: str = Query("", description="Admin key")):
    admin_key = constants.ADMIN_KEY
    if not admin_key or not secrets.compare_digest(key, admin_key):
        logger.warning("Admin request rejected: invalid key")
        raise HTTPException(status_code=401, detail="Unauthorized")


@health_router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", version=VERSION)


@rooms_router.post("/create-room", response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request):
    # Body: { "ticketIds": ["T1", "T2"] }
    # Response 200: { "roomId": "7hd92f..." }
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {client_host} with {len(room.ticket_ids)} tickets")

    ticket_ids = [ticket_id.strip() for ticket_id in room.ticket_ids if ticket_id.strip()]
    try:
        room_id = await session_manager.create_room(ticket_ids)
    except InvalidInput as e:
        log_event(logger, "error", error="invalid_tickets")
        raise HTTPException(status_code=400, detail=str(e))

    return CreateRoomResponse(room_id=room_id)


@rooms_router.get("/rooms/{room_id}", response_model=RoomView)
async def get_room_details(room_id: str):
    """Current room view, the same payload clients receive in roomState messages."""
    try:
        room = await session_manager.get_room(room_id)
    except RoomNotFound:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room store unavailable")
    return room.to_record()


@rooms_router.delete("/rooms", response_model=DeleteRoomsResponse, dependencies=[Depends(require_admin_key)])
async def delete_all_rooms():
    # Administrative bulk delete: removes every room:* snapshot.
    # Connected clients keep their sockets; their next action fails with room not found.
    try:
        deleted = redis_backend.delete_all_rooms()
    except redis.RedisError as e:
        logger.error(f"Error deleting rooms: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Room store unavailable")
    return DeleteRoomsResponse(deleted=deleted)


@rooms_router.get("/status", response_model=StatusResponse, dependencies=[Depends(require_admin_key)])
async def status():
    try:
        return StatusResponse(
            active_rooms=redis_backend.count_active_rooms(),
            total_users=redis_backend.count_users(),
        )
    except redis.RedisError as e:
        logger.error(f"Error reading status: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Room store unavailable")
