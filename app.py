from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router, health_router
from backend import redis_backend
from session_manager import session_manager
from errors import RoomError, RoomNotFound, UserAlreadyJoined, StoreUnavailable
from constants import ALLOWED_ORIGINS, STATUS_INTERVAL_SECONDS, VERSION
import asyncio
import json
import redis
from typing import Optional
from logging_config import get_logger, setup_logging, log_event
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

# Leave tasks still running after their connection task was cancelled
_pending_leaves = set()


async def report_status(interval: int = STATUS_INTERVAL_SECONDS):
    """Background task logging how many rooms and users the store holds."""
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(interval)
        try:
            # Scans are blocking redis calls; keep them off the event loop
            active_rooms = await loop.run_in_executor(None, redis_backend.count_active_rooms)
            total_users = await loop.run_in_executor(None, redis_backend.count_users)
            logger.info(f"Status - Active rooms: {active_rooms}, Total users: {total_users}")
        except redis.RedisError as e:
            logger.error(f"Redis scan error while reporting status: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Planning backend v{VERSION} starting up")
    redis_backend.ping()
    status_task = asyncio.create_task(report_status())
    try:
        yield
    finally:
        status_task.cancel()
        try:
            await status_task
        except asyncio.CancelledError:
            pass
        if _pending_leaves:
            await asyncio.gather(*list(_pending_leaves), return_exceptions=True)
        logger.info("Planning backend shut down")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.websocket("/api/ws")
async def websocket_endpoint(websocket: WebSocket, roomId: Optional[str] = None, name: Optional[str] = None, gamemaster: Optional[str] = None):
    """Planning room websocket.

    Query parameters:
    - roomId: room to join
    - name: display name, unique among the room's joined users
    - gamemaster: "true" to claim the game master role if it is free
    """
    room_id = (roomId or "").strip()
    user_name = (name or "").strip()
    as_game_master = (gamemaster or "").lower() == "true"
    logger.info(f"WebSocket connection attempt for room: {room_id}, name: {user_name}, gamemaster: {as_game_master}")

    if not room_id or not user_name:
        log_event(logger, "error", room_id, user=user_name, error="missing_params")
        await websocket.close(code=1008, reason="Missing roomId or name")
        return

    # Refuse before accepting, like an HTTP error on the upgrade request
    try:
        room = await session_manager.get_room(room_id)
    except RoomNotFound:
        log_event(logger, "error", room_id, error="room_not_found")
        await websocket.close(code=1008, reason="Room not found")
        return
    except StoreUnavailable:
        await websocket.close(code=1011, reason="Internal server error")
        return
    if user_name in room.users and room.users[user_name].live_stream is not None:
        log_event(logger, "error", room_id, user=user_name, error="user_exists")
        await websocket.close(code=1008, reason="Username already taken")
        return

    await websocket.accept()
    logger.info(f"WebSocket connection initialized for user {user_name} in room {room_id}")

    try:
        await session_manager.join(room_id, user_name, as_game_master, stream=websocket)
    except (UserAlreadyJoined, RoomNotFound, StoreUnavailable) as e:
        # Lost a race with another join or a bulk delete after the pre-check
        logger.info(f"Join failed for user {user_name} in room {room_id}: {e}")
        try:
            await websocket.send_text(json.dumps({"type": "error", "payload": None, "error": str(e)}))
            await websocket.close(code=1008, reason=str(e))
        except Exception as close_error:
            logger.debug(f"Error closing WebSocket: {close_error}")
        return

    message_count = 0
    try:
        while True:
            data = await websocket.receive_text()
            message_count += 1
            try:
                await session_manager.handle_message(room_id, user_name, data)
            except Exception as e:
                # One bad message must not end this connection or anyone else's
                logger.error(f"Error handling message #{message_count} from user {user_name} in room {room_id}: {e}", exc_info=True)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket closed for user {user_name} in room {room_id}: code={e.code}")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_name} in room {room_id}: {e}", exc_info=True)
    finally:
        await end_session(websocket, room_id, user_name)


async def end_session(websocket, room_id: str, user_name: str):
    """Run Leave for a finished connection.

    The work runs in its own task and is shielded, so cancelling the
    connection task (server shutdown, client teardown) cannot drop the
    broadcast that tells the remaining users about the departure.
    """
    task = asyncio.create_task(_leave_and_close(websocket, room_id, user_name))
    _pending_leaves.add(task)
    task.add_done_callback(_pending_leaves.discard)
    await asyncio.shield(task)


async def _leave_and_close(websocket, room_id: str, user_name: str):
    try:
        await session_manager.leave(room_id, user_name, stream=websocket)
    except RoomError as e:
        logger.warning(f"Could not remove user {user_name} from room {room_id}: {e}")
    except Exception as e:
        logger.error(f"Error during leave for user {user_name} in room {room_id}: {e}", exc_info=True)

    try:
        await websocket.close()
    except Exception as e:
        logger.debug(f"Error closing WebSocket: {e}")
    logger.info(f"WebSocket connection closed for user {user_name} in room {room_id}")
