import json
import redis
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import ROOM_KEY, ROOM_KEY_PREFIX
from logging_config import get_logger

logger = get_logger(__name__)


class RedisBackend:
    """Key-value snapshot store for room records.

    Holds no room logic: callers serialize and deserialize. ``get`` returns
    None for a missing key; redis errors propagate as ``redis.RedisError``.
    """

    def __init__(self, redis_client=None):
        if redis_client is None:
            # redis-py connects lazily, so building the client never blocks import
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client

    def ping(self) -> bool:
        try:
            self.redis_client.ping()
            logger.info("Redis client connected successfully")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            return False

    def get(self, key: str):
        data = self.redis_client.get(key)
        if data is None:
            logger.debug(f"Key {key} not found in Redis")
        return data

    def set(self, key: str, data):
        self.redis_client.set(key, data)
        logger.debug(f"Stored {key}")
        return True

    def scan(self, prefix: str):
        return list(self.redis_client.scan_iter(match=f"{prefix}*"))

    def delete(self, *keys) -> int:
        if not keys:
            return 0
        return self.redis_client.delete(*keys)

    def room_key(self, room_id: str) -> str:
        return ROOM_KEY.format(room_id=room_id)

    def get_room_data(self, room_id: str):
        return self.get(self.room_key(room_id))

    def save_room_data(self, room_id: str, data):
        return self.set(self.room_key(room_id), data)

    def delete_all_rooms(self) -> int:
        keys = self.scan(ROOM_KEY_PREFIX)
        deleted = self.delete(*keys)
        logger.info(f"Deleted {deleted} rooms")
        return deleted

    def count_active_rooms(self) -> int:
        return len(self.scan(ROOM_KEY_PREFIX))

    def count_users(self) -> int:
        total = 0
        for key in self.scan(ROOM_KEY_PREFIX):
            try:
                data = self.get(key)
                if data is None:
                    continue
                total += len(json.loads(data).get("Users") or {})
            except (redis.RedisError, json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"Could not read room snapshot {key}: {e}")
        return total


redis_backend = RedisBackend()
