import logging

import redis.asyncio as redis
from orjson import orjson
from redis import RedisError

from chat_sync.application.exceptions import SequenceConflictError, StorageError
from chat_sync.application.message_store import MessageStore, RoomSequence
from chat_sync.domain.message import Message
from chat_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)

# LLEN + 1 == id 일 때만 RPUSH. 반환: {appended(0|1), length}
APPEND_SCRIPT = """
local length = redis.call('LLEN', KEYS[1])
if length + 1 ~= tonumber(ARGV[1]) then
    return {0, length}
end
redis.call('RPUSH', KEYS[1], ARGV[2])
return {1, length + 1}
"""


class RedisMessageStore(MessageStore):
    """
    방마다 Redis 리스트 하나 (원소 = JSON 메시지)

    id가 1부터 빈틈 없이 증가하므로 리스트 index == id - 1
    """

    def __init__(
        self,
        otel_manager: OTELManager,
        host: str = "redis",
        port: int = 6379,
        max_connections: int = 100,
        socket_timeout: int = 5,
        key_prefix: str = "chat:room",
        **kwargs,
    ):
        super().__init__(otel_manager, **kwargs)
        self.key_prefix = key_prefix
        self.pool = redis.ConnectionPool(
            host=host,
            port=port,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            retry_on_timeout=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)
        self._append_script = self.client.register_script(APPEND_SCRIPT)

    async def start(self):
        try:
            await self.client.ping()
        except RedisError as e:
            raise StorageError(f"Redis unavailable: {e}") from e
        await super().start()

    async def stop(self):
        await super().stop()
        await self.client.aclose()
        await self.pool.disconnect()

    def get_key(self, room_id: str) -> str:
        return f"{self.key_prefix}:{room_id}:messages"

    async def _load_sequence(self, room_id: str) -> RoomSequence:
        try:
            raw = await self.client.lindex(self.get_key(room_id), -1)
        except RedisError as e:
            logger.error(f"Failed to load sequence for room {room_id}: {e}")
            raise StorageError(f"Failed to load room {room_id}") from e

        if raw is None:
            return RoomSequence()

        last = Message.model_validate(orjson.loads(raw))
        return RoomSequence(last_id=last.id, last_timestamp=last.timestamp)

    async def _persist(self, message: Message) -> None:
        key = self.get_key(message.room_id)
        try:
            appended, length = await self._append_script(
                keys=[key], args=[message.id, orjson.dumps(message.to_wire())]
            )
        except RedisError as e:
            logger.error(
                f"Failed to append message: {e}",
                extra={"room_id": message.room_id, "message_id": message.id},
            )
            raise StorageError(f"Failed to append to room {message.room_id}") from e

        if not appended:
            logger.warning(
                f"Room log length {length} does not match id {message.id}",
                extra={"room_id": message.room_id},
            )
            raise SequenceConflictError(message.room_id, message.id)

    async def read_since(
        self, room_id: str, after_id: int = 0, limit: int | None = None
    ) -> list[Message]:
        start = max(after_id, 0)
        if limit is None:
            end = -1
        elif limit <= 0:
            return []
        else:
            end = start + limit - 1

        try:
            raw_messages = await self.client.lrange(self.get_key(room_id), start, end)
        except RedisError as e:
            logger.error(f"Failed to read room {room_id}: {e}")
            raise StorageError(f"Failed to read room {room_id}") from e

        return [Message.model_validate(orjson.loads(raw)) for raw in raw_messages]

    async def message_count(self, room_id: str) -> int:
        try:
            return await self.client.llen(self.get_key(room_id))
        except RedisError as e:
            raise StorageError(f"Failed to count room {room_id}") from e
