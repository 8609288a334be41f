import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from chat_sync.application.exceptions import SequenceConflictError, StorageError
from chat_sync.application.message_store import MessageStore, RoomSequence
from chat_sync.domain.message import Message
from chat_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)


class MongoMessageStore(MessageStore):
    """채팅 메시지 저장소 (MongoDB). (roomId, id) 유니크 인덱스로 중복 id 방지"""

    def __init__(
        self,
        otel_manager: OTELManager,
        mongo_client_host: str = "mongodb://mongodb:27017",
        mongo_client_max_pool_size: int = 50,
        mongo_client_min_pool_size: int = 10,
        server_selection_timeout_ms: int = 5_000,
        db_name: str = "chat",
        **kwargs,
    ):
        super().__init__(otel_manager, **kwargs)
        self._mongo_client = AsyncIOMotorClient(
            mongo_client_host,
            maxPoolSize=mongo_client_max_pool_size,
            minPoolSize=mongo_client_min_pool_size,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
        )
        self.collection = self._mongo_client[db_name].messages

    async def start(self):
        """연결 확인 및 인덱스 초기화"""
        try:
            await self._mongo_client.admin.command("ping")
            await self.collection.create_index(
                [("roomId", ASCENDING), ("id", ASCENDING)], unique=True
            )
        except PyMongoError as e:
            raise StorageError(f"MongoDB unavailable: {e}") from e
        await super().start()

    async def stop(self):
        await super().stop()
        self._mongo_client.close()

    async def _load_sequence(self, room_id: str) -> RoomSequence:
        try:
            document = await self.collection.find_one(
                {"roomId": room_id}, sort=[("id", DESCENDING)]
            )
        except PyMongoError as e:
            logger.error(f"Failed to load sequence for room {room_id}: {e}")
            raise StorageError(f"Failed to load room {room_id}") from e

        if document is None:
            return RoomSequence()

        last = Message.model_validate(document)
        return RoomSequence(last_id=last.id, last_timestamp=last.timestamp)

    async def _persist(self, message: Message) -> None:
        try:
            await self.collection.insert_one(message.to_wire())
        except DuplicateKeyError as e:
            raise SequenceConflictError(message.room_id, message.id) from e
        except PyMongoError as e:
            logger.error(
                f"Failed to save message: {e}",
                exc_info=True,
                extra={"room_id": message.room_id, "message_id": message.id},
            )
            raise StorageError(f"Failed to save to room {message.room_id}") from e

    async def read_since(
        self, room_id: str, after_id: int = 0, limit: int | None = None
    ) -> list[Message]:
        """
        방의 메시지 조회 (커서 페이지네이션)

        Args:
            room_id: 방 ID
            after_id: 이 id 이후의 메시지만 조회
            limit: 조회할 최대 메시지 수 (None이면 전부)
        """
        if limit is not None and limit <= 0:
            return []

        query = {"roomId": room_id, "id": {"$gt": max(after_id, 0)}}
        try:
            cursor = self.collection.find(query, {"_id": 0}).sort("id", ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Failed to read room {room_id}: {e}")
            raise StorageError(f"Failed to read room {room_id}") from e

        return [Message.model_validate(document) for document in documents]

    async def message_count(self, room_id: str) -> int:
        try:
            return await self.collection.count_documents({"roomId": room_id})
        except PyMongoError as e:
            raise StorageError(f"Failed to count room {room_id}") from e
