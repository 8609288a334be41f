from datetime import datetime, UTC
from unittest.mock import AsyncMock

import pytest
from orjson import orjson
from redis import RedisError

from chat_sync.application.exceptions import SequenceConflictError, StorageError
from chat_sync.domain.message import Message
from chat_sync.infrastructure.redis import RedisMessageStore


def make_raw(message_id: int, room_id: str = "sports") -> bytes:
    message = Message(
        id=message_id,
        room_id=room_id,
        username="alice",
        text=f"msg {message_id}",
        timestamp=datetime(2026, 1, 22, 10, 0, message_id, tzinfo=UTC),
    )
    return orjson.dumps(message.to_wire())


@pytest.fixture
def redis_store(mock_otel_manager):
    """실제 연결 없이 client/script 를 mock 으로 교체"""
    store = RedisMessageStore(mock_otel_manager, key_prefix="test:room")
    store.client = AsyncMock()
    store.client.lindex = AsyncMock(return_value=None)
    store._append_script = AsyncMock(return_value=[1, 1])
    return store


@pytest.mark.asyncio
class TestRedisMessageStore:
    """RedisMessageStore 테스트"""

    async def test_key(self, redis_store):
        assert redis_store.get_key("sports") == "test:room:sports:messages"

    async def test_start_pings(self, redis_store):
        await redis_store.start()
        redis_store.client.ping.assert_awaited_once()

    async def test_start_fails_when_unreachable(self, redis_store):
        redis_store.client.ping.side_effect = RedisError("connection refused")

        with pytest.raises(StorageError):
            await redis_store.start()

    async def test_append_first_message(self, redis_store):
        message = await redis_store.append("sports", "alice", "hi")

        assert message.id == 1
        redis_store.client.lindex.assert_awaited_once_with(
            "test:room:sports:messages", -1
        )
        kwargs = redis_store._append_script.call_args.kwargs
        assert kwargs["keys"] == ["test:room:sports:messages"]
        assert kwargs["args"][0] == 1
        assert orjson.loads(kwargs["args"][1]) == message.to_wire()

    async def test_append_continues_existing_log(self, redis_store):
        """저장소의 마지막 메시지에서 시퀀스 복원"""
        redis_store.client.lindex.return_value = make_raw(41)
        redis_store._append_script.return_value = [1, 42]

        message = await redis_store.append("sports", "alice", "hi")

        assert message.id == 42
        assert message.timestamp > datetime(2026, 1, 22, 10, 0, 41, tzinfo=UTC)

    async def test_sequence_is_loaded_once(self, redis_store):
        redis_store._append_script.side_effect = [[1, 1], [1, 2]]

        await redis_store.append("sports", "alice", "one")
        second = await redis_store.append("sports", "alice", "two")

        assert second.id == 2
        redis_store.client.lindex.assert_awaited_once()

    async def test_conflict_reloads_sequence(self, redis_store):
        """다른 노드가 먼저 추가하면 시퀀스를 다시 읽고 재시도"""
        redis_store.client.lindex.side_effect = [None, make_raw(1)]
        redis_store._append_script.side_effect = [[0, 1], [1, 2]]

        message = await redis_store.append("sports", "alice", "hi")

        assert message.id == 2
        assert redis_store.client.lindex.await_count == 2

    async def test_conflict_retries_exhausted(self, redis_store):
        redis_store._append_script.return_value = [0, 5]

        with pytest.raises(SequenceConflictError):
            await redis_store.append("sports", "alice", "hi")
        assert redis_store._append_script.await_count == 3

    async def test_append_redis_error(self, redis_store):
        redis_store._append_script.side_effect = RedisError("timeout")

        with pytest.raises(StorageError):
            await redis_store.append("sports", "alice", "hi")

    async def test_read_since(self, redis_store):
        redis_store.client.lrange = AsyncMock(return_value=[make_raw(3), make_raw(4)])

        messages = await redis_store.read_since("sports", after_id=2, limit=2)

        assert [m.id for m in messages] == [3, 4]
        redis_store.client.lrange.assert_awaited_once_with(
            "test:room:sports:messages", 2, 3
        )

    async def test_read_all(self, redis_store):
        redis_store.client.lrange = AsyncMock(return_value=[])

        assert await redis_store.read_all("sports") == []
        redis_store.client.lrange.assert_awaited_once_with(
            "test:room:sports:messages", 0, -1
        )

    async def test_read_with_zero_limit(self, redis_store):
        redis_store.client.lrange = AsyncMock()

        assert await redis_store.read_since("sports", 0, 0) == []
        redis_store.client.lrange.assert_not_awaited()

    async def test_read_redis_error(self, redis_store):
        redis_store.client.lrange = AsyncMock(side_effect=RedisError("down"))

        with pytest.raises(StorageError):
            await redis_store.read_all("sports")

    async def test_message_count(self, redis_store):
        redis_store.client.llen = AsyncMock(return_value=3)
        assert await redis_store.message_count("sports") == 3
