import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chat_sync.application.chat_service import ChatService
from chat_sync.application.exceptions import (
    ServiceUnavailableError,
    StorageError,
    SubscriptionError,
    SubscriptionLimitExceeded,
    ValidationError,
)
from chat_sync.application.message_store import InMemoryMessageStore
from chat_sync.application.room_channel import SubscriptionState


class YieldingMessageStore(InMemoryMessageStore):
    """저장 중에 이벤트 루프를 양보 (외부 저장소 I/O 흉내)"""

    async def _persist(self, message):
        await asyncio.sleep(0)
        await super()._persist(message)


async def drain(subscription, count: int) -> list[int]:
    ids = []
    for _ in range(count):
        message = await asyncio.wait_for(anext(subscription), timeout=1)
        ids.append(message.id)
    return ids


@pytest.mark.asyncio
class TestChatServiceSend:
    """send 테스트"""

    async def test_send_publishes_to_subscribers(self, chat_service):
        history, live = await chat_service.subscribe("sports")
        assert history == []

        message = await chat_service.send("sports", "alice", "hi")

        assert message.id == 1
        assert message.room_id == "sports"
        received = await asyncio.wait_for(anext(live), timeout=1)
        assert received == message

    async def test_send_records_latency(self, chat_service, mock_otel_manager):
        await chat_service.send("sports", "alice", "hi")
        mock_otel_manager.send_latency_histogram.record.assert_called_once()

    async def test_validation_error_is_not_published(self, chat_service):
        _, live = await chat_service.subscribe("sports")

        with pytest.raises(ValidationError):
            await chat_service.send("sports", "alice", "")
        with pytest.raises(ValidationError):
            await chat_service.send("sports", "", "hi")

        assert live.pending == 0
        assert (await chat_service.send("sports", "alice", "hi")).id == 1

    async def test_storage_error_is_not_published(self, chat_service, message_store):
        _, live = await chat_service.subscribe("sports")

        with patch.object(
            message_store, "_persist", AsyncMock(side_effect=StorageError("down"))
        ):
            with pytest.raises(StorageError):
                await chat_service.send("sports", "alice", "lost")

        assert live.pending == 0

        message = await chat_service.send("sports", "alice", "kept")
        assert message.id == 1
        assert await drain(live, 1) == [1]

    async def test_rooms_do_not_block_each_other(self, chat_service):
        """한 방이 락을 잡고 있어도 다른 방 send는 진행"""
        async with chat_service._room("busy"):
            message = await asyncio.wait_for(
                chat_service.send("quiet", "alice", "hi"), timeout=1
            )
        assert message.id == 1


@pytest.mark.asyncio
class TestChatServiceSubscribe:
    """subscribe 테스트"""

    async def test_history_then_live(self, chat_service):
        await chat_service.send("sports", "alice", "one")
        await chat_service.send("sports", "bob", "two")

        history, live = await chat_service.subscribe("sports")
        await chat_service.send("sports", "alice", "three")

        assert [m.id for m in history] == [1, 2]
        assert await drain(live, 1) == [3]

    async def test_snapshot_and_live_are_contiguous(self, mock_otel_manager):
        """동시 send 중에 구독해도 히스토리+라이브가 빈틈/중복 없이 1..N"""
        store = YieldingMessageStore(mock_otel_manager)
        service = ChatService(mock_otel_manager, store, max_pending_messages=100)

        for i in range(5):
            await service.send("sports", "alice", f"before {i}")

        sends = [
            asyncio.create_task(service.send("sports", f"user{i}", f"live {i}"))
            for i in range(20)
        ]
        await asyncio.sleep(0)
        feeds = [await service.subscribe("sports") for _ in range(3)]
        await asyncio.gather(*sends)

        for history, live in feeds:
            history_ids = [m.id for m in history]
            live_ids = await drain(live, 25 - len(history))
            assert history_ids + live_ids == list(range(1, 26))
            assert live.pending == 0

    async def test_resume_after_id(self, chat_service):
        """재연결 시 after_id 이후만 히스토리로 받음"""
        for i in range(4):
            await chat_service.send("sports", "alice", f"msg {i}")

        history, _ = await chat_service.subscribe("sports", after_id=2)

        assert [m.id for m in history] == [3, 4]

    async def test_resume_at_last_id(self, chat_service):
        """마지막 id로 재연결하면 빈 히스토리, 라이브는 다음 id부터"""
        for i in range(3):
            await chat_service.send("sports", "alice", f"msg {i}")

        history, live = await chat_service.subscribe("sports", after_id=3)
        await chat_service.send("sports", "alice", "next")

        assert history == []
        assert await drain(live, 1) == [4]

    async def test_resume_from_zero_on_empty_room(self, chat_service):
        history, live = await chat_service.subscribe("sports", after_id=0)
        await chat_service.send("sports", "alice", "first")

        assert history == []
        assert await drain(live, 1) == [1]

    async def test_resume_ahead_of_room_rejected(self, chat_service):
        """마지막 id보다 큰 after_id는 거부, 구독 등록 안 됨"""
        for i in range(3):
            await chat_service.send("sports", "alice", f"msg {i}")

        with pytest.raises(ValidationError) as exc_info:
            await chat_service.subscribe("sports", after_id=10)

        assert "10" in exc_info.value.message
        assert chat_service.room_subscriber_count("sports") == 0

    async def test_resume_ahead_of_empty_room_rejected(self, chat_service):
        with pytest.raises(ValidationError):
            await chat_service.subscribe("sports", after_id=1)
        assert chat_service.room_subscriber_count("sports") == 0

    async def test_subscribe_storage_error_registers_nothing(
        self, chat_service, message_store
    ):
        with patch.object(
            message_store, "read_since", AsyncMock(side_effect=StorageError())
        ):
            with pytest.raises(StorageError):
                await chat_service.subscribe("sports")

        assert chat_service.room_subscriber_count("sports") == 0

    async def test_subscriber_limit(self, chat_service):
        """max_subscribers=5 (conftest)"""
        for _ in range(5):
            await chat_service.subscribe("sports")

        with pytest.raises(SubscriptionLimitExceeded):
            await chat_service.subscribe("sports")
        assert chat_service.room_subscriber_count("sports") == 5

    async def test_unsubscribe(self, chat_service):
        _, live = await chat_service.subscribe("sports")
        assert chat_service.room_subscriber_count("sports") == 1

        chat_service.unsubscribe(live)
        chat_service.unsubscribe(live)

        assert chat_service.room_subscriber_count("sports") == 0
        assert live.state is SubscriptionState.CANCELLED


@pytest.mark.asyncio
class TestChatServiceHistory:
    """history 페이지 테스트"""

    async def test_history_pages(self, chat_service):
        for i in range(5):
            await chat_service.send("sports", "alice", f"msg {i}")

        page = await chat_service.history("sports", after_id=0, limit=2)
        assert [m.id for m in page.messages] == [1, 2]
        assert page.has_more is True
        assert page.last_id == 2

        page = await chat_service.history("sports", after_id=4, limit=2)
        assert [m.id for m in page.messages] == [5]
        assert page.has_more is False
        assert page.last_id == 5

    async def test_history_of_empty_room(self, chat_service):
        page = await chat_service.history("nowhere")

        assert page.messages == []
        assert page.has_more is False
        assert page.last_id is None


@pytest.mark.asyncio
class TestChatServiceLifecycle:
    """start / stop / 방 정리 테스트"""

    async def test_start_and_stop(self, chat_service, cleanup_tasks):
        await chat_service.start()
        assert chat_service._room_cleanup_task is not None

        await chat_service.stop()
        assert chat_service._room_cleanup_task is None

    async def test_stop_closes_subscriptions_and_rejects_requests(self, chat_service):
        await chat_service.send("sports", "alice", "hi")
        _, live = await chat_service.subscribe("sports")

        await chat_service.stop()

        assert live.state is SubscriptionState.CLOSED
        with pytest.raises(StopAsyncIteration):
            await anext(live)
        with pytest.raises(ServiceUnavailableError):
            await chat_service.send("sports", "alice", "late")
        with pytest.raises(SubscriptionError):
            await chat_service.subscribe("sports")

    async def test_cleanup_removes_only_idle_rooms(self, chat_service):
        _, live = await chat_service.subscribe("watched")
        await chat_service.send("empty", "alice", "hi")

        assert chat_service._cleanup_idle_rooms() == 1
        assert set(chat_service._rooms) == {"watched"}

        chat_service.unsubscribe(live)
        assert chat_service._cleanup_idle_rooms() == 1
        assert chat_service._rooms == {}

    async def test_cleanup_skips_rooms_in_flight(self, chat_service):
        async with chat_service._room("busy"):
            assert chat_service._cleanup_idle_rooms() == 0
        assert chat_service._cleanup_idle_rooms() == 1

    async def test_ids_continue_after_cleanup(self, chat_service):
        await chat_service.send("sports", "alice", "one")
        chat_service._cleanup_idle_rooms()

        message = await chat_service.send("sports", "alice", "two")
        assert message.id == 2

    async def test_cleanup_worker_runs(self, chat_service, cleanup_tasks):
        """cleanup_interval=0.05 (conftest)"""
        await chat_service.start()
        await chat_service.send("sports", "alice", "hi")

        await asyncio.sleep(0.2)
        assert chat_service._rooms == {}

        await chat_service.stop()

    async def test_cleanup_evicts_store_caches(self, chat_service, message_store):
        """정리된 방은 저장소의 시퀀스/락 캐시도 제거"""
        await chat_service.send("sports", "alice", "one")
        assert "sports" in message_store._sequences

        chat_service._cleanup_idle_rooms()

        assert "sports" not in message_store._sequences
        assert "sports" not in message_store._locks
        assert (await chat_service.send("sports", "alice", "two")).id == 2
