import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, NamedTuple

from chat_sync.application.exceptions import (
    ServiceUnavailableError,
    SubscriptionError,
    ValidationError,
)
from chat_sync.application.message_store import MessageStore
from chat_sync.application.models import HistoryPage
from chat_sync.application.room_channel import RoomChannel, Subscription
from chat_sync.domain.message import Message
from chat_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)


class RoomFeed(NamedTuple):
    """subscribe 결과: 히스토리 스냅샷 + 그 직후부터의 라이브 피드"""

    history: list[Message]
    live: Subscription


@dataclass
class _RoomState:
    channel: RoomChannel
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # 락을 기다리거나 잡고 있는 작업 수. 0이 아니면 정리 대상 아님
    in_flight: int = 0


class ChatService:
    """
    외부(트랜스포트)가 사용하는 유일한 진입점

    같은 방의 append+publish 와 snapshot+subscribe 는 방 락으로 직렬화되어
    히스토리와 라이브 피드 사이에 빈틈이나 중복이 생기지 않는다.
    다른 방끼리는 락을 공유하지 않는다.
    """

    def __init__(
        self,
        otel_manager: OTELManager,
        message_store: MessageStore,
        max_pending_messages: int = 1_000,
        max_subscribers: int = 1_000,
        cleanup_interval: float = 30.0,
    ):
        self.otel_manager = otel_manager
        self.message_store = message_store
        self.max_pending_messages = max_pending_messages
        self.max_subscribers = max_subscribers
        self.cleanup_interval = cleanup_interval

        self._rooms: dict[str, _RoomState] = {}
        self._room_cleanup_task: asyncio.Task | None = None
        self._is_stopping = False

    async def start(self):
        if self._room_cleanup_task:
            logger.warning("Already running")
            return

        self._is_stopping = False
        self._room_cleanup_task = asyncio.create_task(self._room_cleanup_worker())
        logger.info("ChatService started")

    async def stop(self):
        """새 요청 거부 후 모든 채널 종료"""
        logger.info("ChatService stopping...")
        self._is_stopping = True

        if self._room_cleanup_task and not self._room_cleanup_task.done():
            self._room_cleanup_task.cancel()
            await asyncio.gather(self._room_cleanup_task, return_exceptions=True)
        self._room_cleanup_task = None

        for state in list(self._rooms.values()):
            state.channel.close()
        self._rooms.clear()

        logger.info("ChatService stopped")

    @asynccontextmanager
    async def _room(self, room_id: str) -> AsyncIterator[_RoomState]:
        """방 상태를 고정하고 방 락을 잡음"""
        state = self._rooms.get(room_id)
        if state is None:
            state = _RoomState(
                channel=RoomChannel(
                    room_id,
                    otel_manager=self.otel_manager,
                    max_pending_messages=self.max_pending_messages,
                    max_subscribers=self.max_subscribers,
                )
            )
            self._rooms[room_id] = state

        state.in_flight += 1
        try:
            async with state.lock:
                yield state
        finally:
            state.in_flight -= 1

    async def send(self, room_id: str, username: str, text: str) -> Message:
        """
        메시지 저장 후 방 구독자들에게 publish

        Raises:
            ValidationError: 입력 검증 실패
            StorageError: 저장 실패 (publish 하지 않음)
        """
        if self._is_stopping:
            raise ServiceUnavailableError()

        start = time.monotonic()
        with self.otel_manager.tracer.start_as_current_span(
            "chat.send",
            attributes={"room_id": room_id, "username": username},
        ) as span:
            async with self._room(room_id) as state:
                message = await self.message_store.append(room_id, username, text)
                delivered = state.channel.publish(message)

            span.set_attribute("message.id", message.id)
            span.set_attribute("delivered_count", delivered)

        self.otel_manager.send_latency_histogram.record(
            (time.monotonic() - start) * 1000
        )
        logger.debug(
            f"Message {message.id} sent to room {room_id}",
            extra={"room_id": room_id, "username": username, "delivered": delivered},
        )
        return message

    async def subscribe(self, room_id: str, after_id: int | None = None) -> RoomFeed:
        """
        히스토리 스냅샷과 라이브 피드를 원자적으로 반환

        after_id가 주어지면 (재연결) 그 이후 메시지만 히스토리로 반환

        Raises:
            ValidationError: after_id가 방의 마지막 id보다 큼 (구독 등록 안 됨)
            StorageError: 히스토리 조회 실패 (구독 등록 안 됨)
            SubscriptionError: 채널 사용 불가 (구독 등록 안 됨)
        """
        if self._is_stopping:
            raise SubscriptionError("Service is stopping")

        with self.otel_manager.tracer.start_as_current_span(
            "chat.subscribe",
            attributes={"room_id": room_id},
        ) as span:
            async with self._room(room_id) as state:
                if after_id is None:
                    history = await self.message_store.read_all(room_id)
                else:
                    history = await self.message_store.read_since(room_id, after_id)
                    if not history:
                        await self._check_resume_point(room_id, after_id)
                live = state.channel.subscribe()

            span.set_attribute("history.count", len(history))

        logger.info(
            f"New subscriber in room {room_id}",
            extra={
                "room_id": room_id,
                "history_count": len(history),
                "subscription_id": live.subscription_id,
            },
        )
        return RoomFeed(history=history, live=live)

    async def _check_resume_point(self, room_id: str, after_id: int) -> None:
        """라이브 피드는 마지막 id + 1 부터 시작하므로 after_id가 그보다 앞서면 안 됨"""
        last_id = await self.message_store.last_id(room_id)
        if after_id > last_id:
            logger.warning(
                f"Resume point {after_id} is ahead of room {room_id}",
                extra={"room_id": room_id, "after_id": after_id, "last_id": last_id},
            )
            raise ValidationError(
                f"after_id {after_id} is ahead of the last message id {last_id}"
            )

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.unsubscribe()

    async def history(
        self, room_id: str, after_id: int = 0, limit: int = 50
    ) -> HistoryPage:
        """읽기 전용 페이지 조회 (방 락 불필요)"""
        messages = await self.message_store.read_since(room_id, after_id, limit + 1)

        has_more = len(messages) > limit
        if has_more:
            messages = messages[:limit]

        return HistoryPage(
            messages=messages,
            has_more=has_more,
            last_id=messages[-1].id if messages else None,
        )

    def room_subscriber_count(self, room_id: str) -> int:
        state = self._rooms.get(room_id)
        return state.channel.subscriber_count if state else 0

    async def _room_cleanup_worker(self):
        """주기적으로 빈 방 정리"""
        try:
            while not self._is_stopping:
                await asyncio.sleep(self.cleanup_interval)
                cleaned = self._cleanup_idle_rooms()
                if cleaned > 0:
                    logger.info(f"Cleaned up {cleaned} idle rooms")
        except asyncio.CancelledError:
            logger.info("Room cleanup worker cancelled")
            raise
        except Exception as e:
            logger.error(f"Room cleanup worker error: {e}", exc_info=True)

    def _cleanup_idle_rooms(self) -> int:
        """구독자와 진행 중인 작업이 없는 방의 채널/락과 저장소 캐시 제거 (await 없음)"""
        idle = [
            room_id
            for room_id, state in self._rooms.items()
            if state.in_flight == 0 and state.channel.subscriber_count == 0
        ]
        for room_id in idle:
            del self._rooms[room_id]
            self.message_store.evict(room_id)
        return len(idle)
