import asyncio
import itertools
import logging
from enum import StrEnum

from chat_sync.application.exceptions import (
    SubscriptionError,
    SubscriptionLagError,
    SubscriptionLimitExceeded,
)
from chat_sync.domain.message import Message
from chat_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)

# 대기 중인 __anext__를 깨우기 위한 종료 표시
_END_OF_STREAM = object()


class SubscriptionState(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"  # unsubscribe 호출됨. 남은 메시지 버림
    LAGGED = "lagged"  # 백로그 초과로 제거됨. 남은 메시지 전달 후 SubscriptionLagError
    CLOSED = "closed"  # 채널 종료. 남은 메시지 전달 후 종료


class Subscription:
    """
    방 라이브 피드 구독 핸들

    등록 이후 publish된 메시지를 publish 순서대로 yield 하는 async iterator.
    스스로 끝나지 않으며 unsubscribe(), 채널 종료, 백로그 초과 시에만 멈춘다.
    """

    def __init__(
        self,
        channel: "RoomChannel",
        subscription_id: int,
        max_pending_messages: int,
    ):
        self.channel = channel
        self.subscription_id = subscription_id
        self.max_pending_messages = max_pending_messages

        self.state = SubscriptionState.ACTIVE
        self.last_delivered_id: int | None = None

        # 크기 제한은 _deliver에서 직접 검사 (종료 표시는 항상 넣을 수 있어야 함)
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def room_id(self) -> str:
        return self.channel.room_id

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _deliver(self, message: Message) -> bool:
        """채널 전용. 큐에 넣지 못하면 False (구독 종료 처리됨)"""
        if self.state is not SubscriptionState.ACTIVE:
            return False

        if self._queue.qsize() >= self.max_pending_messages:
            self._end(SubscriptionState.LAGGED)
            return False

        self._queue.put_nowait(message)
        return True

    def _end(self, state: SubscriptionState) -> None:
        if self.state is SubscriptionState.ACTIVE:
            self._queue.put_nowait(_END_OF_STREAM)
        elif state is not SubscriptionState.CANCELLED:
            # unsubscribe만 다른 종료 상태를 덮어씀
            return
        self.state = state

    def unsubscribe(self) -> None:
        self.channel.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Message:
        if self.state is SubscriptionState.CANCELLED:
            raise StopAsyncIteration

        item = await self._queue.get()

        if self.state is SubscriptionState.CANCELLED:
            raise StopAsyncIteration

        if item is _END_OF_STREAM:
            # 이후 호출도 바로 끝나도록 다시 넣어둠
            self._queue.put_nowait(_END_OF_STREAM)
            if self.state is SubscriptionState.LAGGED:
                raise SubscriptionLagError(self.room_id, self.last_delivered_id or 0)
            raise StopAsyncIteration

        self.last_delivered_id = item.id
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.unsubscribe()

    def __repr__(self):
        return (
            f"Subscription(room_id={self.room_id!r}, id={self.subscription_id}, "
            f"state={self.state.value})"
        )


class RoomChannel:
    """
    한 방의 라이브 메시지를 현재 구독자들에게 fan-out (히스토리 재전송 없음)

    subscribe / publish / unsubscribe 모두 await 하지 않으므로
    이벤트 루프 안에서 등록 시점 기준으로 전/후가 명확하게 나뉜다.
    """

    def __init__(
        self,
        room_id: str,
        otel_manager: OTELManager,
        max_pending_messages: int = 1_000,
        max_subscribers: int = 1_000,
    ):
        self.room_id = room_id
        self.otel_manager = otel_manager
        self.max_pending_messages = max_pending_messages
        self.max_subscribers = max_subscribers

        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._is_closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def subscribe(self) -> Subscription:
        """
        Raises:
            SubscriptionError: 채널이 닫힘
            SubscriptionLimitExceeded: 구독자 수 제한 초과
        """
        if self._is_closed:
            raise SubscriptionError(f"Channel for room {self.room_id} is closed")

        if len(self._subscribers) >= self.max_subscribers:
            raise SubscriptionLimitExceeded(self.room_id, self.max_subscribers)

        subscription = Subscription(
            channel=self,
            subscription_id=next(self._ids),
            max_pending_messages=self.max_pending_messages,
        )
        self._subscribers[subscription.subscription_id] = subscription
        self.otel_manager.active_subscriptions_counter.add(1)

        logger.debug(
            f"Subscribed to room {self.room_id}",
            extra={
                "room_id": self.room_id,
                "subscription_id": subscription.subscription_id,
                "subscriber_count": len(self._subscribers),
            },
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """구독 해제 (멱등)"""
        self._remove(subscription)
        subscription._end(SubscriptionState.CANCELLED)

    def _remove(self, subscription: Subscription) -> bool:
        if self._subscribers.pop(subscription.subscription_id, None) is None:
            return False
        self.otel_manager.active_subscriptions_counter.add(-1)
        return True

    def publish(self, message: Message) -> int:
        """현재 구독자 모두에게 전달. 전달된 구독자 수 반환"""
        if message.room_id != self.room_id:
            raise ValueError(
                f"Message for room {message.room_id} published to room {self.room_id}"
            )

        delivered = 0
        lagged: list[Subscription] = []
        for subscription in list(self._subscribers.values()):
            if subscription._deliver(message):
                delivered += 1
            else:
                lagged.append(subscription)

        for subscription in lagged:
            if self._remove(subscription):
                self.otel_manager.lagged_subscriptions_counter.add(1)
                logger.warning(
                    f"Subscriber too slow, evicted from room {self.room_id}",
                    extra={
                        "room_id": self.room_id,
                        "subscription_id": subscription.subscription_id,
                        "last_delivered_id": subscription.last_delivered_id,
                    },
                )

        return delivered

    def close(self) -> None:
        """모든 구독 종료. 이미 큐에 있는 메시지는 전달됨"""
        self._is_closed = True
        subscriptions = list(self._subscribers.values())
        for subscription in subscriptions:
            self._remove(subscription)
            subscription._end(SubscriptionState.CLOSED)

        if subscriptions:
            logger.info(
                f"Closed channel for room {self.room_id}",
                extra={"room_id": self.room_id, "subscriber_count": len(subscriptions)},
            )
