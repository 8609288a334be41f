import abc
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from chat_sync.application.exceptions import (
    SequenceConflictError,
    ServiceUnavailableError,
    ValidationError,
)
from chat_sync.domain.message import DEFAULT_MAX_TEXT_LENGTH, Message, MessageDraft
from chat_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)


@dataclass
class RoomSequence:
    """방의 마지막 id/timestamp. MessageStore만 변경함"""

    last_id: int = 0
    last_timestamp: datetime | None = None

    def next_timestamp(self) -> datetime:
        now = datetime.now(UTC)
        if self.last_timestamp is not None and now <= self.last_timestamp:
            return self.last_timestamp + timedelta(microseconds=1)
        return now

    def advance(self, message: Message) -> None:
        self.last_id = message.id
        self.last_timestamp = message.timestamp


class MessageStore(abc.ABC):
    """
    방별 append-only 메시지 로그

    - id는 방마다 1부터 빈틈 없이 증가
    - 저장 실패 시 id를 소비하지 않음
    - 같은 방의 append는 방 락으로 직렬화 (다른 방끼리는 독립)

    백엔드는 _load_sequence, _persist, read_since만 구현
    """

    def __init__(
        self,
        otel_manager: OTELManager,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
        max_sequence_retries: int = 3,
    ):
        self.otel_manager = otel_manager
        self.max_text_length = max_text_length
        self.max_sequence_retries = max_sequence_retries

        self._sequences: dict[str, RoomSequence] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, int] = {}
        self._is_stopped = False

    async def start(self):
        logger.info(f"{type(self).__name__} started")

    async def stop(self):
        self._is_stopped = True
        logger.info(f"{type(self).__name__} stopped")

    def _get_room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    def validate(self, room_id: str, username: str, text: str) -> MessageDraft:
        """
        Raises:
            ValidationError: 빈 text/username, text 길이 초과
        """
        try:
            return MessageDraft.model_validate(
                {"room_id": room_id, "username": username, "text": text},
                context={"max_text_length": self.max_text_length},
            )
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False)
            logger.warning(
                f"Message validation failed: {errors[0]['msg']}",
                extra={"room_id": room_id, "username": username},
            )
            raise ValidationError(message=errors[0]["msg"], errors=errors) from e

    async def append(self, room_id: str, username: str, text: str) -> Message:
        """
        메시지를 검증하고 다음 id를 부여해 저장

        Raises:
            ValidationError: 입력 검증 실패 (id 소비 없음)
            StorageError: 저장 실패 (id 소비 없음)
        """
        draft = self.validate(room_id, username, text)

        if self._is_stopped:
            raise ServiceUnavailableError("Message store is stopped")

        with self.otel_manager.tracer.start_as_current_span(
            "message_store.append",
            attributes={"room_id": draft.room_id, "message.length": len(draft.text)},
        ) as span:
            async with self._room_lock(draft.room_id):
                attempt = 0
                while True:
                    attempt += 1
                    sequence = await self._get_sequence(draft.room_id)
                    message = Message(
                        id=sequence.last_id + 1,
                        room_id=draft.room_id,
                        username=draft.username,
                        text=draft.text,
                        timestamp=sequence.next_timestamp(),
                    )

                    try:
                        await self._persist(message)
                    except SequenceConflictError:
                        # 다른 writer가 먼저 추가함. 시퀀스를 다시 읽어야 함
                        self._sequences.pop(draft.room_id, None)
                        logger.warning(
                            f"Sequence conflict on attempt {attempt}",
                            extra={"room_id": draft.room_id, "message_id": message.id},
                        )
                        if attempt >= self.max_sequence_retries:
                            raise
                        continue

                    sequence.advance(message)
                    break

            span.set_attribute("message.id", message.id)
            self.otel_manager.messages_appended_counter.add(1)
            return message

    @asynccontextmanager
    async def _room_lock(self, room_id: str) -> AsyncIterator[None]:
        """방 락을 잡음. 기다리는 동안에도 evict 대상에서 제외"""
        self._in_flight[room_id] = self._in_flight.get(room_id, 0) + 1
        try:
            async with self._get_room_lock(room_id):
                yield
        finally:
            self._in_flight[room_id] -= 1
            if self._in_flight[room_id] == 0:
                del self._in_flight[room_id]

    def evict(self, room_id: str) -> bool:
        """
        방의 캐시된 시퀀스와 락 제거 (다음 append 때 저장소에서 다시 읽음)

        append가 진행 중이거나 락을 기다리는 중이면 아무것도 하지 않고 False
        """
        if self._in_flight.get(room_id):
            return False
        self._locks.pop(room_id, None)
        self._sequences.pop(room_id, None)
        return True

    async def last_id(self, room_id: str) -> int:
        """저장소 기준 방의 마지막 메시지 id (빈 방이면 0)"""
        return (await self._load_sequence(room_id)).last_id

    async def _get_sequence(self, room_id: str) -> RoomSequence:
        sequence = self._sequences.get(room_id)
        if sequence is None:
            sequence = await self._load_sequence(room_id)
            self._sequences[room_id] = sequence
        return sequence

    async def read_all(self, room_id: str) -> list[Message]:
        """방의 전체 메시지 (id 오름차순). 없는 방이면 빈 리스트"""
        return await self.read_since(room_id, 0)

    async def message_count(self, room_id: str) -> int:
        return len(await self.read_all(room_id))

    @abc.abstractmethod
    async def read_since(
        self, room_id: str, after_id: int = 0, limit: int | None = None
    ) -> list[Message]:
        """id > after_id 인 메시지 (id 오름차순, 최대 limit개)"""

    @abc.abstractmethod
    async def _load_sequence(self, room_id: str) -> RoomSequence:
        """저장소에서 방의 마지막 메시지 id/timestamp 조회"""

    @abc.abstractmethod
    async def _persist(self, message: Message) -> None:
        """
        Raises:
            SequenceConflictError: message.id 자리가 이미 사용됨
            StorageError: 저장 실패
        """


class InMemoryMessageStore(MessageStore):
    """프로세스 메모리 저장소 (기본값, 테스트용)"""

    def __init__(self, otel_manager: OTELManager, **kwargs):
        super().__init__(otel_manager, **kwargs)
        self._logs: dict[str, list[Message]] = {}

    async def _load_sequence(self, room_id: str) -> RoomSequence:
        log = self._logs.get(room_id)
        if not log:
            return RoomSequence()
        return RoomSequence(last_id=log[-1].id, last_timestamp=log[-1].timestamp)

    async def _persist(self, message: Message) -> None:
        log = self._logs.setdefault(message.room_id, [])
        if len(log) + 1 != message.id:
            raise SequenceConflictError(message.room_id, message.id)
        log.append(message)

    async def read_since(
        self, room_id: str, after_id: int = 0, limit: int | None = None
    ) -> list[Message]:
        log = self._logs.get(room_id, [])
        # id == index + 1
        start = max(after_id, 0)
        end = None if limit is None else start + max(limit, 0)
        return log[start:end]

    async def message_count(self, room_id: str) -> int:
        return len(self._logs.get(room_id, []))
