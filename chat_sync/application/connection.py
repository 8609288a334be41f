import asyncio
import logging
import time
from collections import deque

from orjson import orjson
from pydantic import BaseModel
from starlette.websockets import WebSocket, WebSocketDisconnect

from chat_sync.common.websocket_close_code import WebSocketCloseCode

logger = logging.getLogger(__name__)


class ClientConnection:
    """룸 피드를 받는 WebSocket 클라이언트 하나"""

    def __init__(
        self,
        websocket: WebSocket,
        room_id: str,
        username: str,
        max_consecutive_failures: int = 3,
        send_timeout: float = 0.5,
        rate_limit_per_sec: int = 5,
    ):
        self.websocket = websocket
        self.room_id = room_id
        self.username = username

        self.max_consecutive_failures = max_consecutive_failures
        self.send_timeout = send_timeout
        self.consecutive_failures = 0

        self._close_lock = asyncio.Lock()
        self._is_closed = False

        # 클라이언트 -> 서버 메시지 제한
        self.rate_limit_per_sec = rate_limit_per_sec
        self._received_times: deque[float] = deque(maxlen=rate_limit_per_sec + 1)

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    @property
    def log_extra(self) -> dict:
        return {"room_id": self.room_id, "username": self.username}

    async def send_event(self, event: BaseModel) -> bool:
        """이벤트 모델을 JSON bytes로 전송. 실패하면 False"""
        payload = orjson.dumps(event.model_dump(mode="json", by_alias=True))
        return await self.send(payload)

    async def send(self, payload: bytes) -> bool:
        if self._is_closed:
            return False

        try:
            await asyncio.wait_for(
                self.websocket.send_bytes(payload), timeout=self.send_timeout
            )
            self.consecutive_failures = 0
            return True

        except asyncio.TimeoutError:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.max_consecutive_failures:
                await self.close(
                    code=WebSocketCloseCode.TRY_AGAIN_LATER,
                    reason=f"Too slow ({self.consecutive_failures} timeouts)",
                )
            return False

        except WebSocketDisconnect:
            logger.info(f"Client {self.username} disconnected during send")
            self._is_closed = True
            return False

        except Exception as e:
            logger.warning(
                f"Send failed for {self.username} in {self.room_id}: {e}",
                extra=self.log_extra,
            )
            self.consecutive_failures += 1
            return False

    async def close(
        self,
        code: int = WebSocketCloseCode.NORMAL_CLOSURE,
        reason: str | None = None,
    ):
        async with self._close_lock:
            if self._is_closed:
                return

            reason = reason or WebSocketCloseCode.get_reason(code)
            try:
                await self.websocket.close(code=code, reason=reason)
            except Exception as e:
                # 이미 끊긴 소켓
                logger.debug(
                    f"WebSocket close error: {e}",
                    extra={**self.log_extra, "code": code, "reason": reason},
                )

            self._is_closed = True

    def is_rate_limited(self) -> bool:
        """최근 1초 동안 받은 메시지가 제한 이상이면 True"""
        now = time.monotonic()

        while self._received_times and self._received_times[0] <= now - 1.0:
            self._received_times.popleft()

        if len(self._received_times) >= self.rate_limit_per_sec:
            return True

        self._received_times.append(now)
        return False
