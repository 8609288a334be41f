import asyncio
import logging

from fastapi import APIRouter, Depends, Path, Query
from orjson import orjson
from starlette.websockets import WebSocket, WebSocketDisconnect

from chat_sync.application.chat_service import ChatService
from chat_sync.application.connection import ClientConnection
from chat_sync.application.exceptions import (
    ServiceUnavailableError,
    StorageError,
    SubscriptionError,
    SubscriptionLagError,
    ValidationError,
)
from chat_sync.application.models import ErrorResponse, HistoryEvent, MessageEvent
from chat_sync.application.room_channel import Subscription, SubscriptionState
from chat_sync.common.websocket_close_code import WebSocketCloseCode

logger = logging.getLogger(__name__)

router = APIRouter()


def get_chat_service(websocket: WebSocket) -> ChatService:
    return websocket.app.state.chat_service


async def receive_frame(websocket: WebSocket) -> bytes:
    """text/binary 프레임 모두 bytes로 반환"""
    frame = await websocket.receive()
    if frame["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(frame.get("code", WebSocketCloseCode.NORMAL_CLOSURE))

    if frame.get("bytes") is not None:
        return frame["bytes"]
    return (frame.get("text") or "").encode("utf-8")


async def send_error_response(
    conn: ClientConnection,
    code: str,
    message: str,
    retry_after: float | None = None,
):
    error = ErrorResponse(code=code, message=message, retry_after=retry_after)
    if not await conn.send_event(error):
        logger.warning(f"Failed to send error {code}", extra=conn.log_extra)


async def forward_live(conn: ClientConnection, live: Subscription, resume_id: int):
    """라이브 피드를 클라이언트로 전달. 하나라도 못 보내면 resume id와 함께 종료"""
    last_sent_id = resume_id
    try:
        async for message in live:
            if not await conn.send_event(MessageEvent(message=message)):
                await conn.close(
                    code=WebSocketCloseCode.TRY_AGAIN_LATER,
                    reason=f"Delivery failed; resume with after_id={last_sent_id}",
                )
                return
            last_sent_id = message.id

    except SubscriptionLagError as e:
        logger.warning(
            f"Subscriber lagged in room {conn.room_id}",
            extra={**conn.log_extra, "last_delivered_id": e.last_delivered_id},
        )
        await conn.close(
            code=WebSocketCloseCode.TRY_AGAIN_LATER,
            reason=f"Subscriber lagged; resume with after_id={last_sent_id}",
        )
        return

    if live.state is SubscriptionState.CLOSED:
        await conn.close(
            code=WebSocketCloseCode.SERVICE_RESTART,
            reason=f"Service restarting; resume with after_id={last_sent_id}",
        )


@router.websocket("/ws/{room_id}")
async def room_feed_endpoint(
    websocket: WebSocket,
    room_id: str = Path(..., min_length=1),
    username: str = Query(..., min_length=1),
    after_id: int | None = Query(None, ge=0),
    chat_service: ChatService = Depends(get_chat_service),
):
    if websocket.app.state.is_draining:
        await websocket.close(code=WebSocketCloseCode.SERVICE_RESTART)
        return

    if not username.strip():
        await websocket.close(
            code=WebSocketCloseCode.POLICY_VIOLATION, reason="Username cannot be empty"
        )
        return

    settings = websocket.app.state.settings
    room_directory = websocket.app.state.room_directory
    if settings.REQUIRE_KNOWN_ROOMS and room_id not in room_directory:
        await websocket.close(
            code=WebSocketCloseCode.POLICY_VIOLATION, reason=f"Unknown room {room_id}"
        )
        return

    try:
        await websocket.accept()
    except Exception as e:
        logger.error(f"WebSocket accept failed: {e}")
        return

    conn = ClientConnection(
        websocket,
        room_id,
        username,
        max_consecutive_failures=settings.CONNECTION_MAX_CONSECUTIVE_FAILURES,
        send_timeout=settings.CONNECTION_SEND_TIMEOUT,
        rate_limit_per_sec=settings.CONNECTION_RATE_LIMIT_PER_SEC,
    )

    live = None
    forward_task = None
    websocket_close_code = WebSocketCloseCode.NORMAL_CLOSURE

    try:
        try:
            history, live = await chat_service.subscribe(room_id, after_id=after_id)
        except ValidationError as e:
            websocket_close_code = WebSocketCloseCode.POLICY_VIOLATION
            await conn.close(code=websocket_close_code, reason=e.message)
            return
        except SubscriptionError as e:
            websocket_close_code = WebSocketCloseCode.TRY_AGAIN_LATER
            await conn.close(code=websocket_close_code, reason=e.message)
            return
        except StorageError as e:
            logger.error(f"History read failed: {e}", extra=conn.log_extra)
            websocket_close_code = WebSocketCloseCode.INTERNAL_ERROR
            await conn.close(code=websocket_close_code, reason=e.message)
            return

        # 히스토리를 못 보냈으면 라이브 피드를 시작하지 않음
        if not await conn.send_event(HistoryEvent(messages=history)):
            chat_service.unsubscribe(live)
            websocket_close_code = WebSocketCloseCode.TRY_AGAIN_LATER
            await conn.close(
                code=websocket_close_code,
                reason=f"History delivery failed; resume with after_id={after_id or 0}",
            )
            return

        resume_id = history[-1].id if history else (after_id or 0)
        forward_task = asyncio.create_task(forward_live(conn, live, resume_id))

        while True:
            data = await receive_frame(websocket)

            if conn.is_rate_limited():
                await send_error_response(
                    conn, "rate_limited", "Too many messages", retry_after=1.0
                )
                continue

            if len(data) > settings.MAX_MESSAGE_SIZE:
                await send_error_response(
                    conn, "message_too_large", "Message too large"
                )
                continue

            try:
                payload = orjson.loads(data)
            except orjson.JSONDecodeError:
                logger.warning(f"Invalid JSON from {username}", extra=conn.log_extra)
                await send_error_response(conn, "invalid_json", "Invalid JSON")
                continue

            text = payload.get("text") if isinstance(payload, dict) else None
            if not isinstance(text, str):
                await send_error_response(
                    conn, ValidationError.error_code, "Missing 'text'"
                )
                continue

            # 보낸 메시지는 라이브 피드로 돌아옴
            try:
                await chat_service.send(room_id, username, text)

            except ValidationError as e:
                await send_error_response(conn, e.error_code, e.message)

            except ServiceUnavailableError as e:
                await send_error_response(
                    conn, e.error_code, e.message, retry_after=e.retry_after
                )
                websocket_close_code = WebSocketCloseCode.SERVICE_RESTART
                break

            except StorageError as e:
                await send_error_response(
                    conn, e.error_code, e.message, retry_after=e.retry_after
                )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {username}", extra=conn.log_extra)
        websocket_close_code = WebSocketCloseCode.NORMAL_CLOSURE

    except Exception as e:
        logger.error(f"WebSocket layer error: {e}", extra=conn.log_extra, exc_info=True)
        websocket_close_code = WebSocketCloseCode.INTERNAL_ERROR

    finally:
        if live is not None:
            chat_service.unsubscribe(live)
        if forward_task is not None:
            forward_task.cancel()
            await asyncio.gather(forward_task, return_exceptions=True)

        await conn.close(code=websocket_close_code)
        logger.info(
            f"Connection cleaned up: {username}",
            extra={
                **conn.log_extra,
                "close_code": websocket_close_code,
                "should_reconnect": WebSocketCloseCode.should_reconnect(
                    websocket_close_code
                ),
            },
        )
