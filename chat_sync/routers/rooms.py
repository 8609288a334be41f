import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from starlette import status
from starlette.requests import Request

from chat_sync.application.chat_service import ChatService
from chat_sync.application.exceptions import (
    RoomNotFoundError,
    StorageError,
    ValidationError,
)
from chat_sync.application.models import HistoryPage, RoomsResponse, SendMessageRequest
from chat_sync.application.room_directory import RoomDirectory
from chat_sync.domain.message import Message

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


async def get_room_directory(request: Request) -> RoomDirectory:
    return request.app.state.room_directory


async def known_room(
    request: Request,
    room_id: str = Path(..., min_length=1),
) -> str:
    """REQUIRE_KNOWN_ROOMS 일 때 등록되지 않은 방은 404"""
    if request.app.state.settings.REQUIRE_KNOWN_ROOMS:
        try:
            request.app.state.room_directory.require(room_id)
        except RoomNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return room_id


@router.get("/rooms", response_model=RoomsResponse)
async def list_rooms(room_directory: RoomDirectory = Depends(get_room_directory)):
    return RoomsResponse(rooms=room_directory.list_rooms())


@router.get("/rooms/{room_id}/messages", response_model=HistoryPage)
async def get_messages(
    chat_service: ChatService = Depends(get_chat_service),
    room_id: str = Depends(known_room),
    after_id: int = Query(0, ge=0),
    limit: int = Query(50, gt=0, le=100),
):
    try:
        return await chat_service.history(room_id, after_id=after_id, limit=limit)

    except StorageError as e:
        logger.error(f"Failed to fetch messages: {e}", extra={"room_id": room_id})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message
        )


@router.post(
    "/rooms/{room_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    body: SendMessageRequest,
    chat_service: ChatService = Depends(get_chat_service),
    room_id: str = Depends(known_room),
):
    try:
        return await chat_service.send(room_id, body.username, body.text)

    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    except StorageError as e:
        logger.error(
            f"Failed to send message: {e}",
            extra={"room_id": room_id, "username": body.username},
        )
        headers = None
        if e.retry_after:
            headers = {"Retry-After": str(math.ceil(e.retry_after))}
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
            headers=headers,
        )
