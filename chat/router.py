import logging
from typing import List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from bookshare import crud as bookshare_crud
from bookshare.exceptions import UserNotFoundError
from bookshare.schemas import ApiResponse
from bookshare.storage import get_db
from chat import crud, storage
from chat.models import ChatMessageModel
from chat.rooms import manager
from chat.schemas import ChatRoomSummary, MessageCreate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

MESSAGES_PREFIX = "/api/messages"


def get_chat_db():
    return storage.get_database()


def _require_user(db: Session, user_id: int, role: str):
    try:
        return bookshare_crud.get_user_by_id(db, user_id)
    except UserNotFoundError:
        raise UserNotFoundError(user_id, message=f"{role} not found")


@router.post(
    MESSAGES_PREFIX,
    response_model=ApiResponse[ChatMessageModel],
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    message: MessageCreate,
    db: Session = Depends(get_db),
    chat_db=Depends(get_chat_db),
):
    _require_user(db, message.sender_id, "Sender")
    _require_user(db, message.receiver_id, "Receiver")
    created = await crud.create_message(chat_db, message)
    return {"success": True, "data": created, "message": "Message sent"}


@router.get(
    f"{MESSAGES_PREFIX}/room/{{room_id}}",
    response_model=ApiResponse[List[ChatMessageModel]],
)
async def room_messages(room_id: str, chat_db=Depends(get_chat_db)):
    messages = await crud.get_room_messages(chat_db, room_id)
    return {"success": True, "data": messages}


@router.put(
    f"{MESSAGES_PREFIX}/room/{{room_id}}/user/{{user_id}}/read",
    response_model=ApiResponse[None],
)
async def mark_room_read(room_id: str, user_id: int, chat_db=Depends(get_chat_db)):
    await crud.mark_messages_as_read(chat_db, room_id, user_id)
    return {"success": True, "message": "Messages marked as read"}


@router.get(
    f"{MESSAGES_PREFIX}/user/{{user_id}}/rooms",
    response_model=ApiResponse[List[ChatRoomSummary]],
)
async def user_chat_rooms(user_id: int, chat_db=Depends(get_chat_db)):
    rooms = await crud.get_user_chat_rooms(chat_db, user_id)
    return {"success": True, "data": rooms}


@router.websocket("/ws/chat/{room_id}")
async def chat_room(websocket: WebSocket, room_id: str):
    await manager.join(room_id, websocket)
    try:
        while True:
            payload = await websocket.receive_json()
            await manager.broadcast(room_id, payload, sender=websocket)
    except WebSocketDisconnect:
        logger.info(f"Listener disconnected from room {room_id}")
    finally:
        manager.leave(room_id, websocket)
