import logging
from typing import Iterable, List

from pymongo.errors import PyMongoError

from bookshare.exceptions import DatabaseError
from chat.models import ChatMessageModel
from chat.schemas import ChatRoomSummary, MessageCreate

logger = logging.getLogger(__name__)


async def create_message(db, message: MessageCreate) -> ChatMessageModel:
    document = ChatMessageModel(**message.model_dump()).model_dump(exclude={"id"})
    try:
        result = await db.messages.insert_one(document)
    except PyMongoError as e:
        raise DatabaseError("create message", str(e))
    document["_id"] = result.inserted_id
    logger.info(f"Message {result.inserted_id} stored in room {message.room_id}")
    return ChatMessageModel(**document)


async def get_room_messages(db, room_id: str) -> List[ChatMessageModel]:
    try:
        cursor = db.messages.find({"room_id": room_id}).sort("created_at", 1)
        return [ChatMessageModel(**message) async for message in cursor]
    except PyMongoError as e:
        raise DatabaseError("fetch messages", str(e))


async def mark_messages_as_read(db, room_id: str, user_id: int) -> int:
    try:
        result = await db.messages.update_many(
            {"room_id": room_id, "receiver_id": user_id, "read": False},
            {"$set": {"read": True}},
        )
    except PyMongoError as e:
        raise DatabaseError("mark messages read", str(e))
    return result.modified_count


def summarize_rooms(
    messages: Iterable[ChatMessageModel], user_id: int
) -> List[ChatRoomSummary]:
    """Collapse a user's messages, newest first, into one summary per room."""
    rooms = {}
    for message in messages:
        unread = int(message.receiver_id == user_id and not message.read)
        room = rooms.get(message.room_id)
        if room is None:
            rooms[message.room_id] = ChatRoomSummary(
                room_id=message.room_id,
                latest_message=message,
                other_user_id=(
                    message.receiver_id
                    if message.sender_id == user_id
                    else message.sender_id
                ),
                related_book_id=message.related_book_id,
                unread_count=unread,
            )
        else:
            room.unread_count += unread
    return sorted(
        rooms.values(),
        key=lambda room: room.latest_message.created_at,
        reverse=True,
    )


async def get_user_chat_rooms(db, user_id: int) -> List[ChatRoomSummary]:
    try:
        cursor = db.messages.find(
            {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}
        ).sort("created_at", -1)
        messages = [ChatMessageModel(**message) async for message in cursor]
    except PyMongoError as e:
        raise DatabaseError("fetch chat rooms", str(e))
    return summarize_rooms(messages, user_id)
