from typing import Optional

from pydantic import BaseModel, Field

from chat.models import ChatMessageModel


class MessageCreate(BaseModel):
    sender_id: int
    receiver_id: int
    content: str = Field(min_length=1)
    room_id: str = Field(min_length=1)
    related_book_id: Optional[int] = None


class ChatRoomSummary(BaseModel):
    room_id: str
    latest_message: ChatMessageModel
    other_user_id: int
    related_book_id: Optional[int] = None
    unread_count: int = 0
