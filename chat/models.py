from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from bookshare.models import utcnow

# Mongo hands back ObjectId instances; the API speaks strings.
PyObjectId = Annotated[str, BeforeValidator(str)]


class ChatMessageModel(BaseModel):
    id: Optional[PyObjectId] = Field(default=None, validation_alias="_id")
    room_id: str
    sender_id: int
    receiver_id: int
    content: str
    read: bool = False
    related_book_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)
