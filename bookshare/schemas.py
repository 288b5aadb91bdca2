from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookshare.models import (
    BookCondition,
    BookStatus,
    NotificationType,
    RequestStatus,
    RequestType,
)

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


# Users
class UserSummary(BaseModel):
    id: int
    first_name: str
    last_name: str
    profile_image: str = ""

    model_config = ConfigDict(from_attributes=True)


class UserContact(UserSummary):
    email: str
    phone_number: str = ""


class EmailAddress(BaseModel):
    email_address: str


class IdentityWebhookPayload(BaseModel):
    """User payload pushed by the identity provider on sign-up or profile change."""

    id: str
    email_addresses: List[EmailAddress] = Field(min_length=1)
    first_name: str = ""
    last_name: str = ""
    image_url: str = ""


class UserUpdate(BaseModel):
    bio: Optional[str] = None
    location: Optional[str] = None
    interests: Optional[List[str]] = None
    phone_number: Optional[str] = None


class UserSchema(UserContact):
    external_id: str
    bio: str = ""
    location: str = ""
    interests: List[str] = []
    ratings: float
    reviews_count: int
    created_at: Optional[datetime] = None


# Books
class BorrowRecordSchema(BaseModel):
    id: int
    borrower_id: int
    borrower: Optional[UserSummary] = None
    borrow_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    rating: Optional[int] = None
    review: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BookSchema(BaseModel):
    id: int
    title: str
    author: str
    description: str
    genre: List[str]
    language: str
    condition: BookCondition
    images: List[str] = []
    location: str
    is_exchangeable: bool
    is_donation: bool
    borrow_duration: int
    status: BookStatus
    owner_id: int
    owner: Optional[UserSummary] = None
    current_borrower_id: Optional[int] = None
    current_borrower: Optional[UserSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookDetailSchema(BookSchema):
    borrow_history: List[BorrowRecordSchema] = []


class BookFilterParams(BaseModel):
    genre: Optional[str] = None
    location: Optional[str] = None
    language: Optional[str] = None
    status: Optional[BookStatus] = None
    owner: Optional[int] = None
    current_borrower: Optional[int] = None
    search: Optional[str] = Field(None, min_length=1, max_length=100)
    limit: Optional[int] = Field(None, ge=1)

    @property
    def genres(self) -> List[str]:
        return split_genres(self.genre)


class BookCreate(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    description: str
    genre: List[str] = Field(min_length=1)
    language: str
    condition: BookCondition
    location: str
    is_exchangeable: bool = False
    is_donation: bool = False
    borrow_duration: int = Field(14, gt=0)
    images: List[str] = []


class BookUpdate(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[List[str]] = None
    language: Optional[str] = None
    condition: Optional[BookCondition] = None
    location: Optional[str] = None
    is_exchangeable: Optional[bool] = None
    is_donation: Optional[bool] = None
    borrow_duration: Optional[int] = Field(None, gt=0)


class ReviewCreate(BaseModel):
    borrower_id: int
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None


class ReturnBookSchema(BaseModel):
    borrower_id: int


class UserProfileSchema(UserSchema):
    books_shared: List[BookSchema] = []
    books_borrowed: List[BookSchema] = []


# Book requests
class BookRequestCreate(BaseModel):
    book_id: int
    request_type: Optional[RequestType] = None
    request_message: str = ""
    request_duration: Optional[int] = Field(None, gt=0)
    exchange_book_id: Optional[int] = None


class BookRequestForBook(BaseModel):
    request_type: Optional[RequestType] = None
    request_message: str = ""
    request_duration: Optional[int] = Field(None, gt=0)
    exchange_book_id: Optional[int] = None


class BookRequestStatusUpdate(BaseModel):
    status: RequestStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalise_status(cls, value):
        return RequestStatus.parse(value)


class BookRequestSchema(BaseModel):
    id: int
    book_id: int
    book: Optional[BookSchema] = None
    requester_id: int
    requester: Optional[UserContact] = None
    owner_id: int
    owner: Optional[UserContact] = None
    request_type: RequestType
    request_message: str = ""
    request_duration: int
    exchange_book_id: Optional[int] = None
    exchange_book: Optional[BookSchema] = None
    status: RequestStatus
    response_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Notifications
class NotificationSchema(BaseModel):
    id: int
    user_id: int
    type: NotificationType
    message: str
    read: bool
    related_book_id: Optional[int] = None
    related_request_id: Optional[int] = None
    link: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


def split_genres(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]
