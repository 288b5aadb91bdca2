import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class BookStatus(str, enum.Enum):
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    BORROWED = "Borrowed"


class BookCondition(str, enum.Enum):
    NEW = "New"
    LIKE_NEW = "Like New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


class RequestType(str, enum.Enum):
    BORROW = "Borrow"
    EXCHANGE = "Exchange"
    DONATION = "Donation"


class RequestStatus(str, enum.Enum):
    """Lifecycle of a book request.

    Only the canonical spellings are stored. Clients may still send
    ``Approved`` or ``Cancelled``; :meth:`parse` maps them onto
    ``Accepted`` and ``Canceled``.
    """

    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    CANCELED = "Canceled"
    COMPLETED = "Completed"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = REQUEST_STATUS_ALIASES.get(key, key)
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown request status: {value}")

    @property
    def is_active(self):
        return self in (RequestStatus.PENDING, RequestStatus.ACCEPTED)


REQUEST_STATUS_ALIASES = {
    "approved": "accepted",
    "cancelled": "canceled",
}


class NotificationType(str, enum.Enum):
    BOOK_REQUEST = "book_request"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_CANCELED = "request_canceled"
    BOOK_RETURNED = "book_returned"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    profile_image = Column(String, default="")
    bio = Column(Text, default="")
    location = Column(String, default="")
    interests = Column(JSON, default=list)
    phone_number = Column(String, default="")
    rating_sum = Column(Float, default=0.0, nullable=False)
    reviews_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def ratings(self):
        if not self.reviews_count:
            return 0.0
        return self.rating_sum / self.reviews_count


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    language = Column(String, nullable=False)
    condition = Column(
        Enum(BookCondition, values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    images = Column(JSON, default=list)
    location = Column(String, nullable=False)
    is_exchangeable = Column(Boolean, default=False)
    is_donation = Column(Boolean, default=False)
    borrow_duration = Column(Integer, default=14)
    status = Column(
        Enum(BookStatus, values_callable=_enum_values, native_enum=False),
        default=BookStatus.AVAILABLE,
        nullable=False,
        index=True,
    )
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    current_borrower_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner = relationship("User", foreign_keys=[owner_id])
    current_borrower = relationship("User", foreign_keys=[current_borrower_id])
    genre_entries = relationship(
        "BookGenre", cascade="all, delete-orphan", order_by="BookGenre.id"
    )
    borrow_history = relationship(
        "BorrowRecord",
        back_populates="book",
        cascade="all, delete-orphan",
        order_by="BorrowRecord.id",
    )
    requests = relationship(
        "BookRequest",
        back_populates="book",
        foreign_keys="BookRequest.book_id",
        cascade="all, delete-orphan",
    )

    @property
    def genre(self):
        return [entry.name for entry in self.genre_entries]

    @genre.setter
    def genre(self, names):
        self.genre_entries = [BookGenre(name=name) for name in dict.fromkeys(names)]


class BookGenre(Base):
    __tablename__ = "book_genres"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    name = Column(String, nullable=False, index=True)


class BorrowRecord(Base):
    __tablename__ = "borrow_history"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrower_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    borrow_date = Column(DateTime(timezone=True), default=utcnow)
    return_date = Column(DateTime(timezone=True), nullable=True)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)

    book = relationship("Book", back_populates="borrow_history")
    borrower = relationship("User")


class BookRequest(Base):
    __tablename__ = "book_requests"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    exchange_book_id = Column(
        Integer, ForeignKey("books.id", ondelete="SET NULL"), nullable=True
    )
    status = Column(
        Enum(RequestStatus, values_callable=_enum_values, native_enum=False),
        default=RequestStatus.PENDING,
        nullable=False,
        index=True,
    )
    request_type = Column(
        Enum(RequestType, values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    request_message = Column(Text, default="")
    request_duration = Column(Integer, default=14)
    response_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    book = relationship("Book", back_populates="requests", foreign_keys=[book_id])
    exchange_book = relationship("Book", foreign_keys=[exchange_book_id])
    requester = relationship("User", foreign_keys=[requester_id])
    owner = relationship("User", foreign_keys=[owner_id])


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(
        Enum(NotificationType, values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    related_book_id = Column(
        Integer, ForeignKey("books.id", ondelete="SET NULL"), nullable=True
    )
    related_request_id = Column(
        Integer, ForeignKey("book_requests.id", ondelete="SET NULL"), nullable=True
    )
    link = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User")


User.books_shared = relationship(
    "Book", foreign_keys=[Book.owner_id], viewonly=True, order_by=Book.id
)
User.books_borrowed = relationship(
    "Book", foreign_keys=[Book.current_borrower_id], viewonly=True, order_by=Book.id
)
