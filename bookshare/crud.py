import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from bookshare import models, schemas
from bookshare.exceptions import (
    BookNotFoundError,
    BookRequestNotFoundError,
    DatabaseError,
    ForbiddenError,
    InvalidStateError,
    NotificationNotFoundError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)


# Users
def get_user_by_id(db: Session, user_id: int):
    try:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if user is None:
            raise UserNotFoundError(user_id)
        return user
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_user_by_external_id(db: Session, external_id: str):
    try:
        return (
            db.query(models.User)
            .filter(models.User.external_id == external_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def upsert_user_from_identity(db: Session, payload: schemas.IdentityWebhookPayload):
    """Create or refresh the user linked to an identity-provider account.

    Returns ``(user, created)``.
    """
    try:
        user = get_user_by_external_id(db, payload.id)
        created = user is None
        if created:
            user = models.User(external_id=payload.id)
            db.add(user)
        user.email = payload.email_addresses[0].email_address
        user.first_name = payload.first_name
        user.last_name = payload.last_name
        user.profile_image = payload.image_url
        db.commit()
        db.refresh(user)
        logger.info(
            f"{'Created' if created else 'Updated'} user {user.id} "
            f"for identity {payload.id}"
        )
        return user, created
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("upsert user", str(e))


def update_user_profile(
    db: Session, user_id: int, acting_user: models.User, update: schemas.UserUpdate
):
    user = get_user_by_id(db, user_id)
    if user.id != acting_user.id:
        raise ForbiddenError("You can only update your own profile")
    try:
        for field, value in update.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(user, field, value)
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update user", str(e))


# Books
def filter_books(db: Session, params: schemas.BookFilterParams) -> List[models.Book]:
    try:
        query = db.query(models.Book).options(
            selectinload(models.Book.genre_entries),
            selectinload(models.Book.owner),
            selectinload(models.Book.current_borrower),
        )
        if params.genres:
            query = query.filter(
                models.Book.genre_entries.any(models.BookGenre.name.in_(params.genres))
            )
        if params.location:
            query = query.filter(models.Book.location == params.location)
        if params.language:
            query = query.filter(models.Book.language == params.language)
        if params.status is not None:
            query = query.filter(models.Book.status == params.status)
        if params.owner is not None:
            query = query.filter(models.Book.owner_id == params.owner)
        if params.current_borrower is not None:
            query = query.filter(
                models.Book.current_borrower_id == params.current_borrower
            )
        if params.search:
            query = query.filter(
                or_(
                    models.Book.title.ilike(f"%{params.search}%"),
                    models.Book.author.ilike(f"%{params.search}%"),
                )
            )
        query = query.order_by(models.Book.created_at.desc(), models.Book.id.desc())
        if params.limit:
            query = query.limit(params.limit)
        return query.all()
    except SQLAlchemyError as e:
        raise DatabaseError("filter", str(e))


def get_book(db: Session, book_id: int):
    try:
        book = db.query(models.Book).filter(models.Book.id == book_id).first()
        if book is None:
            raise BookNotFoundError(book_id)
        return book
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_owned_book(db: Session, book_id: int, acting_user: models.User, action: str):
    book = get_book(db, book_id)
    if book.owner_id != acting_user.id:
        raise ForbiddenError(f"You can only {action} books you own")
    return book


def create_book(db: Session, owner: models.User, item: schemas.BookCreate):
    try:
        db_item = models.Book(owner_id=owner.id, **item.model_dump())
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        logger.info(f"User {owner.id} listed book {db_item.id}: {db_item.title}")
        return db_item
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def update_book(
    db: Session,
    book_id: int,
    acting_user: models.User,
    book_update: schemas.BookUpdate,
    new_images: Optional[List[str]] = None,
):
    book = get_owned_book(db, book_id, acting_user, "update")
    try:
        for field, value in book_update.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(book, field, value)
        if new_images:
            book.images = [*(book.images or []), *new_images]
        db.commit()
        db.refresh(book)
        return book
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def delete_book(db: Session, book_id: int, acting_user: models.User):
    book = get_owned_book(db, book_id, acting_user, "delete")
    if book.status == models.BookStatus.BORROWED:
        raise InvalidStateError("Cannot delete a book that is currently borrowed")
    if book.status == models.BookStatus.RESERVED:
        raise InvalidStateError("Cannot delete a book that is currently reserved")
    try:
        db.delete(book)
        db.commit()
        logger.info(f"Deleted book {book_id}")
        return True
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


# Book requests
def get_book_request(db: Session, request_id: int):
    try:
        book_request = (
            db.query(models.BookRequest)
            .filter(models.BookRequest.id == request_id)
            .first()
        )
        if book_request is None:
            raise BookRequestNotFoundError(request_id)
        return book_request
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def _book_requests_query(db: Session):
    return db.query(models.BookRequest).options(
        selectinload(models.BookRequest.book).selectinload(models.Book.genre_entries),
        selectinload(models.BookRequest.requester),
        selectinload(models.BookRequest.owner),
        selectinload(models.BookRequest.exchange_book),
    )


def get_owner_book_requests(db: Session, owner_id: int):
    try:
        return (
            _book_requests_query(db)
            .filter(models.BookRequest.owner_id == owner_id)
            .order_by(models.BookRequest.created_at.desc(), models.BookRequest.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_requester_book_requests(db: Session, requester_id: int):
    try:
        return (
            _book_requests_query(db)
            .filter(models.BookRequest.requester_id == requester_id)
            .order_by(models.BookRequest.created_at.desc(), models.BookRequest.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_user_book_requests(db: Session, user_id: int, role: Optional[str] = None):
    if role == "owner":
        return get_owner_book_requests(db, user_id)
    if role == "requester":
        return get_requester_book_requests(db, user_id)
    try:
        return (
            _book_requests_query(db)
            .filter(
                or_(
                    models.BookRequest.owner_id == user_id,
                    models.BookRequest.requester_id == user_id,
                )
            )
            .order_by(models.BookRequest.created_at.desc(), models.BookRequest.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


# Notifications
def get_user_notifications(
    db: Session, user_id: int, limit: int = 20, unread_only: bool = False
):
    try:
        query = db.query(models.Notification).filter(
            models.Notification.user_id == user_id
        )
        if unread_only:
            query = query.filter(models.Notification.read.is_(False))
        return (
            query.order_by(
                models.Notification.created_at.desc(), models.Notification.id.desc()
            )
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def mark_notification_read(db: Session, notification_id: int, user: models.User):
    try:
        notification = (
            db.query(models.Notification)
            .filter(models.Notification.id == notification_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))
    if notification is None:
        raise NotificationNotFoundError(notification_id)
    if notification.user_id != user.id:
        raise ForbiddenError(
            "You are not authorized to mark this notification as read"
        )
    try:
        notification.read = True
        db.commit()
        db.refresh(notification)
        return notification
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def mark_all_notifications_read(db: Session, user: models.User) -> int:
    try:
        updated = (
            db.query(models.Notification)
            .filter(
                models.Notification.user_id == user.id,
                models.Notification.read.is_(False),
            )
            .update({models.Notification.read: True}, synchronize_session=False)
        )
        db.commit()
        return updated
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))
