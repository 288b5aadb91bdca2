"""Book request lifecycle and the book status transitions it drives.

Every public function here is one unit of work: it validates, mutates the
request, the book, the borrow history, the owner's rating aggregate and the
notification rows, then commits once. A failed commit rolls everything back.

Transitions start by locking the book row, so two requests for the same book
are never approved, rejected or created side by side.

    Pending  -> Accepted | Rejected | Canceled
    Accepted -> Completed
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookshare import crud, models
from bookshare.exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    DatabaseError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    UserNotFoundError,
)
from bookshare.models import BookStatus, NotificationType, RequestStatus, RequestType
from bookshare.notifications import Notifier

logger = logging.getLogger(__name__)

# Borrow date assumed for a return that has no open history entry.
UNTRACKED_BORROW_AGE = timedelta(days=7)

# Days requested when the borrower leaves the duration blank.
DEFAULT_REQUEST_DURATION = 14


def _lock_book(db: Session, book_id: int) -> models.Book:
    try:
        book = (
            db.query(models.Book)
            .filter(models.Book.id == book_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("lock", str(e))
    if book is None:
        raise BookNotFoundError(book_id)
    return book


def _load_for_transition(db: Session, request_id: int):
    book_request = crud.get_book_request(db, request_id)
    book = _lock_book(db, book_request.book_id)
    db.refresh(book_request)
    return book_request, book


def _commit(db: Session, operation: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError(operation, str(e))


def _ensure_status(book_request, expected: RequestStatus, prefix: str):
    if book_request.status != expected:
        raise InvalidStateError(f"{prefix} {book_request.status.value.lower()}")


def _has_other_request(db: Session, book_id: int, statuses, exclude_id=None) -> bool:
    query = db.query(models.BookRequest.id).filter(
        models.BookRequest.book_id == book_id,
        models.BookRequest.status.in_(statuses),
    )
    if exclude_id is not None:
        query = query.filter(models.BookRequest.id != exclude_id)
    return query.first() is not None


def _release_reservation(db: Session, book: models.Book, book_request):
    """Make a reserved book available again unless another request still waits."""
    if book.status != BookStatus.RESERVED:
        return
    if not _has_other_request(
        db, book.id, [RequestStatus.PENDING], exclude_id=book_request.id
    ):
        book.status = BookStatus.AVAILABLE


def _open_borrow_record(book: models.Book, borrower_id: int):
    for record in reversed(book.borrow_history):
        if record.borrower_id == borrower_id and record.return_date is None:
            return record
    return None


def _finish_borrow(book: models.Book, borrower_id: int, now):
    record = _open_borrow_record(book, borrower_id)
    if record is None and book.borrow_history:
        last = book.borrow_history[-1]
        if last.return_date is None:
            record = last
    if record is not None:
        record.return_date = now
    book.status = BookStatus.AVAILABLE
    book.current_borrower = None
    return record


# Transition bodies, shared by the dedicated endpoints and the status update.
def _accept(db, book_request, book, notifier: Notifier):
    if book.status == BookStatus.BORROWED:
        raise BookNotAvailableError(book.id, "Book is already borrowed")
    now = models.utcnow()
    book_request.status = RequestStatus.ACCEPTED
    book_request.response_date = now
    book.status = BookStatus.BORROWED
    book.current_borrower = book_request.requester
    book.borrow_history.append(
        models.BorrowRecord(borrower_id=book_request.requester_id, borrow_date=now)
    )
    notifier.notify(
        NotificationType.REQUEST_APPROVED,
        recipient=book_request.requester,
        actor=book_request.owner,
        book=book,
        book_request=book_request,
    )


def _reject(db, book_request, book, notifier: Notifier):
    book_request.status = RequestStatus.REJECTED
    book_request.response_date = models.utcnow()
    _release_reservation(db, book, book_request)
    notifier.notify(
        NotificationType.REQUEST_REJECTED,
        recipient=book_request.requester,
        actor=book_request.owner,
        book=book,
        book_request=book_request,
    )


def _cancel(db, book_request, book, notifier: Notifier):
    book_request.status = RequestStatus.CANCELED
    book_request.response_date = models.utcnow()
    _release_reservation(db, book, book_request)
    notifier.notify(
        NotificationType.REQUEST_CANCELED,
        recipient=book_request.owner,
        actor=book_request.requester,
        book=book,
        book_request=book_request,
    )


def _complete(db, book_request, book, notifier: Notifier):
    now = models.utcnow()
    book_request.status = RequestStatus.COMPLETED
    book_request.response_date = now
    if (
        book.status == BookStatus.BORROWED
        and book.current_borrower_id == book_request.requester_id
    ):
        _finish_borrow(book, book_request.requester_id, now)
    notifier.notify(
        NotificationType.BOOK_RETURNED,
        recipient=book_request.owner,
        actor=book_request.requester,
        book=book,
        book_request=book_request,
    )


def create_book_request(
    db: Session,
    requester: models.User,
    book_id: int,
    request_type=None,
    request_message: str = "",
    request_duration: Optional[int] = None,
    exchange_book_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    """Ask the owner of an available book to lend, swap or donate it.

    The book is reserved until the owner answers or the requester cancels.
    Owners cannot request their own books, whatever the book's status.
    """
    notifier = notifier or Notifier(db)
    if request_type is None:
        raise InvalidInputError("Request type is required")
    try:
        request_type = RequestType(request_type)
    except ValueError:
        raise InvalidInputError(f"Invalid request type: {request_type}")

    book = _lock_book(db, book_id)
    if book.owner_id == requester.id:
        raise ForbiddenError("You cannot request your own book")
    if book.status != BookStatus.AVAILABLE:
        raise BookNotAvailableError(book.id)
    if _has_other_request(db, book.id, [s for s in RequestStatus if s.is_active]):
        raise BookNotAvailableError(book.id, "Book already has an active request")

    if exchange_book_id is not None:
        exchange_book = crud.get_book(db, exchange_book_id)
        if exchange_book.owner_id != requester.id:
            raise InvalidInputError("You can only offer your own book in exchange")

    try:
        book_request = models.BookRequest(
            book_id=book.id,
            requester_id=requester.id,
            owner_id=book.owner_id,
            request_type=request_type,
            request_message=request_message or "",
            request_duration=request_duration or DEFAULT_REQUEST_DURATION,
            exchange_book_id=exchange_book_id,
            status=RequestStatus.PENDING,
        )
        db.add(book_request)
        book.status = BookStatus.RESERVED
        db.flush()
        notifier.notify(
            NotificationType.BOOK_REQUEST,
            recipient=book.owner,
            actor=requester,
            book=book,
            book_request=book_request,
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create request", str(e))
    _commit(db, "create request")
    db.refresh(book_request)
    logger.info(
        f"User {requester.id} requested book {book_id} ({request_type.value}), "
        f"request {book_request.id}"
    )
    return book_request


def approve_book_request(
    db: Session,
    request_id: int,
    acting_user: models.User,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    notifier = notifier or Notifier(db)
    book_request, book = _load_for_transition(db, request_id)
    _ensure_status(book_request, RequestStatus.PENDING, "This request has already been")
    if book_request.owner_id != acting_user.id:
        raise ForbiddenError("You are not authorized to approve this request")
    _accept(db, book_request, book, notifier)
    _commit(db, "approve request")
    logger.info(f"Request {request_id} accepted, book {book.id} lent to {book_request.requester_id}")
    return book_request


def reject_book_request(
    db: Session,
    request_id: int,
    acting_user: models.User,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    notifier = notifier or Notifier(db)
    book_request, book = _load_for_transition(db, request_id)
    _ensure_status(book_request, RequestStatus.PENDING, "This request has already been")
    if book_request.owner_id != acting_user.id:
        raise ForbiddenError("You are not authorized to reject this request")
    _reject(db, book_request, book, notifier)
    _commit(db, "reject request")
    logger.info(f"Request {request_id} rejected, book {book.id} is {book.status.value}")
    return book_request


def cancel_book_request(
    db: Session,
    request_id: int,
    acting_user: models.User,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    notifier = notifier or Notifier(db)
    book_request, book = _load_for_transition(db, request_id)
    _ensure_status(
        book_request,
        RequestStatus.PENDING,
        "This request cannot be canceled because it has already been",
    )
    if book_request.requester_id != acting_user.id:
        raise ForbiddenError("You are not authorized to cancel this request")
    _cancel(db, book_request, book, notifier)
    _commit(db, "cancel request")
    logger.info(f"Request {request_id} canceled, book {book.id} is {book.status.value}")
    return book_request


def complete_book_request(
    db: Session,
    request_id: int,
    acting_user: models.User,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    notifier = notifier or Notifier(db)
    book_request, book = _load_for_transition(db, request_id)
    if acting_user.id not in (book_request.owner_id, book_request.requester_id):
        raise ForbiddenError("You are not authorized to complete this request")
    if book_request.status != RequestStatus.ACCEPTED:
        raise InvalidStateError(
            f"Only accepted requests can be completed "
            f"(current status: {book_request.status.value.lower()})"
        )
    _complete(db, book_request, book, notifier)
    _commit(db, "complete request")
    logger.info(f"Request {request_id} completed, book {book.id} is {book.status.value}")
    return book_request


def update_book_request_status(
    db: Session,
    request_id: int,
    acting_user: models.User,
    status,
    notifier: Optional[Notifier] = None,
) -> models.BookRequest:
    """Move a request to ``status`` through the matching guarded transition.

    ``Approved`` and ``Cancelled`` are accepted as spellings of ``Accepted``
    and ``Canceled``. Repeating a transition is rejected, not ignored.
    """
    try:
        status = RequestStatus.parse(status)
    except ValueError as e:
        raise InvalidInputError(str(e))

    if status == RequestStatus.ACCEPTED:
        return approve_book_request(db, request_id, acting_user, notifier)
    if status == RequestStatus.REJECTED:
        return reject_book_request(db, request_id, acting_user, notifier)
    if status == RequestStatus.CANCELED:
        return cancel_book_request(db, request_id, acting_user, notifier)
    if status == RequestStatus.COMPLETED:
        return complete_book_request(db, request_id, acting_user, notifier)
    raise InvalidStateError("A request cannot be moved back to pending")


def return_book(
    db: Session,
    book_id: int,
    borrower_id: int,
    notifier: Optional[Notifier] = None,
) -> models.Book:
    """Hand a borrowed book back to its owner.

    Closes the borrower's open history entry, or records a borrow of
    ``UNTRACKED_BORROW_AGE`` when none is open, and completes the accepted
    request the borrow came from.
    """
    notifier = notifier or Notifier(db)
    book = _lock_book(db, book_id)
    if book.status != BookStatus.BORROWED:
        raise InvalidStateError(
            f"Cannot return a book that is not borrowed "
            f"(current status: {book.status.value})"
        )
    if book.current_borrower_id is not None and book.current_borrower_id != borrower_id:
        raise ForbiddenError("You are not authorized to return this book")
    try:
        borrower = crud.get_user_by_id(db, borrower_id)
    except UserNotFoundError:
        raise UserNotFoundError(borrower_id, message="Borrower not found")

    now = models.utcnow()
    record = _open_borrow_record(book, borrower_id)
    if record is not None:
        record.return_date = now
    else:
        book.borrow_history.append(
            models.BorrowRecord(
                borrower_id=borrower_id,
                borrow_date=now - UNTRACKED_BORROW_AGE,
                return_date=now,
            )
        )
    book.status = BookStatus.AVAILABLE
    book.current_borrower = None

    for book_request in (
        db.query(models.BookRequest)
        .filter(
            models.BookRequest.book_id == book.id,
            models.BookRequest.requester_id == borrower_id,
            models.BookRequest.status == RequestStatus.ACCEPTED,
        )
        .all()
    ):
        book_request.status = RequestStatus.COMPLETED

    notifier.notify(
        NotificationType.BOOK_RETURNED,
        recipient=book.owner,
        actor=borrower,
        book=book,
    )
    _commit(db, "return book")
    db.refresh(book)
    logger.info(f"Book {book_id} returned by user {borrower_id}")
    return book


def add_book_review(
    db: Session,
    book_id: int,
    borrower_id: int,
    rating: int,
    review: Optional[str] = None,
) -> models.Book:
    """Rate a borrow and fold the rating into the owner's average."""
    if not 1 <= int(rating) <= 5:
        raise InvalidInputError("Rating must be between 1 and 5")
    book = _lock_book(db, book_id)
    entry = next(
        (
            record
            for record in book.borrow_history
            if record.borrower_id == borrower_id and record.rating is None
        ),
        None,
    )
    if entry is None:
        raise InvalidStateError("No eligible borrow history found for this user")

    entry.rating = int(rating)
    entry.review = review
    try:
        owner = (
            db.query(models.User)
            .filter(models.User.id == book.owner_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("review", str(e))
    if owner is not None:
        owner.rating_sum = (owner.rating_sum or 0.0) + int(rating)
        owner.reviews_count = (owner.reviews_count or 0) + 1
    _commit(db, "review")
    db.refresh(book)
    logger.info(f"User {borrower_id} rated book {book_id}: {rating}")
    return book
