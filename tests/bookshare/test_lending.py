from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from bookshare import lending
from bookshare.exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    BookRequestNotFoundError,
    DatabaseError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    UserNotFoundError,
)
from bookshare.models import (
    BookRequest,
    BookStatus,
    Notification,
    NotificationType,
    RequestStatus,
    RequestType,
)
from bookshare.notifications import Notifier


def request_book(db_session, requester, book, request_type="Borrow", **kwargs):
    return lending.create_book_request(
        db_session, requester, book.id, request_type=request_type, **kwargs
    )


def borrow(db_session, requester, book, owner):
    book_request = request_book(db_session, requester, book)
    return lending.approve_book_request(db_session, book_request.id, owner)


def notifications_for(db_session, user):
    return (
        db_session.query(Notification)
        .filter(Notification.user_id == user.id)
        .order_by(Notification.id)
        .all()
    )


# Request creation
def test_create_request_reserves_book(db_session, owner, borrower, test_book):
    book_request = request_book(
        db_session, borrower, test_book, request_message="May I borrow it?"
    )

    assert book_request.status == RequestStatus.PENDING
    assert book_request.owner_id == owner.id
    assert book_request.request_message == "May I borrow it?"
    assert book_request.request_duration == 14
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.RESERVED

    notifications = notifications_for(db_session, owner)
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.BOOK_REQUEST
    assert notifications[0].related_request_id == book_request.id
    assert notifications[0].message == 'Ben Borrower requested to borrow your book "Test Book"'
    assert notifications[0].link == "/my-books/requests"


def test_create_request_keeps_explicit_duration(db_session, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book, request_duration=3)
    assert book_request.request_duration == 3


def test_create_request_default_duration_ignores_book(db_session, owner, borrower, make_book):
    book = make_book(owner, "Long Loan", borrow_duration=30)
    book_request = request_book(db_session, borrower, book)
    assert book_request.request_duration == lending.DEFAULT_REQUEST_DURATION == 14


def test_create_request_requires_type(db_session, borrower, test_book):
    with pytest.raises(InvalidInputError) as exc:
        request_book(db_session, borrower, test_book, request_type=None)
    assert exc.value.message == "Request type is required"


def test_create_request_rejects_unknown_type(db_session, borrower, test_book):
    with pytest.raises(InvalidInputError):
        request_book(db_session, borrower, test_book, request_type="Rent")


def test_create_request_for_missing_book(db_session, borrower):
    with pytest.raises(BookNotFoundError):
        lending.create_book_request(db_session, borrower, 999, request_type="Borrow")


def test_owner_cannot_request_own_book(db_session, owner, borrower, test_book):
    with pytest.raises(ForbiddenError) as exc:
        request_book(db_session, owner, test_book)
    assert exc.value.message == "You cannot request your own book"

    borrow(db_session, borrower, test_book, owner)
    with pytest.raises(ForbiddenError):
        request_book(db_session, owner, test_book)


def test_reserved_book_cannot_be_requested(db_session, borrower, other_user, test_book):
    request_book(db_session, borrower, test_book)
    with pytest.raises(BookNotAvailableError) as exc:
        request_book(db_session, other_user, test_book)
    assert exc.value.message == "Book is not available for request"
    assert db_session.query(BookRequest).count() == 1


def test_exchange_book_must_belong_to_requester(
    db_session, owner, borrower, other_user, test_book, make_book
):
    foreign_book = make_book(other_user, title="Not Yours")
    with pytest.raises(InvalidInputError):
        request_book(
            db_session,
            borrower,
            test_book,
            request_type="Exchange",
            exchange_book_id=foreign_book.id,
        )

    own_book = make_book(borrower, title="Swap Me")
    book_request = request_book(
        db_session,
        borrower,
        test_book,
        request_type="Exchange",
        exchange_book_id=own_book.id,
    )
    assert book_request.exchange_book_id == own_book.id


# Approve / reject / cancel
def test_approve_lends_book(db_session, owner, borrower, test_book):
    book_request = borrow(db_session, borrower, test_book, owner)

    assert book_request.status == RequestStatus.ACCEPTED
    assert book_request.response_date is not None
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.BORROWED
    assert test_book.current_borrower_id == borrower.id
    assert len(test_book.borrow_history) == 1
    assert test_book.borrow_history[0].borrower_id == borrower.id
    assert test_book.borrow_history[0].return_date is None

    db_session.refresh(borrower)
    assert [book.id for book in borrower.books_borrowed] == [test_book.id]
    notification = notifications_for(db_session, borrower)[-1]
    assert notification.type == NotificationType.REQUEST_APPROVED
    assert notification.link == "/my-requests"


def test_only_owner_can_approve(db_session, borrower, other_user, test_book):
    book_request = request_book(db_session, borrower, test_book)
    with pytest.raises(ForbiddenError) as exc:
        lending.approve_book_request(db_session, book_request.id, other_user)
    assert exc.value.message == "You are not authorized to approve this request"


def test_approve_twice_is_rejected(db_session, owner, borrower, test_book):
    book_request = borrow(db_session, borrower, test_book, owner)
    with pytest.raises(InvalidStateError) as exc:
        lending.approve_book_request(db_session, book_request.id, owner)
    assert exc.value.message == "This request has already been accepted"
    db_session.refresh(test_book)
    assert len(test_book.borrow_history) == 1


def test_approve_missing_request(db_session, owner):
    with pytest.raises(BookRequestNotFoundError):
        lending.approve_book_request(db_session, 42, owner)


def test_reject_releases_book(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    book_request = lending.reject_book_request(db_session, book_request.id, owner)

    assert book_request.status == RequestStatus.REJECTED
    assert book_request.response_date is not None
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.AVAILABLE
    assert notifications_for(db_session, borrower)[-1].type == NotificationType.REQUEST_REJECTED


def test_reject_after_reject(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    lending.reject_book_request(db_session, book_request.id, owner)
    with pytest.raises(InvalidStateError) as exc:
        lending.reject_book_request(db_session, book_request.id, owner)
    assert exc.value.message == "This request has already been rejected"


def test_cancel_by_requester(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    book_request = lending.cancel_book_request(db_session, book_request.id, borrower)

    assert book_request.status == RequestStatus.CANCELED
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.AVAILABLE
    notification = notifications_for(db_session, owner)[-1]
    assert notification.type == NotificationType.REQUEST_CANCELED
    assert notification.message == 'Ben Borrower canceled their request to borrow "Test Book"'


def test_owner_cannot_cancel(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    with pytest.raises(ForbiddenError) as exc:
        lending.cancel_book_request(db_session, book_request.id, owner)
    assert exc.value.message == "You are not authorized to cancel this request"


def test_cancel_accepted_request(db_session, owner, borrower, test_book):
    book_request = borrow(db_session, borrower, test_book, owner)
    with pytest.raises(InvalidStateError) as exc:
        lending.cancel_book_request(db_session, book_request.id, borrower)
    assert (
        exc.value.message
        == "This request cannot be canceled because it has already been accepted"
    )
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.BORROWED


def test_status_is_checked_before_authorization(
    db_session, owner, borrower, other_user, test_book
):
    book_request = request_book(db_session, borrower, test_book)
    lending.reject_book_request(db_session, book_request.id, owner)

    with pytest.raises(InvalidStateError) as exc:
        lending.approve_book_request(db_session, book_request.id, other_user)
    assert exc.value.message == "This request has already been rejected"

    with pytest.raises(InvalidStateError) as exc:
        lending.cancel_book_request(db_session, book_request.id, other_user)
    assert exc.value.message == (
        "This request cannot be canceled because it has already been rejected"
    )


# Generic status update
@pytest.mark.parametrize("status", ["Approved", "accepted", "Accepted"])
def test_status_update_accepts_aliases(db_session, owner, borrower, test_book, status):
    book_request = request_book(db_session, borrower, test_book)
    book_request = lending.update_book_request_status(
        db_session, book_request.id, owner, status
    )
    assert book_request.status == RequestStatus.ACCEPTED


def test_status_update_cancelled_alias(db_session, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    book_request = lending.update_book_request_status(
        db_session, book_request.id, borrower, "Cancelled"
    )
    assert book_request.status == RequestStatus.CANCELED


def test_status_update_unknown_status(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    with pytest.raises(InvalidInputError):
        lending.update_book_request_status(db_session, book_request.id, owner, "Lost")


def test_status_update_back_to_pending(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    with pytest.raises(InvalidStateError):
        lending.update_book_request_status(db_session, book_request.id, owner, "Pending")


def test_complete_returns_book(db_session, owner, borrower, test_book):
    book_request = borrow(db_session, borrower, test_book, owner)
    book_request = lending.update_book_request_status(
        db_session, book_request.id, owner, "Completed"
    )

    assert book_request.status == RequestStatus.COMPLETED
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.AVAILABLE
    assert test_book.current_borrower_id is None
    assert test_book.borrow_history[0].return_date is not None


def test_complete_requires_accepted(db_session, owner, borrower, test_book):
    book_request = request_book(db_session, borrower, test_book)
    with pytest.raises(InvalidStateError) as exc:
        lending.complete_book_request(db_session, book_request.id, owner)
    assert "current status: pending" in exc.value.message


# Returns
def test_return_book(db_session, owner, borrower, test_book):
    book_request = borrow(db_session, borrower, test_book, owner)
    book = lending.return_book(db_session, test_book.id, borrower.id)

    assert book.status == BookStatus.AVAILABLE
    assert book.current_borrower_id is None
    assert len(book.borrow_history) == 1
    assert book.borrow_history[0].return_date is not None
    db_session.refresh(book_request)
    assert book_request.status == RequestStatus.COMPLETED

    notification = notifications_for(db_session, owner)[-1]
    assert notification.type == NotificationType.BOOK_RETURNED
    assert notification.link == "/my-books"

    # The book can circulate again.
    again = request_book(db_session, borrower, book)
    assert again.status == RequestStatus.PENDING


def test_return_available_book(db_session, borrower, test_book):
    with pytest.raises(InvalidStateError) as exc:
        lending.return_book(db_session, test_book.id, borrower.id)
    assert exc.value.message == (
        "Cannot return a book that is not borrowed (current status: Available)"
    )


def test_return_by_someone_else(db_session, owner, borrower, other_user, test_book):
    borrow(db_session, borrower, test_book, owner)
    with pytest.raises(ForbiddenError) as exc:
        lending.return_book(db_session, test_book.id, other_user.id)
    assert exc.value.message == "You are not authorized to return this book"


def test_return_unknown_borrower(db_session, test_book):
    test_book.status = BookStatus.BORROWED
    db_session.commit()
    with pytest.raises(UserNotFoundError) as exc:
        lending.return_book(db_session, test_book.id, 999)
    assert exc.value.message == "Borrower not found"


def test_return_without_open_history_entry(db_session, borrower, test_book):
    test_book.status = BookStatus.BORROWED
    test_book.current_borrower_id = borrower.id
    db_session.commit()

    book = lending.return_book(db_session, test_book.id, borrower.id)

    assert len(book.borrow_history) == 1
    record = book.borrow_history[0]
    assert record.borrower_id == borrower.id
    assert record.return_date - record.borrow_date == timedelta(days=7)


# Reviews
def test_review_updates_owner_rating(db_session, owner, borrower, other_user, test_book, make_book):
    borrow(db_session, borrower, test_book, owner)
    lending.return_book(db_session, test_book.id, borrower.id)
    book = lending.add_book_review(db_session, test_book.id, borrower.id, 5, "Great read")

    assert book.borrow_history[0].rating == 5
    assert book.borrow_history[0].review == "Great read"
    db_session.refresh(owner)
    assert owner.ratings == 5.0
    assert owner.reviews_count == 1

    second_book = make_book(owner, title="Second Book")
    borrow(db_session, other_user, second_book, owner)
    lending.add_book_review(db_session, second_book.id, other_user.id, 2)
    db_session.refresh(owner)
    assert owner.ratings == 3.5
    assert owner.reviews_count == 2


def test_review_requires_borrow_history(db_session, borrower, test_book):
    with pytest.raises(InvalidStateError) as exc:
        lending.add_book_review(db_session, test_book.id, borrower.id, 4)
    assert exc.value.message == "No eligible borrow history found for this user"


def test_review_each_borrow_once(db_session, owner, borrower, test_book):
    borrow(db_session, borrower, test_book, owner)
    lending.add_book_review(db_session, test_book.id, borrower.id, 4)
    with pytest.raises(InvalidStateError):
        lending.add_book_review(db_session, test_book.id, borrower.id, 4)
    db_session.refresh(owner)
    assert owner.reviews_count == 1


@pytest.mark.parametrize("rating", [0, 6])
def test_review_rating_range(db_session, owner, borrower, test_book, rating):
    borrow(db_session, borrower, test_book, owner)
    with pytest.raises(InvalidInputError):
        lending.add_book_review(db_session, test_book.id, borrower.id, rating)


# Side effects
def test_sms_jobs_follow_notifications(db_session, owner, borrower, test_book):
    notifier = Notifier(db_session, send_sms=True)
    request_book(db_session, borrower, test_book, notifier=notifier)

    assert len(notifier.outbox) == 1
    assert notifier.outbox[0].to == owner.phone_number
    assert "requested to borrow" in notifier.outbox[0].body


def test_no_sms_without_phone_number(db_session, borrower, other_user, make_book):
    book = make_book(other_user, title="No Phone")
    notifier = Notifier(db_session, send_sms=True)
    request_book(db_session, borrower, book, notifier=notifier)

    assert notifier.outbox == []
    assert len(notifications_for(db_session, other_user)) == 1


def test_sms_disabled_by_default(db_session, borrower, test_book):
    notifier = Notifier(db_session)
    request_book(db_session, borrower, test_book, notifier=notifier)
    assert notifier.outbox == []


def test_failed_commit_rolls_back_everything(db_session, borrower, test_book):
    with patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk full")):
        with pytest.raises(DatabaseError):
            request_book(db_session, borrower, test_book)

    db_session.expire_all()
    assert db_session.query(BookRequest).count() == 0
    assert db_session.query(Notification).count() == 0
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.AVAILABLE


def test_rating_joins_existing_average(db_session, owner, borrower, test_book):
    owner.rating_sum = 8.0
    owner.reviews_count = 2
    db_session.commit()
    borrow(db_session, borrower, test_book, owner)

    lending.add_book_review(db_session, test_book.id, borrower.id, 5)

    db_session.refresh(owner)
    assert owner.ratings == pytest.approx(13 / 3)
    assert owner.reviews_count == 3


def test_reject_keeps_reservation_for_other_pending_request(
    db_session, owner, borrower, other_user, test_book
):
    first = request_book(db_session, borrower, test_book)
    # A second waiting request, as left behind by older data.
    second = BookRequest(
        book_id=test_book.id,
        requester_id=other_user.id,
        owner_id=owner.id,
        request_type=RequestType.BORROW,
        status=RequestStatus.PENDING,
    )
    db_session.add(second)
    db_session.commit()

    lending.reject_book_request(db_session, first.id, owner)
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.RESERVED

    lending.reject_book_request(db_session, second.id, owner)
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.AVAILABLE


def assert_borrower_matches_status(book):
    assert (book.status == BookStatus.BORROWED) == (book.current_borrower_id is not None)


def test_full_lending_cycle(db_session, owner, borrower, test_book):
    assert_borrower_matches_status(test_book)

    book_request = request_book(db_session, borrower, test_book)
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.RESERVED
    assert_borrower_matches_status(test_book)

    lending.approve_book_request(db_session, book_request.id, owner)
    db_session.refresh(test_book)
    assert test_book.status == BookStatus.BORROWED
    assert_borrower_matches_status(test_book)
    open_entries = [r for r in test_book.borrow_history if r.return_date is None]
    assert len(open_entries) == 1

    book = lending.return_book(db_session, test_book.id, borrower.id)
    assert book.status == BookStatus.AVAILABLE
    assert_borrower_matches_status(book)
    assert len(book.borrow_history) == 1
    assert all(r.return_date is not None for r in book.borrow_history)

    # A second cycle adds a second entry and closes only that one.
    second = request_book(db_session, borrower, book)
    lending.approve_book_request(db_session, second.id, owner)
    lending.complete_book_request(db_session, second.id, borrower)
    db_session.refresh(book)
    assert len(book.borrow_history) == 2
    assert all(r.return_date is not None for r in book.borrow_history)
    assert_borrower_matches_status(book)
