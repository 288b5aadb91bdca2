import os
from contextlib import asynccontextmanager
import logging
from typing import Annotated, List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Query,
    Response,
    UploadFile,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from bookshare import crud, lending
from bookshare.exceptions import (
    DatabaseError,
    InvalidInputError,
    UserNotFoundError,
    add_exception_handlers,
)
from bookshare.identity import get_current_user
from bookshare.images import store_book_images
from bookshare.messaging import cleanup_messaging, relay_sms, setup_messaging
from bookshare.models import Base, BookCondition, User
from bookshare.notifications import Notifier
from bookshare.schemas import (
    ApiResponse,
    BookCreate,
    BookDetailSchema,
    BookFilterParams,
    BookRequestCreate,
    BookRequestForBook,
    BookRequestSchema,
    BookRequestStatusUpdate,
    BookSchema,
    BookUpdate,
    IdentityWebhookPayload,
    NotificationSchema,
    ReturnBookSchema,
    ReviewCreate,
    UserProfileSchema,
    UserSchema,
    UserUpdate,
    split_genres,
)
from bookshare.storage import engine, get_db
from chat import storage as chat_storage
from chat.router import router as chat_router

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Initializing database connection")
        Base.metadata.create_all(bind=engine)
        await chat_storage.init_db()
        await setup_messaging(app)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)
        logger.info("Closing chat database connection")
        await chat_storage.close_db_connection()


app = FastAPI(
    title="BookShare API",
    lifespan=lifespan,
    description="Peer-to-peer book lending: listings, borrow requests and returns",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("CLIENT_URL", "http://localhost:5173")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)
app.include_router(chat_router)

API_PREFIX = "/api"


def envelope(data=None, message: Optional[str] = None):
    return {"success": True, "data": data, "message": message}


def relay_notifications(background_tasks: BackgroundTasks, notifier: Notifier):
    if notifier.outbox:
        background_tasks.add_task(relay_sms, app, list(notifier.outbox))


def log_orphaned_images(urls: List[str]):
    if urls:
        logger.error(f"Book was not saved, uploaded images are orphaned: {', '.join(urls)}")


@app.get("/")
def root():
    return {"success": True, "message": "Book Sharing API is running"}


# Users
@app.post(f"{API_PREFIX}/users/clerk-webhook", response_model=ApiResponse[UserSchema])
def identity_webhook(
    payload: IdentityWebhookPayload, response: Response, db: Session = Depends(get_db)
):
    user, created = crud.upsert_user_from_identity(db, payload)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return envelope(user, "User created" if created else "User updated")


@app.get(f"{API_PREFIX}/users/profile", response_model=ApiResponse[UserProfileSchema])
def current_user_profile(current_user: User = Depends(get_current_user)):
    return envelope(current_user)


@app.get(
    f"{API_PREFIX}/users/clerk/{{external_id}}", response_model=ApiResponse[UserSchema]
)
def user_by_external_id(external_id: str, db: Session = Depends(get_db)):
    user = crud.get_user_by_external_id(db, external_id)
    if user is None:
        raise UserNotFoundError(external_id, message="User not found")
    return envelope(user)


@app.get(f"{API_PREFIX}/users/{{user_id}}", response_model=ApiResponse[UserProfileSchema])
def user_profile(user_id: int, db: Session = Depends(get_db)):
    return envelope(crud.get_user_by_id(db, user_id))


@app.put(f"{API_PREFIX}/users/{{user_id}}", response_model=ApiResponse[UserSchema])
def update_user_profile(
    user_id: int,
    update: UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    user = crud.update_user_profile(db, user_id, current_user, update)
    return envelope(user, "Profile updated")


@app.get(
    f"{API_PREFIX}/users/{{user_id}}/books/shared",
    response_model=ApiResponse[List[BookSchema]],
)
def user_shared_books(user_id: int, db: Session = Depends(get_db)):
    return envelope(crud.get_user_by_id(db, user_id).books_shared)


@app.get(
    f"{API_PREFIX}/users/{{user_id}}/books/borrowed",
    response_model=ApiResponse[List[BookSchema]],
)
def user_borrowed_books(user_id: int, db: Session = Depends(get_db)):
    return envelope(crud.get_user_by_id(db, user_id).books_borrowed)


# Books
@app.get(f"{API_PREFIX}/books", response_model=ApiResponse[List[BookSchema]])
def list_books(
    params: Annotated[BookFilterParams, Query()], db: Session = Depends(get_db)
):
    books = crud.filter_books(db, params)
    return envelope(books, f"Found {len(books)} books")


@app.get(f"{API_PREFIX}/books/{{book_id}}", response_model=ApiResponse[BookDetailSchema])
def fetch_single_book(book_id: int, db: Session = Depends(get_db)):
    return envelope(crud.get_book(db, book_id), "Book found")


@app.post(
    f"{API_PREFIX}/books",
    response_model=ApiResponse[BookSchema],
    status_code=status.HTTP_201_CREATED,
)
def create_book(
    title: str = Form(...),
    author: str = Form(...),
    description: str = Form(...),
    genre: str = Form(...),
    language: str = Form(...),
    condition: BookCondition = Form(...),
    location: str = Form(...),
    is_exchangeable: bool = Form(False),
    is_donation: bool = Form(False),
    borrow_duration: int = Form(14),
    images: List[UploadFile] = File(default=[]),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        book_in = BookCreate(
            title=title,
            author=author,
            description=description,
            genre=split_genres(genre),
            language=language,
            condition=condition,
            location=location,
            is_exchangeable=is_exchangeable,
            is_donation=is_donation,
            borrow_duration=borrow_duration,
        )
    except ValidationError as e:
        raise InvalidInputError(str(e.errors()[0]["msg"]))
    book_in.images = store_book_images(images)
    try:
        book = crud.create_book(db, current_user, book_in)
    except DatabaseError:
        log_orphaned_images(book_in.images)
        raise
    return envelope(book, "Book created successfully")


@app.put(f"{API_PREFIX}/books/{{book_id}}", response_model=ApiResponse[BookSchema])
def update_book(
    book_id: int,
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    genre: Optional[str] = Form(None),
    language: Optional[str] = Form(None),
    condition: Optional[BookCondition] = Form(None),
    location: Optional[str] = Form(None),
    is_exchangeable: Optional[bool] = Form(None),
    is_donation: Optional[bool] = Form(None),
    borrow_duration: Optional[int] = Form(None),
    images: List[UploadFile] = File(default=[]),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        book_update = BookUpdate(
            title=title or None,
            author=author or None,
            description=description or None,
            genre=split_genres(genre) or None,
            language=language or None,
            condition=condition,
            location=location or None,
            is_exchangeable=is_exchangeable,
            is_donation=is_donation,
            borrow_duration=borrow_duration,
        )
    except ValidationError as e:
        raise InvalidInputError(str(e.errors()[0]["msg"]))
    crud.get_owned_book(db, book_id, current_user, "update")
    new_images = store_book_images(images)
    try:
        book = crud.update_book(db, book_id, current_user, book_update, new_images)
    except DatabaseError:
        log_orphaned_images(new_images)
        raise
    return envelope(book, "Book updated successfully")


@app.delete(f"{API_PREFIX}/books/{{book_id}}", response_model=ApiResponse[None])
def remove_book(
    book_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    crud.delete_book(db, book_id, current_user)
    return envelope(message="Book deleted successfully")


@app.post(
    f"{API_PREFIX}/books/{{book_id}}/reviews",
    response_model=ApiResponse[BookDetailSchema],
)
def add_book_review(book_id: int, review: ReviewCreate, db: Session = Depends(get_db)):
    book = lending.add_book_review(
        db, book_id, review.borrower_id, review.rating, review.review
    )
    return envelope(book, "Review added")


@app.post(
    f"{API_PREFIX}/books/{{book_id}}/return",
    response_model=ApiResponse[BookDetailSchema],
)
def return_book(
    book_id: int,
    payload: ReturnBookSchema,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    notifier = Notifier(db)
    book = lending.return_book(db, book_id, payload.borrower_id, notifier)
    relay_notifications(background_tasks, notifier)
    return envelope(book, "Book has been successfully returned")


@app.post(
    f"{API_PREFIX}/books/{{book_id}}/request",
    response_model=ApiResponse[BookRequestSchema],
    status_code=status.HTTP_201_CREATED,
)
def request_book(
    book_id: int,
    payload: BookRequestForBook,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _create_book_request(
        db, current_user, BookRequestCreate(book_id=book_id, **payload.model_dump()),
        background_tasks,
    )


# Book requests
def _create_book_request(
    db: Session,
    requester: User,
    payload: BookRequestCreate,
    background_tasks: BackgroundTasks,
):
    notifier = Notifier(db)
    book_request = lending.create_book_request(
        db,
        requester,
        payload.book_id,
        request_type=payload.request_type,
        request_message=payload.request_message,
        request_duration=payload.request_duration,
        exchange_book_id=payload.exchange_book_id,
        notifier=notifier,
    )
    relay_notifications(background_tasks, notifier)
    return envelope(book_request, "Book request submitted successfully")


@app.post(
    f"{API_PREFIX}/book-requests",
    response_model=ApiResponse[BookRequestSchema],
    status_code=status.HTTP_201_CREATED,
)
def create_book_request(
    payload: BookRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _create_book_request(db, current_user, payload, background_tasks)


@app.get(
    f"{API_PREFIX}/book-requests/owner",
    response_model=ApiResponse[List[BookRequestSchema]],
)
def owner_book_requests(
    db: Session = Depends(get_db), current_user: User = Depends(get_current_user)
):
    return envelope(crud.get_owner_book_requests(db, current_user.id))


@app.get(
    f"{API_PREFIX}/book-requests/requester",
    response_model=ApiResponse[List[BookRequestSchema]],
)
def requester_book_requests(
    db: Session = Depends(get_db), current_user: User = Depends(get_current_user)
):
    return envelope(crud.get_requester_book_requests(db, current_user.id))


@app.get(
    f"{API_PREFIX}/book-requests/user/{{user_id}}",
    response_model=ApiResponse[List[BookRequestSchema]],
)
def user_book_requests(
    user_id: int,
    type: Optional[str] = Query(None, pattern="^(owner|requester|all)$"),
    db: Session = Depends(get_db),
):
    return envelope(crud.get_user_book_requests(db, user_id, type))


@app.get(
    f"{API_PREFIX}/book-requests/{{request_id}}",
    response_model=ApiResponse[BookRequestSchema],
)
def get_book_request(request_id: int, db: Session = Depends(get_db)):
    return envelope(crud.get_book_request(db, request_id))


@app.put(
    f"{API_PREFIX}/book-requests/{{request_id}}/status",
    response_model=ApiResponse[BookRequestSchema],
)
def update_book_request_status(
    request_id: int,
    update: BookRequestStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notifier = Notifier(db)
    book_request = lending.update_book_request_status(
        db, request_id, current_user, update.status, notifier
    )
    relay_notifications(background_tasks, notifier)
    return envelope(
        book_request, f"Book request {book_request.status.value.lower()} successfully"
    )


@app.put(
    f"{API_PREFIX}/book-requests/{{request_id}}/approve",
    response_model=ApiResponse[BookRequestSchema],
)
def approve_book_request(
    request_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notifier = Notifier(db)
    book_request = lending.approve_book_request(db, request_id, current_user, notifier)
    relay_notifications(background_tasks, notifier)
    return envelope(book_request, "Book request accepted successfully")


@app.put(
    f"{API_PREFIX}/book-requests/{{request_id}}/reject",
    response_model=ApiResponse[BookRequestSchema],
)
def reject_book_request(
    request_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notifier = Notifier(db)
    book_request = lending.reject_book_request(db, request_id, current_user, notifier)
    relay_notifications(background_tasks, notifier)
    return envelope(book_request, "Book request rejected successfully")


@app.put(
    f"{API_PREFIX}/book-requests/{{request_id}}/cancel",
    response_model=ApiResponse[BookRequestSchema],
)
def cancel_book_request(
    request_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notifier = Notifier(db)
    book_request = lending.cancel_book_request(db, request_id, current_user, notifier)
    relay_notifications(background_tasks, notifier)
    return envelope(book_request, "Book request canceled successfully")


# Notifications
@app.get(
    f"{API_PREFIX}/notifications",
    response_model=ApiResponse[List[NotificationSchema]],
)
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return envelope(
        crud.get_user_notifications(db, current_user.id, limit, unread_only)
    )


@app.put(f"{API_PREFIX}/notifications/read-all", response_model=ApiResponse[None])
def mark_all_notifications_read(
    db: Session = Depends(get_db), current_user: User = Depends(get_current_user)
):
    updated = crud.mark_all_notifications_read(db, current_user)
    return envelope(message=f"Marked {updated} notifications as read")


@app.put(
    f"{API_PREFIX}/notifications/{{notification_id}}/read",
    response_model=ApiResponse[NotificationSchema],
)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notification = crud.mark_notification_read(db, notification_id, current_user)
    return envelope(notification, "Notification marked as read")


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "5000"))
    logger.info(f"Starting BookShare API on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
