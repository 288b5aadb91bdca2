from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class BookShareException(Exception):
    """Base exception for lending-related errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


# Validation
class InvalidInputError(BookShareException):
    """Raised when required input is missing or malformed."""


# Identity
class AuthenticationRequiredError(BookShareException):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(BookShareException):
    """Raised when the caller is known but not entitled to act."""


# Lookups
class NotFoundError(BookShareException):
    """Raised when a referenced record does not exist."""


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id, message: str = None):
        self.user_id = user_id
        super().__init__(message or f"User with id {user_id} not found")


class BookNotFoundError(NotFoundError):
    def __init__(self, book_id):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} not found")


class BookRequestNotFoundError(NotFoundError):
    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(f"Book request with id {request_id} not found")


class NotificationNotFoundError(NotFoundError):
    def __init__(self, notification_id):
        self.notification_id = notification_id
        super().__init__(f"Notification with id {notification_id} not found")


# State machine
class InvalidStateError(BookShareException):
    """Raised when an operation is not legal for the current status."""


class BookNotAvailableError(InvalidStateError):
    def __init__(self, book_id, message: str = "Book is not available for request"):
        self.book_id = book_id
        super().__init__(message)


# Infrastructure
class DatabaseError(BookShareException):
    def __init__(self, operation: str, details: str):
        self.operation = operation
        super().__init__(f"Database error during {operation}: {details}")


class ImageUploadError(BookShareException):
    """Raised when an image cannot be forwarded to the image host."""


def error_response(status_code: int, message: str):
    return JSONResponse(
        status_code=status_code, content={"success": False, "message": message}
    )


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return error_response(exc.status_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ())[1:])
        message = errors[0].get("msg", "Invalid request parameters")
        if location:
            message = f"{location}: {message}"
    else:
        message = "Invalid request parameters. Please check your input."
    return error_response(400, message)


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return error_response(
        500, "The server encountered an unexpected error. Please contact support."
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return error_response(500, "An unexpected error occurred. Please contact support.")


async def invalid_input_exception_handler(request: Request, exc: InvalidInputError):
    logger.error(f"Invalid input: {exc}")
    return error_response(400, str(exc))


async def authentication_exception_handler(
    request: Request, exc: AuthenticationRequiredError
):
    logger.error(f"Unauthenticated request: {exc}")
    return error_response(401, str(exc))


async def forbidden_exception_handler(request: Request, exc: ForbiddenError):
    logger.error(f"Forbidden: {exc}")
    return error_response(403, str(exc))


async def not_found_exception_handler(request: Request, exc: NotFoundError):
    logger.error(f"Not found: {exc}")
    return error_response(404, str(exc))


async def invalid_state_exception_handler(request: Request, exc: InvalidStateError):
    logger.error(f"Invalid state: {exc}")
    return error_response(400, str(exc))


async def database_exception_handler(request: Request, exc: DatabaseError):
    logger.error(f"Database error: {exc}")
    return error_response(500, "Server error")


async def image_upload_exception_handler(request: Request, exc: ImageUploadError):
    logger.error(f"Image upload failed: {exc}")
    return error_response(500, "Image upload failed")


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(InvalidInputError, invalid_input_exception_handler)
    app.add_exception_handler(
        AuthenticationRequiredError, authentication_exception_handler
    )
    app.add_exception_handler(ForbiddenError, forbidden_exception_handler)
    app.add_exception_handler(NotFoundError, not_found_exception_handler)
    app.add_exception_handler(InvalidStateError, invalid_state_exception_handler)
    app.add_exception_handler(DatabaseError, database_exception_handler)
    app.add_exception_handler(ImageUploadError, image_upload_exception_handler)
