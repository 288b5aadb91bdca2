from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from bookshare import crud, models
from bookshare.exceptions import AuthenticationRequiredError, UserNotFoundError
from bookshare.storage import get_db

IDENTITY_HEADER = "X-Clerk-User-Id"


def get_current_user(
    x_clerk_user_id: Optional[str] = Header(None, alias=IDENTITY_HEADER),
    db: Session = Depends(get_db),
) -> models.User:
    """Resolve the identity-provider id sent by the client to a local user."""
    if not x_clerk_user_id:
        raise AuthenticationRequiredError()
    user = crud.get_user_by_external_id(db, x_clerk_user_id)
    if user is None:
        raise UserNotFoundError(x_clerk_user_id, message="User not found")
    return user
