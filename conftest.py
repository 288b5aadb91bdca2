import os
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from bookshare.main import app, get_db
from bookshare.models import Base
from bookshare.crud import create_book, upsert_user_from_identity
from bookshare.identity import IDENTITY_HEADER
from bookshare.schemas import BookCreate, IdentityWebhookPayload
from dotenv import load_dotenv

load_dotenv()

# Use a local SQLite database for testing
SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function", autouse=True)
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="module")
def client():
    app.state.testing = True
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.dependency_overrides.clear()


def _make_user(db_session, external_id, first_name, last_name="Reader", phone_number=""):
    payload = IdentityWebhookPayload(
        id=external_id,
        email_addresses=[{"email_address": f"{external_id}@example.com"}],
        first_name=first_name,
        last_name=last_name,
    )
    user, _ = upsert_user_from_identity(db_session, payload)
    if phone_number:
        user.phone_number = phone_number
        db_session.commit()
    return user


def _make_book(db_session, owner, title="Test Book", genre=None, **fields):
    book_data = BookCreate(
        title=title,
        author=fields.pop("author", "Test Author"),
        description=fields.pop("description", "Test Description"),
        genre=genre or ["Fiction"],
        language=fields.pop("language", "English"),
        condition=fields.pop("condition", "Good"),
        location=fields.pop("location", "Lagos"),
        **fields,
    )
    return create_book(db_session, owner, book_data)


@pytest.fixture(scope="function")
def make_user(db_session):
    def factory(external_id, first_name, last_name="Reader", phone_number=""):
        return _make_user(db_session, external_id, first_name, last_name, phone_number)

    return factory


@pytest.fixture(scope="function")
def make_book(db_session):
    def factory(owner, title="Test Book", genre=None, **fields):
        return _make_book(db_session, owner, title, genre, **fields)

    return factory


@pytest.fixture
def auth():
    def headers(user):
        return {IDENTITY_HEADER: user.external_id}

    return headers


@pytest.fixture(scope="function")
def owner(db_session):
    return _make_user(db_session, "user_owner", "Olive", "Owner", phone_number="+15550000001")


@pytest.fixture(scope="function")
def borrower(db_session):
    return _make_user(db_session, "user_borrower", "Ben", "Borrower", phone_number="+15550000002")


@pytest.fixture(scope="function")
def other_user(db_session):
    return _make_user(db_session, "user_other", "Otto", "Other")


@pytest.fixture(scope="function")
def test_book(db_session, owner):
    return _make_book(db_session, owner)
