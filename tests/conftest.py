"""
Shared fixtures.

Every test gets a fresh in-memory MongoDB (mongomock) with the production
indexes, the four services wired to it, and a ``RecordingNotifier`` in place
of the WebSocket fan-out. ``client`` drives the HTTP app against the same
database; ``live_client`` keeps the real ``ConnectionManager`` for socket tests.
"""

import os

# Keep bcrypt cheap in tests; must be set before security.py is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes
from main import create_app
from services import AuthService, ChatRegistry, MessageStore, ProfileService

PASSWORD = "secret123"


class RecordingNotifier:
    def __init__(self):
        self.published = []

    def publish_message(self, chat_id, participant_ids, message, chat_update):
        self.published.append(
            {
                "chat_id": chat_id,
                "participant_ids": list(participant_ids),
                "message": message,
                "chat_update": chat_update,
            }
        )


class ExplodingNotifier:
    def publish_message(self, chat_id, participant_ids, message, chat_update):
        raise RuntimeError("socket layer down")


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()
    database = mongo.get_database("chatapp_test")
    ensure_indexes(database)
    yield database
    mongo.drop_database("chatapp_test")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(db):
    return AuthService(db)


@pytest.fixture
def profiles(db):
    return ProfileService(db)


@pytest.fixture
def chats(db):
    return ChatRegistry(db)


@pytest.fixture
def messages(db, notifier):
    return MessageStore(db, notifier)


@pytest.fixture
def make_user(auth):
    counter = {"n": 0}

    def _make_user(name=None, age=25, email=None, password=PASSWORD, photos=None):
        counter["n"] += 1
        name = name or f"User {counter['n']}"
        email = email or f"user{counter['n']}@example.com"
        return auth.register(name, email, password, age, photos)

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user(name="Alice", age=25, email="alice@example.com")


@pytest.fixture
def bob(make_user):
    return make_user(name="Bob", age=27, email="bob@example.com")


@pytest.fixture
def carol(make_user):
    return make_user(name="Carol", age=31, email="carol@example.com")


@pytest.fixture
def token_for(auth):
    def _token_for(email, password=PASSWORD):
        _, token = auth.login(email, password)
        return token

    return _token_for


@pytest.fixture
def headers_for(token_for):
    def _headers_for(email, password=PASSWORD):
        return {"Authorization": f"Bearer {token_for(email, password)}"}

    return _headers_for


@pytest.fixture
def client(db, notifier):
    app = create_app(db=db, notifier=notifier)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def live_app(db):
    return create_app(db=db)


@pytest.fixture
def live_client(live_app):
    with TestClient(live_app) as test_client:
        yield test_client
