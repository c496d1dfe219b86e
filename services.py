"""
Service layer: accounts, profiles, chats and messages.

Each service wraps a pymongo ``Database``; the message store additionally
receives the realtime notifier so tests can substitute a fake one. Failures
are raised as ``errors.AppError`` subclasses and rendered by ``main.py``.
"""

import logging
from typing import Optional, Tuple, Union

import pydantic
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, get_documents, parse_object_id, utcnow
from errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    describe_validation_errors,
)
from formatters import format_chat, format_chat_update, format_message, format_user
from realtime import Notifier
from schemas import (
    Chat as ChatSchema,
    Message as MessageSchema,
    ProfileUpdate,
    RegisterRequest,
    SendMessageRequest,
    User as UserSchema,
)
from security import create_access_token, decode_access_token, dummy_verify, get_password_hash, verify_password

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


def _validate(model, **fields):
    try:
        return model(**fields)
    except pydantic.ValidationError as exc:
        raise ValidationError(describe_validation_errors(exc.errors()))


def make_pair_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted((user_a, user_b)))


# ------------ Auth ------------

class AuthService:
    def __init__(self, db: Database):
        self.db = db

    def register(self, name, email, password, age, photos=None) -> dict:
        data = _validate(
            RegisterRequest,
            name=name,
            email=email,
            password=password,
            age=age,
            photos=photos or [],
        )
        if self.db["user"].find_one({"email": data.email}, {"_id": 1}):
            raise ConflictError("Email already exists")

        user = UserSchema(
            name=data.name,
            email=data.email,
            password_hash=get_password_hash(data.password),
            age=data.age,
            photos=data.photos,
        )
        try:
            user_id = create_document(self.db, "user", user)
        except DuplicateKeyError:
            raise ConflictError("Email already exists")

        logger.info("Registered user %s", user_id)
        return format_user(self.db["user"].find_one({"_id": parse_object_id(user_id)}))

    def login(self, email: str, password: str) -> Tuple[dict, str]:
        email = (email or "").strip().lower()
        user = self.db["user"].find_one({"email": email}) if email else None
        if user is None:
            dummy_verify()
            logger.warning("Login failed: unknown account")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not verify_password(password or "", user.get("password_hash", "")):
            logger.warning("Login failed for user %s", user["_id"])
            raise AuthenticationError(INVALID_CREDENTIALS)

        token = create_access_token({"sub": str(user["_id"])})
        return format_user(user), token

    def resolve_current_user(self, token: Optional[str]) -> dict:
        if not token:
            raise AuthenticationError("Not authorized, no token")
        user_id = decode_access_token(token)
        if user_id is None:
            raise AuthenticationError("Not authorized, token failed")
        try:
            oid = parse_object_id(user_id, "User")
        except NotFoundError:
            raise AuthenticationError("Not authorized, token failed")
        user = self.db["user"].find_one({"_id": oid})
        if user is None:
            raise AuthenticationError("Not authorized, user not found")
        return user

    def logout(self) -> dict:
        # Tokens are not revoked; clients discard them.
        return {"message": "Logged out successfully"}


# ------------ Profiles ------------

class ProfileService:
    def __init__(self, db: Database):
        self.db = db

    def list_users(self) -> list:
        docs = get_documents(self.db, "user", sort=[("created_at", -1), ("_id", -1)])
        return [format_user(d) for d in docs]

    def get_profile(self, user_id: str) -> dict:
        user = self.db["user"].find_one({"_id": parse_object_id(user_id, "User")})
        if user is None:
            raise NotFoundError("User not found")
        return format_user(user)

    def update_profile(self, acting_user_id: str, target_user_id: str, changes: Union[ProfileUpdate, dict]) -> dict:
        if acting_user_id != target_user_id:
            raise PermissionDeniedError("Not authorized to update this profile")
        if not isinstance(changes, ProfileUpdate):
            changes = _validate(ProfileUpdate, **changes)

        updates = changes.changes()
        updates["updated_at"] = utcnow()
        user = self.db["user"].find_one_and_update(
            {"_id": parse_object_id(target_user_id, "User")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if user is None:
            raise NotFoundError("User not found")
        logger.info("Updated profile %s fields=%s", target_user_id, sorted(changes.model_fields_set))
        return format_user(user)


# ------------ Chats & Messages ------------

def load_chat(db: Database, chat_id: str) -> dict:
    chat = db["chat"].find_one({"_id": parse_object_id(chat_id, "Chat")})
    if chat is None:
        raise NotFoundError("Chat not found")
    return chat


def ensure_participant(chat: dict, user_id: str, message: str = "Not authorized to access this chat"):
    if user_id not in chat.get("participants", []):
        raise PermissionDeniedError(message)


class ChatRegistry:
    def __init__(self, db: Database, history_window: int = config.CHAT_HISTORY_WINDOW):
        self.db = db
        self.history_window = history_window

    def _history(self, chat_id: str) -> list:
        return get_documents(self.db, "message", {"chat_id": chat_id}, sort=[("created_at", 1), ("_id", 1)])

    def _recent(self, chat_id: str) -> list:
        recent = get_documents(
            self.db,
            "message",
            {"chat_id": chat_id},
            sort=[("created_at", -1), ("_id", -1)],
            limit=self.history_window,
        )
        recent.reverse()
        return recent

    def _last_message(self, chat_id: str) -> Optional[dict]:
        return self.db["message"].find_one({"chat_id": chat_id}, sort=[("created_at", -1), ("_id", -1)])

    def list_chats_for_user(self, user_id: str, requester_id: Optional[str] = None) -> list:
        if not user_id or (requester_id is not None and user_id != requester_id):
            raise PermissionDeniedError("Not authorized to access these chats")

        chats = get_documents(self.db, "chat", {"participants": user_id}, sort=[("updated_at", -1), ("_id", -1)])
        result = []
        for chat in chats:
            chat_id = str(chat["_id"])
            result.append(format_chat(chat, self._recent(chat_id), self._last_message(chat_id)))
        return result

    def get_chat(self, chat_id: str, requesting_user_id: str) -> dict:
        chat = load_chat(self.db, chat_id)
        ensure_participant(chat, requesting_user_id)
        return format_chat(chat, self._history(str(chat["_id"])))

    def create_or_get_chat(self, acting_user_id: str, other_user_id: str, requester_id: Optional[str] = None) -> Tuple[dict, bool]:
        """Return ``(chat, created)``; at most one chat exists per user pair."""
        if not acting_user_id or not other_user_id:
            raise ValidationError("userId and otherUserId are required")
        # ObjectId accepts either hex case; participants and pair_key hold the canonical form
        acting_oid = parse_object_id(acting_user_id, "User")
        other_oid = parse_object_id(other_user_id, "User")
        acting_user_id, other_user_id = str(acting_oid), str(other_oid)
        if requester_id is not None and acting_user_id != requester_id:
            raise PermissionDeniedError("Not authorized to create chat for this user")
        if acting_user_id == other_user_id:
            raise ValidationError("Cannot start a chat with yourself")
        if self.db["user"].find_one({"_id": other_oid}, {"_id": 1}) is None:
            raise NotFoundError("User not found")

        pair_key = make_pair_key(acting_user_id, other_user_id)
        existing = self._find_by_pair(pair_key)
        if existing is not None:
            return format_chat(existing, self._history(str(existing["_id"]))), False

        chat = ChatSchema(participants=[acting_user_id, other_user_id], pair_key=pair_key)
        try:
            chat_id = create_document(self.db, "chat", chat)
        except DuplicateKeyError:
            # A concurrent request created the pair first
            existing = self._find_by_pair(pair_key)
            return format_chat(existing, self._history(str(existing["_id"]))), False

        logger.info("Created chat %s between %s and %s", chat_id, acting_user_id, other_user_id)
        return format_chat(load_chat(self.db, chat_id), []), True

    def _find_by_pair(self, pair_key: str) -> Optional[dict]:
        return self.db["chat"].find_one({"pair_key": pair_key})


class MessageStore:
    def __init__(self, db: Database, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    def send_message(self, chat_id: str, sender_id: str, text: str, type: str, image_url: Optional[str] = None) -> dict:
        data = _validate(SendMessageRequest, sender_id=sender_id, text=text, type=type, image_url=image_url)
        chat = load_chat(self.db, chat_id)
        ensure_participant(chat, data.sender_id, "Not authorized to send message to this chat")

        chat_key = str(chat["_id"])
        message = MessageSchema(
            chat_id=chat_key,
            sender_id=data.sender_id,
            text=data.text,
            type=data.type,
            image_url=data.image_url,
            read_at=None,
        )
        message_id = create_document(self.db, "message", message)
        message_doc = self.db["message"].find_one({"_id": parse_object_id(message_id)})
        chat = self.db["chat"].find_one_and_update(
            {"_id": chat["_id"]},
            {"$set": {"updated_at": message_doc["created_at"]}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Message %s sent to chat %s", message_id, chat_key)

        formatted = format_message(message_doc)
        try:
            self.notifier.publish_message(
                chat_key, chat["participants"], formatted, format_chat_update(chat, message_doc)
            )
        except Exception:
            logger.exception("Realtime fan-out failed for chat %s", chat_key)
        return formatted

    def mark_read(self, chat_id: str, acting_user_id: str) -> int:
        """Mark every unread message from the other participant as read; returns how many changed."""
        if not acting_user_id:
            raise ValidationError("userId is required")
        chat = load_chat(self.db, chat_id)
        ensure_participant(chat, acting_user_id)

        result = self.db["message"].update_many(
            {"chat_id": str(chat["_id"]), "sender_id": {"$ne": acting_user_id}, "read_at": None},
            {"$set": {"read_at": utcnow()}},
        )
        if result.modified_count:
            logger.info("Marked %d messages read in chat %s", result.modified_count, chat["_id"])
        return result.modified_count
