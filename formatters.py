"""Shape stored documents into the camelCase JSON the clients consume."""

from typing import Optional

from database import to_iso


def format_user(doc: dict) -> dict:
    """Public profile view. The password hash never leaves this module."""
    location = doc.get("location")
    preferences = doc.get("preferences")
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "age": doc.get("age"),
        "bio": doc.get("bio"),
        "photos": list(doc.get("photos") or []),
        "location": {
            "latitude": location.get("latitude"),
            "longitude": location.get("longitude"),
            "city": location.get("city"),
        } if location and location.get("latitude") is not None else None,
        "preferences": {
            "ageRange": dict(preferences.get("age_range") or {}),
            "maxDistance": preferences.get("max_distance"),
            "interests": list(preferences.get("interests") or []),
        } if preferences else None,
        "createdAt": to_iso(doc.get("created_at")),
        "updatedAt": to_iso(doc.get("updated_at")),
    }


def format_message(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "chatId": str(doc["chat_id"]),
        "senderId": str(doc["sender_id"]),
        "text": doc.get("text"),
        "type": doc.get("type", "text"),
        "imageUrl": doc.get("image_url"),
        "readAt": to_iso(doc.get("read_at")),
        "createdAt": to_iso(doc.get("created_at")),
    }


def format_chat(doc: dict, messages: Optional[list] = None, last_message: Optional[dict] = None) -> dict:
    return {
        "id": str(doc["_id"]),
        "participants": [str(p) for p in doc.get("participants", [])],
        "messages": [format_message(m) for m in messages or []],
        "lastMessage": format_message(last_message) if last_message else None,
        "createdAt": to_iso(doc.get("created_at")),
        "updatedAt": to_iso(doc.get("updated_at")),
    }


def format_chat_update(chat: dict, message: dict) -> dict:
    """Lightweight summary pushed on a participant's user channel."""
    return {
        "chatId": str(chat["_id"]),
        "lastMessage": format_message(message),
        "updatedAt": to_iso(chat.get("updated_at")),
    }
