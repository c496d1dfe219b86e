"""
Database and request schemas for the dating chat app.

Document models map to MongoDB collections named after the lower-cased class
name (User -> "user", Chat -> "chat", Message -> "message"); they are stored
with snake_case keys. Request models accept camelCase JSON (``otherUserId``,
``imageUrl``...) as well as the snake_case field names.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MessageType = Literal["text", "image", "system"]

MIN_AGE = 18
MAX_AGE = 120


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ------------ Profile parts ------------

class Location(CamelModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    city: Optional[str] = None


class AgeRange(CamelModel):
    min: int = Field(MIN_AGE, ge=MIN_AGE, le=MAX_AGE)
    max: int = Field(100, ge=MIN_AGE, le=MAX_AGE)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min > self.max:
            raise ValueError("ageRange.min must not exceed ageRange.max")
        return self


class Preferences(CamelModel):
    age_range: AgeRange = Field(default_factory=AgeRange)
    max_distance: int = Field(50, ge=0, description="Kilometres")
    interests: List[str] = Field(default_factory=list)

    @field_validator("interests")
    @classmethod
    def dedupe_interests(cls, value: List[str]) -> List[str]:
        seen = []
        for tag in value:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


# ------------ Collections ------------

class User(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    email: str = Field(..., description="Unique, lower-cased email")
    password_hash: str = Field(..., description="BCrypt password hash")
    age: int = Field(..., ge=MIN_AGE, le=MAX_AGE)
    bio: Optional[str] = None
    photos: List[str] = Field(default_factory=list, description="Profile picture URLs")
    location: Optional[Location] = None
    preferences: Preferences = Field(default_factory=Preferences)


class Chat(BaseModel):
    # One-to-one chat, participants kept in the order they were given
    participants: List[str] = Field(..., min_length=2, max_length=2, description="User IDs")
    pair_key: str = Field(..., description="Sorted participant ids, unique per pair")


class Message(BaseModel):
    chat_id: str
    sender_id: str
    text: str = Field(..., min_length=1)
    type: MessageType = "text"
    image_url: Optional[str] = None
    read_at: Optional[datetime] = None


# ------------ Requests ------------

class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    age: int = Field(..., ge=MIN_AGE, le=MAX_AGE)
    photos: List[str] = Field(default_factory=list)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ProfileUpdate(CamelModel):
    """Sparse profile update: only fields present in the payload are applied.

    Presence is read from ``model_fields_set``; ``bio``, ``location`` may be
    sent as null to clear them, the remaining fields may not.
    """

    name: Optional[str] = Field(None, min_length=1)
    age: Optional[int] = Field(None, ge=MIN_AGE, le=MAX_AGE)
    bio: Optional[str] = None
    photos: Optional[List[str]] = None
    location: Optional[Location] = None
    preferences: Optional[Preferences] = None

    @field_validator("name", "age", "photos", "preferences", mode="before")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value

    def changes(self) -> dict:
        return self.model_dump(include=self.model_fields_set)


class CreateChatRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    other_user_id: str = Field(..., min_length=1)


class SendMessageRequest(CamelModel):
    sender_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    type: MessageType
    image_url: Optional[str] = None

    @model_validator(mode="after")
    def require_image_url(self):
        if self.type == "image" and not self.image_url:
            raise ValueError("imageUrl is required for image messages")
        return self


class MarkReadRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
