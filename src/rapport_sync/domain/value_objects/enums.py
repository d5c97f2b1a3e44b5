from __future__ import annotations

from enum import StrEnum


class MessageKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    VOICE = "voice"
    DOCUMENT = "document"
    LOCATION = "location"


class DeliveryState(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ActionKind(StrEnum):
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"


class Table(StrEnum):
    USERS = "users"
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    PRESENCE = "presence"
    PINNED_MESSAGES = "pinned_messages"
    MESSAGE_REACTIONS = "message_reactions"
    STARRED_MESSAGES = "starred_messages"


class PushEventType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class AuthEventType(StrEnum):
    INITIAL_SESSION = "initial_session"
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"
    USER_UPDATED = "user_updated"
