from __future__ import annotations

from rapport_sync.application.exceptions import AuthError, ForbiddenError, NotFoundError
from rapport_sync.domain.entities.identity import Identity
from rapport_sync.domain.entities.message import Message


def assert_signed_in(identity: Identity | None) -> Identity:
    """Raise unless an identity is resolved. Directory work is gated on it."""
    if identity is None:
        raise AuthError("Not signed in")
    return identity


def assert_sender(message: Message | None, identity: Identity) -> Message:
    """Raise if the message is unknown or was not sent by ``identity``."""
    if message is None or message.is_deleted:
        raise NotFoundError("Message not found")
    if message.sender_id != identity.id:
        raise ForbiddenError("Only the sender can change this message")
    return message
