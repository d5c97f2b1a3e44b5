"""Import all models so ``Base.metadata`` sees every table."""
from rapport_sync.infrastructure.db.models.auth_user import AuthUserModel
from rapport_sync.infrastructure.db.models.conversation import ConversationModel
from rapport_sync.infrastructure.db.models.message import MessageModel
from rapport_sync.infrastructure.db.models.message_reaction import MessageReactionModel
from rapport_sync.infrastructure.db.models.pinned_message import PinnedMessageModel
from rapport_sync.infrastructure.db.models.presence import PresenceModel
from rapport_sync.infrastructure.db.models.starred_message import StarredMessageModel
from rapport_sync.infrastructure.db.models.user import UserModel

__all__ = [
    "AuthUserModel",
    "ConversationModel",
    "MessageModel",
    "MessageReactionModel",
    "PinnedMessageModel",
    "PresenceModel",
    "StarredMessageModel",
    "UserModel",
]
