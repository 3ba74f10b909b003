"""
Database Models
"""
from guardchat.db.models.conversation_session import ConversationSessionRecord
from guardchat.db.models.conversation_message import ConversationMessageRecord

__all__ = [
    "ConversationSessionRecord",
    "ConversationMessageRecord",
]
