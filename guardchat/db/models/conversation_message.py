"""
Conversation Message Model - append-only session history
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, JSON, UniqueConstraint

from guardchat.db.database import Base


class ConversationMessageRecord(Base):
    """One history entry; rows are never updated"""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_conversation_messages_session_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(64), nullable=False)
    session_id = Column(
        String(64),
        ForeignKey("conversation_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    type = Column(String(32), nullable=False)
    content = Column(Text, nullable=False)

    # ההודעה המלאה (intent, command, execution_result, metadata)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
