"""
Conversation Session Model - persisted SessionState and rolling context
"""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, String, JSON

from guardchat.db.database import Base


class ConversationSessionRecord(Base):
    """One row per chat session"""

    __tablename__ = "conversation_sessions"

    session_id = Column(String(64), primary_key=True)
    user_id = Column(String(128), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # SessionState כ-JSON (preferences, entities, pending confirmation וכו')
    state_data = Column(JSON, nullable=False, default=dict)

    # Rolling windows, workflow pointer and counters
    context_data = Column(JSON, nullable=False, default=dict)

    # מונה רצף הודעות, מתקדם רק קדימה
    message_seq = Column(Integer, nullable=False, default=0)

    # Timestamps (naive UTC)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_activity_at = Column(DateTime, default=datetime.utcnow, index=True)
