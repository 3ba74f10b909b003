"""
Conversational session engine
"""
from guardchat.conversation.states import ChatState
from guardchat.conversation.manager import ChatSession, SessionStateMachine

__all__ = ["ChatState", "ChatSession", "SessionStateMachine"]
