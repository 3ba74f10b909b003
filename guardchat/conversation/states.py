"""
State Definitions for the Conversational Session
"""
from enum import Enum


class ChatState(str, Enum):
    """States of one interactive session"""

    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_CONFIRMATION = "waiting_confirmation"
    WAITING_CLARIFICATION = "waiting_clarification"
    EXECUTING_COMMAND = "executing_command"
    ERROR = "error"


INITIAL_STATE = ChatState.IDLE

CHAT_TRANSITIONS = {
    # קלט חדש
    ChatState.IDLE: [ChatState.PROCESSING, ChatState.ERROR],

    # אחרי סיווג: הרצה ישירה, שער אישור, או בקשת הבהרה
    ChatState.PROCESSING: [
        ChatState.EXECUTING_COMMAND,
        ChatState.WAITING_CONFIRMATION,
        ChatState.WAITING_CLARIFICATION,
        ChatState.ERROR,
    ],

    # אישור -> הרצה; דחייה / ביטול / תפוגה -> idle
    ChatState.WAITING_CONFIRMATION: [
        ChatState.EXECUTING_COMMAND,
        ChatState.IDLE,
        ChatState.ERROR,
    ],

    # קלט המשך -> סיווג מחדש; ביטול -> idle
    ChatState.WAITING_CLARIFICATION: [
        ChatState.PROCESSING,
        ChatState.IDLE,
        ChatState.ERROR,
    ],

    ChatState.EXECUTING_COMMAND: [ChatState.IDLE, ChatState.ERROR],

    # Acknowledgement
    ChatState.ERROR: [ChatState.IDLE],
}

# States in which the session is parked waiting on the user
WAITING_STATES = frozenset({ChatState.WAITING_CONFIRMATION, ChatState.WAITING_CLARIFICATION})


def is_valid_transition(current: ChatState, target: ChatState) -> bool:
    """Check if transition from current to target state is valid"""
    return target in CHAT_TRANSITIONS.get(current, [])
