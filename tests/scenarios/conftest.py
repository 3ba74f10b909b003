"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שיחה פתוחה על מכונת המצבים של הבדיקות
- מאזין לאירועים של השיחה
- פונקציות אימות למסלול המצבים ולהיסטוריה
"""
import asyncio

import pytest

from guardchat.conversation.models import MessageType
from guardchat.conversation.states import ChatState
from guardchat.core.events import EventBus, EventType
from tests.conftest import drain

SCENARIO_SESSION = "scenario-1"


@pytest.fixture
async def session_id(machine) -> str:
    result = await machine.start_session(user_id="soc-analyst", session_id=SCENARIO_SESSION)
    return result.session_id


@pytest.fixture
def session_events(events: EventBus, session_id: str) -> asyncio.Queue:
    """תור האירועים של השיחה, נפתח אחרי הודעת הפתיחה"""
    return events.subscribe(session_id)


def state_path(queue: asyncio.Queue) -> list[ChatState]:
    """מסלול המצבים מתוך אירועי STATE_CHANGED, כולל מצב ההתחלה"""
    changes = [e for e in drain(queue) if e.type == EventType.STATE_CHANGED]
    if not changes:
        return []
    path = [ChatState(changes[0].data["from_state"])]
    path.extend(ChatState(e.data["to_state"]) for e in changes)
    return path


async def assert_history_types(machine, session_id: str, expected: list[MessageType]) -> None:
    """בדיקת סוגי ההודעות בהיסטוריה, מהישנה לחדשה"""
    history = await machine.get_history(session_id)
    assert [m.type for m in history] == expected
