"""
תרחיש A - פקודה ישירה: סריקת רשת בביטחון גבוה

מכסה:
- מסלול idle -> processing -> executing_command -> idle
- שתי הודעות חדשות בהיסטוריה (קלט ותוצאת הרצה)
"""
import pytest

from guardchat.conversation.models import MessageType
from guardchat.conversation.states import ChatState

from tests.scenarios.conftest import assert_history_types, state_path


@pytest.mark.scenario
class TestDirectCommand:
    """קלט לא הרסני בביטחון גבוה רץ מיד"""

    @pytest.mark.asyncio
    async def test_network_scan_runs_immediately(self, machine, executor, session_id, session_events):
        result = await machine.process_input(session_id, "scan network 10.0.0.0/24")

        assert result.state == ChatState.IDLE
        assert state_path(session_events) == [
            ChatState.IDLE,
            ChatState.PROCESSING,
            ChatState.EXECUTING_COMMAND,
            ChatState.IDLE,
        ]
        assert [m.type for m in result.messages] == [
            MessageType.USER_INPUT,
            MessageType.COMMAND_EXECUTION,
        ]
        assert executor.executed == ["network scan 10.0.0.0/24"]
        assert result.execution_result.success is True

    @pytest.mark.asyncio
    async def test_history_holds_welcome_and_the_turn(self, machine, session_id):
        await machine.process_input(session_id, "scan network 10.0.0.0/24")

        await assert_history_types(machine, session_id, [
            MessageType.SYSTEM_MESSAGE,
            MessageType.USER_INPUT,
            MessageType.COMMAND_EXECUTION,
        ])
        snapshot = await machine.snapshot(session_id)
        assert snapshot.pending_confirmation is None
        assert snapshot.context.recent_commands == ["network scan 10.0.0.0/24"]
