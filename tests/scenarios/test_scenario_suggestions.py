"""
תרחיש E - הצעות לפי היסטוריית ה-intents

מכסה:
- intents אחרונים [threat_scan, threat_scan, status_check] בשיחה שנטענת מה-store
- הצעה שמקורה ב-threat_scan מדורגת גבוה יותר מזו של status_check
- כיבוי הצעות בהעדפות השיחה
"""
import pytest

from guardchat.conversation.models import SessionPreferences

RECENT_INTENTS = ["threat_scan", "threat_scan", "status_check"]


def _best_by_intent(suggestions) -> dict[str, float]:
    best: dict[str, float] = {}
    for s in suggestions:
        if s.source_intent:
            best[s.source_intent] = max(best.get(s.source_intent, 0.0), s.confidence)
    return best


@pytest.mark.scenario
class TestSuggestionsFromHistory:
    """תדירות ועדכניות של intents קובעות את סדר ההצעות"""

    @pytest.mark.asyncio
    async def test_frequent_intent_ranks_higher(self, machine, memory_store):
        await memory_store.create_session(user_id="soc-analyst", session_id="scenario-e")
        await memory_store.update_context("scenario-e", recent_intents=RECENT_INTENTS)

        suggestions = await machine.get_suggestions("scenario-e", limit=10)

        best = _best_by_intent(suggestions)
        assert best["threat_scan"] > best["status_check"]
        # ההצעה המובילה היא המשך טבעי של הסריקה
        assert suggestions[0].source_intent == "threat_scan"

    @pytest.mark.asyncio
    async def test_suggestions_off(self, machine, memory_store):
        await memory_store.create_session(
            user_id="quiet-analyst",
            session_id="scenario-quiet",
            preferences=SessionPreferences(suggest_commands=False),
        )
        await memory_store.update_context("scenario-quiet", recent_intents=RECENT_INTENTS)

        assert await machine.get_suggestions("scenario-quiet") == []
