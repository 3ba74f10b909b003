"""
Tests for the context-aware suggestion engine
"""
import pytest

from guardchat.conversation.models import (
    ConversationContext,
    Entity,
    SessionPreferences,
    SessionState,
)
from guardchat.conversation.suggestions import (
    WELCOME_SUGGESTIONS,
    SuggestionEngine,
    classify_error,
    intent_score,
)
from guardchat.conversation.workflow import WorkflowOrchestrator


def make_context(**fields) -> ConversationContext:
    preferences = fields.pop("preferences", SessionPreferences())
    return ConversationContext(session=SessionState(preferences=preferences), **fields)


@pytest.fixture
def engine() -> SuggestionEngine:
    return SuggestionEngine(window_size=5, max_suggestions=5)


class TestIntentScore:

    @pytest.mark.unit
    def test_absent_intent_scores_zero(self):
        assert intent_score(["threat_scan"], "system_status", 5) == 0.0

    @pytest.mark.unit
    def test_more_frequent_scores_higher(self):
        once = intent_score(["a", "b", "x"], "x", 5)
        twice = intent_score(["x", "b", "x"], "x", 5)

        assert twice > once

    @pytest.mark.unit
    def test_more_recent_scores_higher(self):
        old = intent_score(["x", "a", "b"], "x", 5)
        new = intent_score(["a", "b", "x"], "x", 5)

        assert new > old

    @pytest.mark.unit
    def test_score_bounded(self):
        assert 0.0 < intent_score(["x"] * 5, "x", 5) <= 1.0


class TestSuggest:

    @pytest.mark.unit
    def test_welcome_suggestions_without_history(self, engine):
        suggestions = engine.suggest(make_context())

        assert [s.content for s in suggestions] == [s.content for s in WELCOME_SUGGESTIONS]

    @pytest.mark.unit
    def test_disabled_by_preference(self, engine):
        context = make_context(
            preferences=SessionPreferences(suggest_commands=False),
            recent_intents=["threat_scan"],
        )

        assert engine.suggest(context) == []

    @pytest.mark.unit
    def test_follow_ups_of_recent_intent(self, engine):
        suggestions = engine.suggest(make_context(recent_intents=["threat_scan"]))
        contents = [s.content for s in suggestions]

        assert "threat list" in contents
        assert all(0.0 <= s.confidence <= 1.0 for s in suggestions)

    @pytest.mark.unit
    def test_frequent_intent_outranks_rare_one(self, engine):
        context = make_context(recent_intents=["threat_scan", "threat_scan", "status_check"])

        suggestions = engine.suggest(context)
        best = {}
        for s in suggestions:
            best[s.source_intent] = max(best.get(s.source_intent, 0.0), s.confidence)

        assert best["threat_scan"] > best["status_check"]

    @pytest.mark.unit
    def test_target_entity_suggestion(self, engine):
        context = make_context(
            recent_intents=["system_status"],
            recent_entities=[Entity(type="ip_address", value="10.0.0.5")],
        )

        contents = [s.content for s in engine.suggest(context)]

        assert "threat scan 10.0.0.5" in contents

    @pytest.mark.unit
    def test_workflow_hint(self, engine):
        context = make_context(recent_intents=["network_scan"])

        contents = [s.content for s in engine.suggest(context)]

        assert "start workflow vulnerability_assessment" in contents

    @pytest.mark.unit
    def test_active_workflow_step_first(self, engine):
        context = make_context(recent_intents=["threat_scan"])
        WorkflowOrchestrator().start(context, "incident_response")

        suggestions = engine.suggest(context)

        assert suggestions[0].type == "workflow"
        assert suggestions[0].content == "threat scan --comprehensive"
        assert "Step 1 of 6" in suggestions[0].reasoning

    @pytest.mark.unit
    def test_limit_and_no_duplicates(self, engine):
        context = make_context(recent_intents=["threat_scan", "threat_list", "threat_details"])

        suggestions = engine.suggest(context, limit=2)
        all_suggestions = engine.suggest(context, limit=10)
        contents = [s.content.lower() for s in all_suggestions]

        assert len(suggestions) == 2
        assert len(contents) == len(set(contents))

    @pytest.mark.unit
    def test_ranked_by_confidence(self, engine):
        context = make_context(recent_intents=["threat_scan", "behavior_analyze"])

        confidences = [s.confidence for s in engine.suggest(context, limit=10)]

        assert confidences == sorted(confidences, reverse=True)

    @pytest.mark.unit
    def test_deterministic(self, engine):
        context = make_context(recent_intents=["threat_scan", "network_scan"], recent_commands=["threat scan"])

        assert engine.suggest(context) == engine.suggest(context)


class TestErrorSuggestions:

    @pytest.mark.unit
    @pytest.mark.parametrize("message,kind", [
        ("Permission denied", "permission"),
        ("403 Forbidden", "permission"),
        ("Connection refused", "network"),
        ("Command timed out after 30s", "timeout"),
        ("invalid target", "validation"),
        ("segfault", "general"),
    ])
    def test_classify_error(self, message, kind):
        assert classify_error(message) == kind

    @pytest.mark.unit
    def test_permission_error_suggests_auth_status(self, engine):
        suggestions = engine.suggest(make_context(recent_intents=["threat_scan"]), error="permission denied")

        assert suggestions[0].content == "auth status"

    @pytest.mark.unit
    def test_timeout_suggests_retry_of_last_command(self, engine):
        context = make_context(recent_intents=["threat_scan"], recent_commands=["threat scan --comprehensive"])

        contents = [s.content for s in engine.suggest(context, error="timed out")]

        assert "threat scan --comprehensive" in contents

    @pytest.mark.unit
    def test_no_welcome_on_error(self, engine):
        contents = [s.content for s in engine.suggest(make_context(), error="segfault")]

        assert "help" in contents
        assert "help getting started" not in contents
