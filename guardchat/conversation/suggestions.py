"""
Context-Aware Suggestion Engine

A pure function of a ConversationContext: no I/O, no clock, so the same
context always yields the same suggestions.
"""
from typing import Optional

from guardchat.conversation.models import ContextualSuggestion, ConversationContext

# intent -> intents that usually follow it
FOLLOW_UPS: dict[str, list[str]] = {
    "system_status": ["threat_scan", "network_scan"],
    "status_check": ["threat_scan", "network_scan"],
    "threat_scan": ["threat_list", "threat_details", "intel_query"],
    "threat_list": ["threat_details", "behavior_analyze"],
    "threat_details": ["intel_query", "behavior_analyze"],
    "intel_query": ["threat_scan", "behavior_analyze"],
    "behavior_analyze": ["threat_watch", "network_monitor"],
    "network_scan": ["threat_list", "intel_query"],
    "auth_login": ["system_status", "threat_scan"],
    "auth_status": ["auth_login", "system_status"],
    "interactive_start": ["threat_watch", "system_status"],
    "dashboard_open": ["threat_watch", "threat_list"],
}

# intent -> command phrase to offer
INTENT_ACTIONS: dict[str, str] = {
    "system_status": "system status",
    "status_check": "system status",
    "threat_scan": "threat scan",
    "threat_list": "threat list",
    "threat_details": "threat details",
    "threat_watch": "threat watch",
    "intel_query": "intel query",
    "network_scan": "network scan",
    "network_monitor": "network monitor",
    "behavior_analyze": "behavior analyze",
    "auth_login": "auth login",
    "auth_status": "auth status",
}

# intent -> guided workflow worth proposing after it
WORKFLOW_HINTS: dict[str, str] = {
    "threat_scan": "incident_response",
    "threat_details": "incident_response",
    "behavior_analyze": "threat_hunting",
    "network_scan": "vulnerability_assessment",
}

TARGET_ENTITY_TYPES = ("ip_address", "network_range", "domain")

WELCOME_SUGGESTIONS = [
    ContextualSuggestion(
        type="command",
        content="system status",
        reasoning="Get an overview of your security posture",
        confidence=0.9,
        source_intent="system_status",
    ),
    ContextualSuggestion(
        type="command",
        content="scan my network for threats",
        reasoning="Perform a security scan of your network",
        confidence=0.8,
        source_intent="threat_scan",
    ),
    ContextualSuggestion(
        type="help",
        content="help getting started",
        reasoning="Learn about available commands and features",
        confidence=0.7,
        source_intent="help_general",
    ),
]

_TYPE_ORDER = {"workflow": 0, "command": 1, "help": 2, "clarification": 3}


def action_for(intent_type: str) -> str:
    return INTENT_ACTIONS.get(intent_type, intent_type.replace("_", " "))


def classify_error(error: str) -> str:
    message = error.lower()
    if "permission" in message or "unauthorized" in message or "forbidden" in message:
        return "permission"
    if "network" in message or "connection" in message:
        return "network"
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "validation" in message or "invalid" in message:
        return "validation"
    return "general"


def intent_score(window: list[str], intent_type: str, window_size: int) -> float:
    """
    Weight of an intent within the recent window, in [0, 1].

    Grows with how often the intent appears and with how recently it last
    appeared. Non-decreasing in frequency for a fixed recency.
    """
    if intent_type not in window or window_size <= 0:
        return 0.0
    frequency = window.count(intent_type)
    # 0 = newest entry
    recency = len(window) - 1 - max(i for i, value in enumerate(window) if value == intent_type)
    frequency_part = min(frequency, window_size) / window_size
    recency_part = 1.0 - min(recency, window_size) / window_size
    return round(0.3 + 0.5 * frequency_part + 0.2 * recency_part, 4)


class SuggestionEngine:
    """Proposes next actions from recent history"""

    def __init__(
        self,
        window_size: int = 5,
        max_suggestions: int = 3,
        min_confidence: float = 0.3,
    ):
        self.window_size = window_size
        self.max_suggestions = max_suggestions
        self.min_confidence = min_confidence

    def suggest(
        self,
        context: ConversationContext,
        error: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ContextualSuggestion]:
        if not context.session.preferences.suggest_commands:
            return []

        candidates: list[ContextualSuggestion] = []
        candidates.extend(self._workflow_step_suggestions(context))
        if error:
            candidates.extend(self._error_suggestions(context, error))
        if not context.recent_intents and context.current_workflow is None and not error:
            candidates.extend(s.model_copy() for s in WELCOME_SUGGESTIONS)
        candidates.extend(self._follow_up_suggestions(context))
        candidates.extend(self._target_suggestions(context))
        candidates.extend(self._last_command_suggestions(context))
        candidates.extend(self._workflow_hint_suggestions(context))

        return self._rank(candidates, limit or self.max_suggestions)

    def _workflow_step_suggestions(self, context: ConversationContext) -> list[ContextualSuggestion]:
        workflow = context.workflow_data
        if workflow is None or workflow.current is None:
            return []
        step = workflow.current
        return [ContextualSuggestion(
            type="workflow",
            content=step.command or step.name,
            reasoning=(
                f"Step {workflow.current_step + 1} of {workflow.total_steps} "
                f"in {workflow.name}: {step.description}"
            ),
            confidence=0.95,
            follow_up="skip step" if step.command else None,
        )]

    def _follow_up_suggestions(self, context: ConversationContext) -> list[ContextualSuggestion]:
        window = context.recent_intents[-self.window_size:]
        suggestions = []
        for intent_type in dict.fromkeys(reversed(window)):
            score = intent_score(window, intent_type, self.window_size)
            for rank, follow_up in enumerate(FOLLOW_UPS.get(intent_type, [])):
                suggestions.append(ContextualSuggestion(
                    type="command",
                    content=action_for(follow_up),
                    reasoning=f"Commonly follows {action_for(intent_type)}",
                    confidence=round(score * (1.0 - 0.1 * rank), 4),
                    source_intent=intent_type,
                ))
        return suggestions

    def _target_suggestions(self, context: ConversationContext) -> list[ContextualSuggestion]:
        targets = [e for e in context.recent_entities if e.type in TARGET_ENTITY_TYPES]
        if not targets:
            return []
        latest = targets[-1]
        return [ContextualSuggestion(
            type="command",
            content=f"threat scan {latest.value}",
            reasoning=f"Scan the recently mentioned {latest.type.replace('_', ' ')}",
            confidence=0.75,
            source_intent="threat_scan",
        )]

    def _last_command_suggestions(self, context: ConversationContext) -> list[ContextualSuggestion]:
        if not context.recent_commands or "scan" not in context.recent_commands[-1].lower():
            return []
        return [ContextualSuggestion(
            type="command",
            content="threat list",
            reasoning="Review the threats found by the last scan",
            confidence=0.7,
            source_intent="threat_list",
        )]

    def _workflow_hint_suggestions(self, context: ConversationContext) -> list[ContextualSuggestion]:
        if context.current_workflow is not None or not context.recent_intents:
            return []
        latest = context.recent_intents[-1]
        workflow_id = WORKFLOW_HINTS.get(latest)
        if workflow_id is None:
            return []
        score = intent_score(context.recent_intents, latest, self.window_size)
        return [ContextualSuggestion(
            type="workflow",
            content=f"start workflow {workflow_id}",
            reasoning=f"A guided {workflow_id.replace('_', ' ')} usually follows {action_for(latest)}",
            confidence=round(score * 0.7, 4),
            source_intent=latest,
        )]

    def _error_suggestions(self, context: ConversationContext, error: str) -> list[ContextualSuggestion]:
        kind = classify_error(error)
        if kind == "permission":
            return [
                ContextualSuggestion(
                    type="command", content="auth status",
                    reasoning="Verify your login status", confidence=0.9,
                    source_intent="auth_status",
                ),
                ContextualSuggestion(
                    type="help", content="help authentication",
                    reasoning="Learn how to authenticate properly", confidence=0.8,
                ),
            ]
        if kind == "network":
            return [
                ContextualSuggestion(
                    type="command", content="system status",
                    reasoning="Check whether the platform is reachable", confidence=0.85,
                    source_intent="system_status",
                ),
            ]
        if kind == "timeout" and context.recent_commands:
            return [
                ContextualSuggestion(
                    type="command", content=context.recent_commands[-1],
                    reasoning="The last command timed out; try it again", confidence=0.8,
                ),
            ]
        if kind == "validation" and context.recent_intents:
            return [
                ContextualSuggestion(
                    type="help", content=f"help {action_for(context.recent_intents[-1])}",
                    reasoning="Check the expected arguments", confidence=0.8,
                ),
            ]
        return [
            ContextualSuggestion(
                type="help", content="help",
                reasoning="See what commands are available", confidence=0.6,
            ),
        ]

    def _rank(self, candidates: list[ContextualSuggestion], limit: int) -> list[ContextualSuggestion]:
        best: dict[str, ContextualSuggestion] = {}
        for suggestion in candidates:
            if suggestion.confidence < self.min_confidence:
                continue
            key = suggestion.content.lower()
            if key not in best or suggestion.confidence > best[key].confidence:
                best[key] = suggestion

        ranked = sorted(
            best.values(),
            key=lambda s: (-s.confidence, _TYPE_ORDER[s.type], s.content),
        )
        return ranked[:limit]
