"""
בדיקות לסקריפט יצירת דיאגרמות Mermaid ממכונת המצבים
"""
import sys
from pathlib import Path

import pytest

# הוספת root לנתיב כדי לאפשר ייבוא של scripts
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from guardchat.conversation.states import CHAT_TRANSITIONS, INITIAL_STATE, ChatState
from guardchat.conversation.workflow import WORKFLOW_TEMPLATES
from scripts.generate_state_diagrams import (
    CHAT_LABELS,
    CHAT_TRANSITION_EVENTS,
    END_MARKER,
    START_MARKER,
    _sanitize_id,
    check_doc,
    format_diagrams_as_markdown,
    generate_all_diagrams,
    generate_confirmation_diagram,
    generate_mermaid_from_transitions,
    generate_workflow_diagram,
    update_doc,
)


def _session_diagram() -> str:
    return generate_mermaid_from_transitions(
        CHAT_TRANSITIONS, CHAT_LABELS, initial=INITIAL_STATE, events=CHAT_TRANSITION_EVENTS,
    )


class TestSanitizeId:
    """בדיקות לניקוי מזהי מצבים"""

    @pytest.mark.unit
    def test_plain_value_unchanged(self) -> None:
        assert _sanitize_id("waiting_confirmation") == "waiting_confirmation"

    @pytest.mark.unit
    def test_dots_and_dashes_replaced(self) -> None:
        """נקודות ומקפים מוחלפים בקו תחתון"""
        assert _sanitize_id("step.one-two") == "step_one_two"


class TestSessionDiagram:
    """דיאגרמת מכונת המצבים של שיחה"""

    @pytest.mark.unit
    def test_starts_with_header(self) -> None:
        assert _session_diagram().startswith("stateDiagram-v2")

    @pytest.mark.unit
    def test_every_state_labelled(self) -> None:
        diagram = _session_diagram()
        for state in ChatState:
            assert f"    {state.value} : {CHAT_LABELS[state.value]}" in diagram

    @pytest.mark.unit
    def test_every_transition_drawn(self) -> None:
        """כל מעבר בטבלה מופיע כקשת"""
        diagram = _session_diagram()
        for source, targets in CHAT_TRANSITIONS.items():
            for target in targets:
                assert f"    {source.value} --> {target.value}" in diagram

    @pytest.mark.unit
    def test_initial_marker(self) -> None:
        assert "    [*] --> idle" in _session_diagram()

    @pytest.mark.unit
    def test_event_labels(self) -> None:
        diagram = _session_diagram()
        assert "    processing --> waiting_confirmation : destructive command" in diagram
        assert "    error --> idle : acknowledged" in diagram

    @pytest.mark.unit
    def test_every_event_label_is_a_real_transition(self) -> None:
        for source, target in CHAT_TRANSITION_EVENTS:
            assert target in CHAT_TRANSITIONS[source]

    @pytest.mark.unit
    def test_without_initial_or_events(self) -> None:
        diagram = generate_mermaid_from_transitions(CHAT_TRANSITIONS, CHAT_LABELS)
        assert "[*]" not in diagram
        assert " : user input" not in diagram


class TestOtherDiagrams:
    """דיאגרמות שער האישור ותבניות ה-workflow"""

    @pytest.mark.unit
    def test_confirmation_outcomes(self) -> None:
        diagram = generate_confirmation_diagram()
        assert "open --> confirmed" in diagram
        assert "open --> denied" in diagram
        assert "open --> expired" in diagram

    @pytest.mark.unit
    @pytest.mark.parametrize("workflow_id", sorted(WORKFLOW_TEMPLATES))
    def test_workflow_steps_are_linear(self, workflow_id: str) -> None:
        template = WORKFLOW_TEMPLATES[workflow_id]
        diagram = generate_workflow_diagram(workflow_id)
        ids = [step.step_id for step in template.steps]
        assert f"    [*] --> {ids[0]}" in diagram
        assert f"    {ids[-1]} --> [*]" in diagram
        for current, following in zip(ids, ids[1:]):
            assert f"    {current} --> {following} : completed or skipped" in diagram

    @pytest.mark.unit
    def test_all_diagrams_titles(self) -> None:
        diagrams = generate_all_diagrams()
        assert "Session (ChatState)" in diagrams
        assert "Confirmation gate" in diagrams
        assert len(diagrams) == 2 + len(WORKFLOW_TEMPLATES)


class TestMarkdownAndDoc:
    """פורמט Markdown ועדכון המסמך"""

    @pytest.mark.unit
    def test_markdown_wraps_in_mermaid_blocks(self) -> None:
        markdown = format_diagrams_as_markdown({"One": "stateDiagram-v2", "Two": "stateDiagram-v2"})
        assert markdown.count("```mermaid") == 2
        assert "#### One" in markdown
        assert "#### Two" in markdown

    @pytest.mark.unit
    def test_committed_doc_in_sync(self) -> None:
        """המסמך ב-docs תואם לקוד"""
        markdown = format_diagrams_as_markdown(generate_all_diagrams())
        assert check_doc(markdown) is True

    @pytest.mark.unit
    def test_update_appends_section_when_missing(self, tmp_path: Path) -> None:
        doc = tmp_path / "state_machine.md"
        doc.write_text("# Title\n\nSome prose.\n", encoding="utf-8")

        update_doc("#### X\n", doc_path=doc)

        content = doc.read_text(encoding="utf-8")
        assert content.startswith("# Title\n\nSome prose.\n")
        assert START_MARKER in content
        assert END_MARKER in content
        assert check_doc("#### X\n", doc_path=doc) is True

    @pytest.mark.unit
    def test_update_replaces_existing_section(self, tmp_path: Path) -> None:
        doc = tmp_path / "state_machine.md"
        update_doc("#### Old\n", doc_path=doc)
        update_doc("#### New\n", doc_path=doc)

        content = doc.read_text(encoding="utf-8")
        assert "#### Old" not in content
        assert content.count(START_MARKER) == 1
        assert check_doc("#### New\n", doc_path=doc) is True

    @pytest.mark.unit
    def test_check_detects_stale_doc(self, tmp_path: Path) -> None:
        doc = tmp_path / "state_machine.md"
        update_doc("#### Old\n", doc_path=doc)
        assert check_doc("#### New\n", doc_path=doc) is False

    @pytest.mark.unit
    def test_check_missing_doc(self, tmp_path: Path) -> None:
        assert check_doc("anything", doc_path=tmp_path / "missing.md") is False

    @pytest.mark.unit
    def test_check_doc_without_markers(self, tmp_path: Path) -> None:
        doc = tmp_path / "plain.md"
        doc.write_text("# no markers\n", encoding="utf-8")
        assert check_doc("anything", doc_path=doc) is False
