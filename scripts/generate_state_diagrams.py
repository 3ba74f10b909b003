"""
Mermaid diagrams generated from the session state machine.

Usage:
    python scripts/generate_state_diagrams.py           # print to stdout
    python scripts/generate_state_diagrams.py --update  # rewrite docs/state_machine.md
    python scripts/generate_state_diagrams.py --check   # fail when the doc is stale (CI)
"""
import argparse
import re
import sys
from pathlib import Path
from typing import Any

# הוספת root לנתיב כדי לאפשר ייבוא
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from guardchat.conversation.confirmation import ConfirmationOutcome
from guardchat.conversation.states import CHAT_TRANSITIONS, INITIAL_STATE, ChatState
from guardchat.conversation.workflow import WORKFLOW_TEMPLATES

DOC_PATH = Path(__file__).resolve().parent.parent / "docs" / "state_machine.md"
START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

CHAT_LABELS: dict[str, str] = {
    ChatState.IDLE.value: "Idle",
    ChatState.PROCESSING.value: "Processing input",
    ChatState.WAITING_CONFIRMATION.value: "Waiting for confirmation",
    ChatState.WAITING_CLARIFICATION.value: "Waiting for clarification",
    ChatState.EXECUTING_COMMAND.value: "Executing command",
    ChatState.ERROR.value: "Error",
}

# תווית האירוע שמפעיל כל מעבר
CHAT_TRANSITION_EVENTS: dict[tuple[ChatState, ChatState], str] = {
    (ChatState.IDLE, ChatState.PROCESSING): "user input",
    (ChatState.PROCESSING, ChatState.EXECUTING_COMMAND): "confident intent",
    (ChatState.PROCESSING, ChatState.WAITING_CONFIRMATION): "destructive command",
    (ChatState.PROCESSING, ChatState.WAITING_CLARIFICATION): "ambiguous or low confidence",
    (ChatState.WAITING_CONFIRMATION, ChatState.EXECUTING_COMMAND): "confirmed",
    (ChatState.WAITING_CONFIRMATION, ChatState.IDLE): "denied, cancelled or expired",
    (ChatState.WAITING_CLARIFICATION, ChatState.PROCESSING): "follow-up input",
    (ChatState.WAITING_CLARIFICATION, ChatState.IDLE): "cancelled",
    (ChatState.EXECUTING_COMMAND, ChatState.IDLE): "success",
    (ChatState.EXECUTING_COMMAND, ChatState.ERROR): "failure",
    (ChatState.ERROR, ChatState.IDLE): "acknowledged",
}


def _sanitize_id(state_value: str) -> str:
    """Mermaid state ids may not contain dots or dashes"""
    return state_value.replace(".", "_").replace("-", "_")


def generate_mermaid_from_transitions(
    transitions: dict[Any, list[Any]],
    labels: dict[str, str],
    initial: Any = None,
    events: dict[tuple[Any, Any], str] | None = None,
) -> str:
    """
    stateDiagram-v2 from a {state: [targets]} transition table.

    Args:
        transitions: transition table
        labels: {state_value: label}
        initial: state the [*] marker points at
        events: optional {(source, target): event label}
    """
    events = events or {}
    lines: list[str] = ["stateDiagram-v2"]

    all_states: set[str] = set()
    for source, targets in transitions.items():
        all_states.add(source.value)
        for target in targets:
            all_states.add(target.value)

    for state_value in sorted(all_states):
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")

    if initial is not None:
        lines.append(f"    [*] --> {_sanitize_id(initial.value)}")
        lines.append("")

    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        for target in targets:
            edge = f"    {source_id} --> {_sanitize_id(target.value)}"
            event = events.get((source, target))
            lines.append(f"{edge} : {event}" if event else edge)

    return "\n".join(lines)


def generate_confirmation_diagram() -> str:
    """Outcomes of a confirmation gate"""
    return f"""stateDiagram-v2
    open : Gate open
    {ConfirmationOutcome.CONFIRMED.value} : Command runs
    {ConfirmationOutcome.DENIED.value} : Command dropped
    {ConfirmationOutcome.EXPIRED.value} : Timed out

    [*] --> open : destructive command
    open --> open : unclear reply (re-prompt)
    open --> {ConfirmationOutcome.CONFIRMED.value} : affirmative reply before expiry
    open --> {ConfirmationOutcome.DENIED.value} : negative reply or cancel
    open --> {ConfirmationOutcome.EXPIRED.value} : no time left
    {ConfirmationOutcome.CONFIRMED.value} --> [*]
    {ConfirmationOutcome.DENIED.value} --> [*]
    {ConfirmationOutcome.EXPIRED.value} --> [*]"""


def generate_workflow_diagram(workflow_id: str) -> str:
    """Linear step diagram of one workflow template"""
    template = WORKFLOW_TEMPLATES[workflow_id]
    lines = ["stateDiagram-v2"]
    for step in template.steps:
        lines.append(f"    {_sanitize_id(step.step_id)} : {step.name}")
    lines.append("")

    ids = [_sanitize_id(step.step_id) for step in template.steps]
    lines.append(f"    [*] --> {ids[0]}")
    for current, following in zip(ids, ids[1:]):
        lines.append(f"    {current} --> {following} : completed or skipped")
    lines.append(f"    {ids[-1]} --> [*]")
    return "\n".join(lines)


def generate_all_diagrams() -> dict[str, str]:
    """{title: mermaid source} for every diagram"""
    diagrams: dict[str, str] = {
        "Session (ChatState)": generate_mermaid_from_transitions(
            CHAT_TRANSITIONS, CHAT_LABELS, initial=INITIAL_STATE, events=CHAT_TRANSITION_EVENTS,
        ),
        "Confirmation gate": generate_confirmation_diagram(),
    }
    for workflow_id, template in WORKFLOW_TEMPLATES.items():
        diagrams[f"Workflow: {template.name} ({workflow_id})"] = generate_workflow_diagram(workflow_id)
    return diagrams


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def _section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n### State machine diagrams\n\n{markdown_content}\n{END_MARKER}"


_SECTION_RE = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)


def update_doc(markdown_content: str, doc_path: Path = DOC_PATH) -> None:
    """Replace the marked section, or append one when the markers are missing"""
    content = doc_path.read_text(encoding="utf-8") if doc_path.exists() else "# Session state machine\n"
    new_section = _section(markdown_content)

    if START_MARKER in content:
        # lambda כדי ש-re לא יפרש backslashes בתוכן
        content = _SECTION_RE.sub(lambda _: new_section, content)
    else:
        content = content.rstrip("\n") + "\n\n" + new_section + "\n"

    doc_path.parent.mkdir(parents=True, exist_ok=True)
    doc_path.write_text(content, encoding="utf-8")
    print(f"Updated: {doc_path}")


def check_doc(markdown_content: str, doc_path: Path = DOC_PATH) -> bool:
    """True when the diagrams in the doc match the code"""
    if not doc_path.exists():
        print(f"Error: {doc_path} does not exist")
        return False

    match = _SECTION_RE.search(doc_path.read_text(encoding="utf-8"))
    if not match:
        print(f"Error: no diagram markers in {doc_path}")
        return False

    if match.group(0) == _section(markdown_content):
        print("Diagrams are in sync with the code")
        return True

    print(f"Error: diagrams in {doc_path} are out of date")
    print("Run: python scripts/generate_state_diagrams.py --update")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate Mermaid diagrams from the session state machine")
    parser.add_argument("--update", action="store_true", help="rewrite docs/state_machine.md")
    parser.add_argument("--check", action="store_true", help="exit 1 when docs/state_machine.md is stale")
    args = parser.parse_args()

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_doc(markdown) else 1)
    elif args.update:
        update_doc(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
