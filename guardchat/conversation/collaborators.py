"""
Interfaces of the collaborators the session engine drives but does not own.

Classification of text into intents and execution of commands against the
security platform live elsewhere; the engine only sees these protocols.
"""
from importlib import import_module
from typing import Any, Protocol, runtime_checkable

from guardchat.conversation.models import (
    ConversationContext,
    ExecutionResult,
    Intent,
    ParsedCommand,
)


@runtime_checkable
class IntentClassifier(Protocol):
    async def classify(self, text: str, context: ConversationContext) -> Intent:
        ...


@runtime_checkable
class CommandExecutor(Protocol):
    async def parse(self, intent: Intent, context: ConversationContext) -> ParsedCommand:
        ...

    async def execute(self, command: ParsedCommand) -> ExecutionResult:
        ...


def load_collaborator(path: str) -> Any:
    """
    Resolve a "package.module:attribute" reference.

    A class or zero-argument factory is called; any other attribute is
    returned as-is.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")
    target = getattr(import_module(module_name), attribute)
    return target() if callable(target) else target
