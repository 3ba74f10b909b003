"""
Access to the session engine wired up at application startup.
"""
from typing import Optional

from fastapi import Request

from guardchat.conversation.collaborators import load_collaborator
from guardchat.conversation.manager import SessionStateMachine
from guardchat.core.config import settings
from guardchat.core.events import EventBus
from guardchat.core.exceptions import CollaboratorNotConfiguredError
from guardchat.core.logging import get_logger
from guardchat.store.base import ContextStore

logger = get_logger(__name__)


def build_session_machine(store: ContextStore, events: EventBus) -> Optional[SessionStateMachine]:
    """
    Load the classifier and executor named in the settings and build the
    engine around them. Returns None when either one is not configured.
    """
    if not settings.INTENT_CLASSIFIER or not settings.COMMAND_EXECUTOR:
        logger.warning(
            "Session engine disabled, collaborators not configured",
            extra_data={
                "intent_classifier": settings.INTENT_CLASSIFIER or None,
                "command_executor": settings.COMMAND_EXECUTOR or None,
            }
        )
        return None

    classifier = load_collaborator(settings.INTENT_CLASSIFIER)
    executor = load_collaborator(settings.COMMAND_EXECUTOR)
    logger.info(
        "Session engine ready",
        extra_data={
            "intent_classifier": settings.INTENT_CLASSIFIER,
            "command_executor": settings.COMMAND_EXECUTOR,
            "store_backend": store.backend_name,
        }
    )
    return SessionStateMachine.from_settings(store, classifier, executor, events=events)


async def get_session_machine(request: Request) -> SessionStateMachine:
    machine = getattr(request.app.state, "session_machine", None)
    if machine is None:
        missing = "INTENT_CLASSIFIER" if not settings.INTENT_CLASSIFIER else "COMMAND_EXECUTOR"
        raise CollaboratorNotConfiguredError(missing)
    return machine


async def get_context_store(request: Request) -> ContextStore:
    """The store works without collaborators, so admin maintenance does too"""
    store = getattr(request.app.state, "context_store", None)
    if store is None:
        machine = await get_session_machine(request)
        store = machine.store
    return store
