"""
Session State Machine - drives one conversation from raw input to an
executed (or refused) command.

Every public coroutine takes the session's lock, so a session handles one
event at a time and a second input waits for the first to finish. The
chat state and the pending confirmation are always written together: a
session is in `waiting_confirmation` exactly when it holds a pending
confirmation.

When the Context Store is unreachable the session keeps running on its
in-memory context, marked degraded, and every turn carries a soft warning.
"""
import asyncio
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Optional

from guardchat.conversation.collaborators import CommandExecutor, IntentClassifier
from guardchat.conversation.confirmation import (
    AFFIRMATIVE_REPLIES,
    NEGATIVE_REPLIES,
    ConfirmationManager,
    ConfirmationOutcome,
    normalize_reply,
)
from guardchat.conversation.models import (
    ClarificationRequest,
    ContextSummary,
    ContextualSuggestion,
    ConversationContext,
    Entity,
    ExecutionResult,
    Intent,
    Message,
    MessageDraft,
    MessageType,
    ParsedCommand,
    PendingConfirmation,
    PendingConfirmationView,
    SessionPreferences,
    SessionSnapshot,
    SessionState,
    TurnResult,
    WorkflowProgress,
    WorkflowState,
    next_timestamp,
)
from guardchat.conversation.states import INITIAL_STATE, ChatState, is_valid_transition
from guardchat.conversation.suggestions import SuggestionEngine
from guardchat.conversation.workflow import WorkflowOrchestrator, WorkflowTemplate
from guardchat.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from guardchat.core.events import EventBus, EventType
from guardchat.core.exceptions import (
    AppException,
    CircuitBreakerOpenError,
    ErrorCode,
    InvalidStateError,
    InvalidStateTransitionError,
    NoPendingConfirmationError,
    SessionInactiveError,
    SessionNotFoundError,
    StorageUnavailableError,
    ValidationException,
)
from guardchat.core.logging import bind_session_id, get_logger, log_async_operation, set_correlation_id
from guardchat.store.base import ContextStore

logger = get_logger(__name__)

WELCOME_MESSAGE = (
    "Welcome to GuardChat. Describe what you want to do in plain language, "
    "for example \"scan my network for threats\"."
)
STORAGE_WARNING = "Context storage is unavailable; this session is not being saved."

# errors the store raises on writes that the engine survives by going ephemeral
_STORE_WRITE_ERRORS = (StorageUnavailableError, SessionNotFoundError)


@dataclass
class ChatSession:
    """Live runtime state of one conversation"""

    context: ConversationContext
    state: ChatState = INITIAL_STATE
    clarification: Optional[ClarificationRequest] = None
    last_suggestions: list[ContextualSuggestion] = field(default_factory=list)
    degraded: bool = False
    last_sequence: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # הודעות שנוספו בתור הנוכחי
    outbox: list[Message] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.context.session.session_id

    @property
    def user_id(self) -> Optional[str]:
        return self.context.session.user_id

    @property
    def pending_confirmation(self) -> Optional[PendingConfirmation]:
        return self.context.session.pending_confirmation


class SessionStateMachine:
    """
    Owns the authoritative state of every live session.

    Collaborators are injected; nothing here is a process-wide singleton.
    """

    def __init__(
        self,
        store: ContextStore,
        classifier: IntentClassifier,
        executor: CommandExecutor,
        confirmations: Optional[ConfirmationManager] = None,
        orchestrator: Optional[WorkflowOrchestrator] = None,
        suggestions: Optional[SuggestionEngine] = None,
        events: Optional[EventBus] = None,
        executor_breaker: Optional[CircuitBreaker] = None,
        confidence_threshold: float = 0.6,
        window_size: int = 5,
        command_timeout_seconds: Optional[float] = 30.0,
        max_active_sessions: int = 100,
    ):
        self.store = store
        self.classifier = classifier
        self.executor = executor
        self.events = events or EventBus()
        self.confirmations = confirmations or ConfirmationManager()
        self.orchestrator = orchestrator or WorkflowOrchestrator(store=store, events=self.events)
        self.suggestions = suggestions or SuggestionEngine(window_size=window_size)
        self.executor_breaker = executor_breaker or CircuitBreaker("command_executor")
        self.confidence_threshold = confidence_threshold
        self.window_size = window_size
        self.command_timeout_seconds = command_timeout_seconds
        self.max_active_sessions = max_active_sessions
        self._sessions: OrderedDict[str, ChatSession] = OrderedDict()

    @classmethod
    def from_settings(
        cls,
        store: ContextStore,
        classifier: IntentClassifier,
        executor: CommandExecutor,
        config=None,
        events: Optional[EventBus] = None,
    ) -> "SessionStateMachine":
        if config is None:
            from guardchat.core.config import settings as config

        events = events or EventBus()
        return cls(
            store=store,
            classifier=classifier,
            executor=executor,
            confirmations=ConfirmationManager(default_timeout_ms=config.CONFIRMATION_TIMEOUT_MS),
            orchestrator=WorkflowOrchestrator(store=store, events=events),
            suggestions=SuggestionEngine(
                window_size=config.RECENT_WINDOW_SIZE,
                max_suggestions=config.MAX_SUGGESTIONS,
            ),
            events=events,
            executor_breaker=CircuitBreaker(
                "command_executor",
                CircuitBreakerConfig(
                    failure_threshold=config.EXECUTOR_FAILURE_THRESHOLD,
                    timeout_seconds=config.EXECUTOR_RECOVERY_SECONDS,
                ),
            ),
            confidence_threshold=config.CONFIDENCE_THRESHOLD,
            window_size=config.RECENT_WINDOW_SIZE,
            command_timeout_seconds=config.COMMAND_TIMEOUT_SECONDS,
            max_active_sessions=config.MAX_ACTIVE_SESSIONS,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        preferences: Optional[SessionPreferences] = None,
    ) -> TurnResult:
        """Create a session, greet the user and offer first suggestions"""
        if session_id and (session_id in self._sessions or await self.store.get_session(session_id)):
            raise AppException(
                f"Session already exists: {session_id}",
                error_code=ErrorCode.ALREADY_EXISTS,
                status_code=409,
                details={"session_id": session_id},
            )

        degraded = False
        try:
            session = await self.store.create_session(user_id, session_id, preferences)
        except StorageUnavailableError:
            fields: dict[str, Any] = {"user_id": user_id}
            if session_id:
                fields["session_id"] = session_id
            if preferences:
                fields["preferences"] = preferences
            session = SessionState(**fields)
            degraded = True

        chat = ChatSession(context=ConversationContext(session=session))
        self._register(chat)
        bind_session_id(chat.session_id)
        if degraded:
            self._degrade(chat, "create_session")

        logger.info(
            "Session started",
            extra_data={"session_id": chat.session_id, "user_id": user_id, "degraded": degraded}
        )

        async with chat.lock:
            chat.outbox = []
            await self._append(chat, MessageDraft(type=MessageType.SYSTEM_MESSAGE, content=WELCOME_MESSAGE))
            return await self._finish_turn(chat)

    async def get_or_resume_session(self, session_id: str, create_missing: bool = False) -> ChatSession:
        """
        Return the live session, rehydrating it from the store if needed.

        With `create_missing` an id the store does not know is opened on
        first contact instead of raising SessionNotFoundError.
        """
        chat = self._sessions.get(session_id)
        if chat is not None:
            self._sessions.move_to_end(session_id)
            return chat

        context = await self.store.get_context(session_id, self.store.max_messages_per_session)
        if context is None:
            if create_missing:
                return await self._open_on_first_contact(session_id)
            raise SessionNotFoundError(session_id)
        if session_id in self._sessions:
            # resumed concurrently while we were loading
            return self._sessions[session_id]
        if not context.session.is_active:
            raise SessionInactiveError(session_id)

        # מצב השיחה עצמו לא נשמר; אישור פתוח מחזיר את השער, אחרת idle
        state = ChatState.WAITING_CONFIRMATION if context.session.pending_confirmation else INITIAL_STATE
        chat = ChatSession(
            context=context,
            state=state,
            last_sequence=context.messages[-1].sequence if context.messages else 0,
        )
        chat.last_suggestions = self.suggestions.suggest(chat.context)
        self._register(chat)

        logger.info(
            "Session resumed from store",
            extra_data={"session_id": session_id, "state": state.value, "messages": len(context.messages)}
        )
        return chat

    async def _open_on_first_contact(self, session_id: str) -> ChatSession:
        # קריאה שהחזירה None יכולה להיות גם store שלא זמין
        if session_id in self._sessions:
            return self._sessions[session_id]
        degraded = False
        try:
            session = await self.store.create_session(session_id=session_id)
        except _STORE_WRITE_ERRORS:
            session = SessionState(session_id=session_id)
            degraded = True

        if session_id in self._sessions:
            return self._sessions[session_id]
        chat = ChatSession(context=ConversationContext(session=session))
        self._register(chat)
        if degraded:
            self._degrade(chat, "get_context")

        logger.info(
            "Session opened on first input",
            extra_data={"session_id": session_id, "degraded": degraded}
        )
        return chat

    async def end_session(self, session_id: str) -> TurnResult:
        """Close open gates, drop the active workflow and deactivate the session"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)

            if chat.state in (ChatState.WAITING_CONFIRMATION, ChatState.WAITING_CLARIFICATION, ChatState.ERROR):
                await self._transition(chat, ChatState.IDLE, reason="session_ended")
            if chat.context.current_workflow is not None:
                self.orchestrator.abandon(chat.context)

            chat.context.session = chat.context.session.model_copy(update={"is_active": False})
            await self._append(chat, MessageDraft(type=MessageType.SYSTEM_MESSAGE, content="Session ended."))
            result = await self._finish_turn(chat, suggest=False)

        self._sessions.pop(session_id, None)
        self.events.publish(EventType.SESSION_ENDED, session_id)
        logger.info("Session ended", extra_data={"session_id": session_id})
        return result

    async def delete_session(self, session_id: str) -> bool:
        """Forget the session entirely, live and persisted"""
        was_live = self._sessions.pop(session_id, None) is not None
        deleted = await self.store.delete_session(session_id)
        if not (was_live or deleted):
            raise SessionNotFoundError(session_id)
        logger.info("Session deleted", extra_data={"session_id": session_id})
        return True

    async def list_sessions(self, active_only: bool = False) -> list[SessionState]:
        stored = await self.store.list_sessions(active_only=active_only)
        known = {s.session_id for s in stored}
        # סשנים שרצים במצב degraded לא מופיעים ב-store
        live = [chat.context.session for chat in self._sessions.values() if chat.session_id not in known]
        return sorted([*stored, *live], key=lambda s: s.last_activity, reverse=True)

    async def clear_history(self, session_id: str) -> int:
        """Drop the message history and the rolling windows; workflow state is kept"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            cleared = len(chat.context.messages)
            if not chat.degraded:
                try:
                    cleared = await self.store.clear_messages(session_id)
                except StorageUnavailableError:
                    self._degrade(chat, "clear_messages")

            chat.context.messages = []
            chat.context.recent_intents = []
            chat.context.recent_entities = []
            chat.context.recent_commands = []
            await self._finish_turn(chat)

        logger.info("Session history cleared", extra_data={"session_id": session_id, "cleared": cleared})
        return cleared

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    @log_async_operation("process_input")
    async def process_input(
        self,
        session_id: str,
        text: str,
        correlation_id: Optional[str] = None,
    ) -> TurnResult:
        """Handle one piece of user text end to end"""
        text = (text or "").strip()
        if not text:
            raise ValidationException("Input must not be empty", field="text")

        chat = await self.get_or_resume_session(session_id, create_missing=True)
        async with chat.lock:
            set_correlation_id(correlation_id)
            bind_session_id(session_id)
            self._begin_turn(chat)

            try:
                return await self._handle_input(chat, text)
            except AppException as e:
                await self._fail(chat, e)
                raise
            except Exception as e:
                logger.error(
                    "Unhandled fault while processing input",
                    extra_data={"session_id": session_id, "state": chat.state.value, "error": str(e)},
                    exc_info=True
                )
                await self._fail(chat, e)
                await self._append(chat, MessageDraft(
                    type=MessageType.ERROR_MESSAGE,
                    content=f"Internal error: {e}",
                ))
                return await self._finish_turn(chat)

    async def _handle_input(self, chat: ChatSession, text: str) -> TurnResult:
        if chat.state == ChatState.ERROR:
            # קלט חדש אחרי שגיאה נחשב כאישור קבלה שלה
            await self._transition(chat, ChatState.IDLE, reason="auto_acknowledged")

        expired = await self._expire_if_due(chat)
        if expired and normalize_reply(text) in AFFIRMATIVE_REPLIES | NEGATIVE_REPLIES:
            # a late yes/no only answers the gate that already closed
            await self._append(chat, MessageDraft(
                type=MessageType.USER_INPUT,
                content=text,
                metadata={"late_reply": True},
            ))
            return await self._finish_turn(chat)

        if chat.state == ChatState.WAITING_CONFIRMATION:
            return await self._handle_confirmation_reply(chat, text)

        if chat.state not in (ChatState.IDLE, ChatState.WAITING_CLARIFICATION):
            raise InvalidStateError("process input", chat.state.value, chat.session_id)

        clarification = chat.clarification
        user_message = await self._append(chat, MessageDraft(
            type=MessageType.USER_INPUT,
            content=text,
            reply_to=clarification.message_id if clarification else None,
        ))
        await self._transition(chat, ChatState.PROCESSING, reason="user_input")
        return await self._process(chat, text, user_message, clarification)

    async def _process(
        self,
        chat: ChatSession,
        text: str,
        user_message: Message,
        clarification: Optional[ClarificationRequest],
    ) -> TurnResult:
        try:
            intent = await self.classifier.classify(text, chat.context)
        except Exception as e:
            logger.warning(
                "Intent classification failed",
                extra_data={"session_id": chat.session_id, "error": str(e)}
            )
            return await self._request_clarification(
                chat, text, None, "I couldn't understand that. Could you rephrase it?"
            )

        if clarification is not None and clarification.intent is not None:
            intent = intent.model_copy(update={
                "entities": _merge_entities(clarification.intent.entities, intent.entities),
            })
        self._record_intent(chat, intent)

        if intent.ambiguous or intent.confidence < self.confidence_threshold:
            return await self._request_clarification(chat, text, intent, _clarification_prompt(intent))

        try:
            command = await self.executor.parse(intent, chat.context)
        except Exception as e:
            logger.warning(
                "Command parsing failed",
                extra_data={"session_id": chat.session_id, "intent": intent.type, "error": str(e)}
            )
            return await self._request_clarification(
                chat, text, intent, f"I couldn't turn that into a command ({e}). Could you add more detail?"
            )

        preferences = chat.context.session.preferences
        if command.destructive and preferences.confirm_destructive:
            return await self._request_confirmation(chat, command, user_message)

        await self._transition(
            chat, ChatState.EXECUTING_COMMAND, reason="confident_intent", command=command.command
        )
        return await self._execute(chat, command, user_message)

    async def _request_clarification(
        self,
        chat: ChatSession,
        text: str,
        intent: Optional[Intent],
        prompt: str,
    ) -> TurnResult:
        await self._transition(chat, ChatState.WAITING_CLARIFICATION, reason="needs_clarification")
        message = await self._append(chat, MessageDraft(
            type=MessageType.ASSISTANT_RESPONSE,
            content=prompt,
            intent=intent,
            metadata={"kind": "clarification"},
        ))
        chat.clarification = ClarificationRequest(
            prompt=prompt,
            original_input=text,
            intent=intent,
            alternatives=list(intent.alternatives) if intent else [],
            message_id=message.id,
        )
        self.events.publish(
            EventType.CLARIFICATION_REQUESTED, chat.session_id,
            prompt=prompt, alternatives=chat.clarification.alternatives,
        )
        return await self._finish_turn(chat)

    async def _request_confirmation(
        self,
        chat: ChatSession,
        command: ParsedCommand,
        user_message: Message,
    ) -> TurnResult:
        pending = self.confirmations.create(
            command,
            existing=chat.pending_confirmation,
            session_id=chat.session_id,
        )
        await self._transition(
            chat, ChatState.WAITING_CONFIRMATION, pending=pending, reason="destructive_command"
        )
        await self._append(chat, MessageDraft(
            type=MessageType.CONFIRMATION_REQUEST,
            content=pending.prompt,
            command=command,
            reply_to=user_message.id,
            metadata={"confirmation_id": pending.id, "timeout_ms": pending.timeout_ms},
        ))
        self.events.publish(
            EventType.CONFIRMATION_REQUESTED, chat.session_id,
            confirmation_id=pending.id, command=command.command, timeout_ms=pending.timeout_ms,
        )
        return await self._finish_turn(chat)

    async def _handle_confirmation_reply(self, chat: ChatSession, response: str) -> TurnResult:
        pending = chat.pending_confirmation
        reply = await self._append(chat, MessageDraft(
            type=MessageType.USER_INPUT,
            content=response,
            metadata={"confirmation_id": pending.id},
        ))

        outcome = self.confirmations.resolve(pending, response)
        if outcome == ConfirmationOutcome.CONFIRMED:
            await self._transition(chat, ChatState.EXECUTING_COMMAND, reason="confirmed")
            self._publish_resolution(chat, pending, outcome)
            return await self._execute(chat, pending.command, reply)

        if outcome == ConfirmationOutcome.UNCLEAR:
            remaining_seconds = max(self.confirmations.remaining_ms(pending), 0) // 1000
            await self._append(chat, MessageDraft(
                type=MessageType.CONFIRMATION_REQUEST,
                content=f"Please answer yes or no ({remaining_seconds}s left). {pending.prompt}",
                command=pending.command,
                reply_to=reply.id,
                metadata={"confirmation_id": pending.id, "reprompt": True},
            ))
            return await self._finish_turn(chat)

        # DENIED, או EXPIRED אם השעון עבר בין הבדיקות
        await self._close_confirmation(chat, outcome)
        return await self._finish_turn(chat)

    async def resolve_confirmation(self, session_id: str, response: str) -> TurnResult:
        """Answer the open confirmation gate explicitly"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            bind_session_id(session_id)
            self._begin_turn(chat)
            if await self._expire_if_due(chat):
                # confirming after the deadline is reported as the expiry
                return await self._finish_turn(chat)
            if chat.state != ChatState.WAITING_CONFIRMATION:
                raise NoPendingConfirmationError(session_id)
            return await self._handle_confirmation_reply(chat, response)

    async def confirm(self, session_id: str) -> TurnResult:
        return await self.resolve_confirmation(session_id, "yes")

    async def deny(self, session_id: str) -> TurnResult:
        return await self.resolve_confirmation(session_id, "no")

    async def cancel(self, session_id: str) -> TurnResult:
        """Cancel whatever the session is waiting on; same outcome as expiry"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            if chat.state == ChatState.WAITING_CONFIRMATION:
                await self._close_confirmation(chat, ConfirmationOutcome.DENIED, cancelled=True)
            elif chat.state == ChatState.WAITING_CLARIFICATION:
                await self._transition(chat, ChatState.IDLE, reason="cancelled")
                await self._append(chat, MessageDraft(
                    type=MessageType.SYSTEM_MESSAGE, content="Clarification cancelled.",
                ))
            else:
                raise InvalidStateError("cancel", chat.state.value, session_id)
            return await self._finish_turn(chat)

    async def acknowledge(self, session_id: str) -> TurnResult:
        """Leave the error state"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            if chat.state != ChatState.ERROR:
                raise InvalidStateError("acknowledge", chat.state.value, session_id)
            await self._transition(chat, ChatState.IDLE, reason="acknowledged")
            return await self._finish_turn(chat)

    async def sweep_expired_confirmations(self) -> int:
        """Expire every overdue confirmation gate among live sessions"""
        expired = 0
        for chat in list(self._sessions.values()):
            if chat.state != ChatState.WAITING_CONFIRMATION:
                continue
            async with chat.lock:
                self._begin_turn(chat)
                if await self._expire_if_due(chat):
                    expired += 1
                    await self._finish_turn(chat)
        if expired:
            logger.info("Expired confirmations swept", extra_data={"expired": expired})
        return expired

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, chat: ChatSession, command: ParsedCommand, trigger: Message) -> TurnResult:
        started = time.monotonic()
        try:
            result = await self.executor_breaker.execute(
                self.executor.execute, command, timeout_seconds=self.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            result = ExecutionResult(
                success=False,
                error=f"Command timed out after {self.command_timeout_seconds}s",
            )
        except CircuitBreakerOpenError as e:
            result = ExecutionResult(success=False, error=e.message)
        except Exception as e:
            result = ExecutionResult(success=False, error=str(e) or type(e).__name__)

        elapsed_ms = round((time.monotonic() - started) * 1000, 2)
        if not result.execution_time_ms:
            result = result.model_copy(update={"execution_time_ms": elapsed_ms})

        context = chat.context
        context.record_command(command.command, self.window_size)

        if result.success:
            context.record_response_time(result.execution_time_ms)
            await self._append(chat, MessageDraft(
                type=MessageType.COMMAND_EXECUTION,
                content=result.output or f"Executed: {command.command}",
                command=command,
                execution_result=result,
                reply_to=trigger.id,
            ))
            if self.orchestrator.matches_current_step(context, command.command):
                self.orchestrator.advance(context, {"command": command.command, "output": result.output})
            logger.info(
                "Command executed",
                extra_data={
                    "session_id": chat.session_id,
                    "command": command.command,
                    "execution_time_ms": result.execution_time_ms,
                }
            )
            await self._transition(chat, ChatState.IDLE, reason="command_succeeded")
            return await self._finish_turn(chat, execution_result=result)

        context.last_error = result.error or "Command failed"
        context.error_count += 1
        await self._append(chat, MessageDraft(
            type=MessageType.ERROR_MESSAGE,
            content=context.last_error,
            command=command,
            execution_result=result,
            reply_to=trigger.id,
        ))
        logger.warning(
            "Command execution failed",
            extra_data={
                "session_id": chat.session_id,
                "command": command.command,
                "error": context.last_error,
                "error_count": context.error_count,
            }
        )
        await self._transition(chat, ChatState.ERROR, reason="command_failed")
        return await self._finish_turn(chat, execution_result=result)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def list_workflows(self) -> list[WorkflowTemplate]:
        return self.orchestrator.list_templates()

    async def start_workflow(
        self,
        session_id: str,
        template_id: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            workflow = self.orchestrator.start(chat.context, template_id, variables)
            first = workflow.current
            await self._append(chat, MessageDraft(
                type=MessageType.SYSTEM_MESSAGE,
                content=(
                    f"Started {workflow.name}. Step 1 of {workflow.total_steps}: "
                    f"{first.name}" + (f" (run: {first.command})" if first.command else "")
                ),
                metadata={"workflow_id": workflow.workflow_id},
            ))
            await self._finish_turn(chat)
            return workflow

    async def advance_workflow(
        self,
        session_id: str,
        result: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            workflow = self.orchestrator.advance(chat.context, result)
            await self._finish_turn(chat)
            return workflow

    async def skip_workflow_step(self, session_id: str) -> WorkflowState:
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            workflow = self.orchestrator.skip(chat.context)
            await self._finish_turn(chat)
            return workflow

    async def abandon_workflow(self, session_id: str) -> WorkflowState:
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            workflow = self.orchestrator.abandon(chat.context)
            await self._append(chat, MessageDraft(
                type=MessageType.SYSTEM_MESSAGE,
                content=f"Abandoned {workflow.name}.",
                metadata={"workflow_id": workflow.workflow_id},
            ))
            await self._finish_turn(chat)
            return workflow

    async def get_workflow(self, session_id: str) -> Optional[WorkflowState]:
        chat = await self.get_or_resume_session(session_id)
        return chat.context.workflow_data

    async def workflow_progress(self, session_id: str) -> Optional[WorkflowProgress]:
        chat = await self.get_or_resume_session(session_id)
        return self.orchestrator.progress(chat.context)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def snapshot(self, session_id: str) -> SessionSnapshot:
        """State, pending confirmation and context summary for the renderer"""
        chat = await self.get_or_resume_session(session_id)
        async with chat.lock:
            self._begin_turn(chat)
            if await self._expire_if_due(chat):
                await self._finish_turn(chat)
            return self._build_snapshot(chat)

    async def get_suggestions(self, session_id: str, limit: Optional[int] = None) -> list[ContextualSuggestion]:
        chat = await self.get_or_resume_session(session_id)
        return self._suggest(chat, limit)

    async def get_history(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        chat = await self.get_or_resume_session(session_id)
        if not chat.degraded:
            messages = await self.store.get_messages(session_id, limit)
            if messages:
                return messages
        local = chat.context.messages
        if limit is not None:
            return list(local[-limit:]) if limit > 0 else []
        return list(local)

    async def get_statistics(self) -> dict[str, Any]:
        live = list(self._sessions.values())
        return {
            "active_sessions": len(live),
            "max_active_sessions": self.max_active_sessions,
            "degraded_sessions": sum(1 for chat in live if chat.degraded),
            "states": dict(Counter(chat.state.value for chat in live)),
            "total_interactions": sum(chat.context.total_interactions for chat in live),
            "total_errors": sum(chat.context.error_count for chat in live),
            "active_workflows": sum(1 for chat in live if chat.context.current_workflow),
            "event_subscribers": self.events.subscriber_count,
            "executor_circuit": self.executor_breaker.status(),
            "store": await self.store.get_statistics(),
        }

    def _build_snapshot(self, chat: ChatSession) -> SessionSnapshot:
        context = chat.context
        pending = chat.pending_confirmation
        return SessionSnapshot(
            session_id=chat.session_id,
            user_id=chat.user_id,
            state=chat.state,
            pending_confirmation=PendingConfirmationView(
                prompt=pending.prompt,
                command=pending.command.command,
                timeout_ms=pending.timeout_ms,
                remaining_ms=max(self.confirmations.remaining_ms(pending), 0),
            ) if pending else None,
            clarification_prompt=chat.clarification.prompt if chat.clarification else None,
            context=ContextSummary(
                recent_intents=list(context.recent_intents),
                recent_entities=list(context.recent_entities),
                recent_commands=list(context.recent_commands),
                current_workflow=context.current_workflow,
                workflow_step=context.workflow_step,
                workflow_progress=self.orchestrator.progress(context),
                last_error=context.last_error,
                error_count=context.error_count,
                total_interactions=context.total_interactions,
                average_response_time=round(context.average_response_time, 2),
                message_count=len(context.messages),
            ),
            suggestions=list(chat.last_suggestions),
            degraded=chat.degraded,
            last_activity=context.session.last_activity,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register(self, chat: ChatSession) -> None:
        while len(self._sessions) >= self.max_active_sessions:
            # a degraded session lives only here; evicting it loses it
            victim = next(
                (
                    sid for sid, live in self._sessions.items()
                    if not live.lock.locked() and not live.degraded
                ),
                None,
            )
            if victim is None:
                break
            evicted = self._sessions.pop(victim)
            logger.info(
                "Evicted least recently used live session",
                extra_data={
                    "session_id": victim,
                    "degraded": evicted.degraded,
                    "max_active_sessions": self.max_active_sessions,
                }
            )
        self._sessions[chat.session_id] = chat

    @staticmethod
    def _begin_turn(chat: ChatSession) -> None:
        chat.outbox = []

    async def _transition(
        self,
        chat: ChatSession,
        target: ChatState,
        pending: Optional[PendingConfirmation] = None,
        reason: Optional[str] = None,
        command: Optional[str] = None,
    ) -> None:
        """
        Move the session to `target`, updating state and pending
        confirmation together. The pending confirmation is required for
        `waiting_confirmation` and cleared for every other state.
        """
        current = chat.state
        if not is_valid_transition(current, target):
            logger.warning(
                "Invalid state transition attempted",
                extra_data={
                    "session_id": chat.session_id,
                    "current_state": current.value,
                    "target_state": target.value,
                }
            )
            raise InvalidStateTransitionError(current.value, target.value, chat.session_id)
        if target == ChatState.WAITING_CONFIRMATION and pending is None:
            raise InvalidStateTransitionError(current.value, target.value, chat.session_id)

        pending = pending if target == ChatState.WAITING_CONFIRMATION else None
        active_command = pending.command.command if pending else None
        if target == ChatState.EXECUTING_COMMAND:
            active_command = command or (
                chat.pending_confirmation.command.command if chat.pending_confirmation else None
            )

        chat.context.session = chat.context.session.model_copy(update={
            "pending_confirmation": pending,
            "active_command": active_command,
        })
        chat.state = target
        if target != ChatState.WAITING_CLARIFICATION:
            chat.clarification = None

        logger.info(
            "State transition",
            extra_data={
                "session_id": chat.session_id,
                "from_state": current.value,
                "to_state": target.value,
                "reason": reason,
            }
        )
        self.events.publish(
            EventType.STATE_CHANGED, chat.session_id,
            from_state=current.value, to_state=target.value, reason=reason,
        )
        await self._persist_session(chat, "pending_confirmation", "active_command")

    async def _fail(self, chat: ChatSession, error: Exception) -> None:
        """Any state -> error after an internal fault"""
        chat.context.last_error = str(error) or type(error).__name__
        chat.context.error_count += 1
        if chat.state == ChatState.ERROR:
            return
        previous = chat.state
        chat.context.session = chat.context.session.model_copy(update={
            "pending_confirmation": None,
            "active_command": None,
        })
        chat.state = ChatState.ERROR
        chat.clarification = None
        logger.error(
            "Session moved to error state",
            extra_data={"session_id": chat.session_id, "from_state": previous.value, "error": str(error)}
        )
        self.events.publish(
            EventType.STATE_CHANGED, chat.session_id,
            from_state=previous.value, to_state=ChatState.ERROR.value, reason="internal_fault",
        )
        await self._persist_session(chat, "pending_confirmation", "active_command")
        await self._persist_context(chat)

    async def _expire_if_due(self, chat: ChatSession) -> bool:
        pending = chat.pending_confirmation
        if chat.state != ChatState.WAITING_CONFIRMATION or pending is None:
            return False
        if self.confirmations.resolve(pending) != ConfirmationOutcome.EXPIRED:
            return False
        await self._close_confirmation(chat, ConfirmationOutcome.EXPIRED)
        return True

    async def _close_confirmation(
        self,
        chat: ChatSession,
        outcome: ConfirmationOutcome,
        cancelled: bool = False,
    ) -> None:
        pending = chat.pending_confirmation
        await self._transition(chat, ChatState.IDLE, reason="cancelled" if cancelled else outcome.value)
        if outcome == ConfirmationOutcome.EXPIRED:
            content = f"Confirmation expired; '{pending.command.command}' was not run."
        else:
            content = f"Cancelled; '{pending.command.command}' was not run."
        await self._append(chat, MessageDraft(
            type=MessageType.SYSTEM_MESSAGE,
            content=content,
            metadata={"confirmation_id": pending.id, "outcome": "cancelled" if cancelled else outcome.value},
        ))
        self._publish_resolution(chat, pending, outcome, cancelled)

    def _publish_resolution(
        self,
        chat: ChatSession,
        pending: PendingConfirmation,
        outcome: ConfirmationOutcome,
        cancelled: bool = False,
    ) -> None:
        label = "cancelled" if cancelled else outcome.value
        logger.info(
            "Confirmation resolved",
            extra_data={
                "session_id": chat.session_id,
                "confirmation_id": pending.id,
                "command": pending.command.command,
                "outcome": label,
            }
        )
        self.events.publish(
            EventType.CONFIRMATION_RESOLVED, chat.session_id,
            confirmation_id=pending.id, command=pending.command.command, outcome=label,
        )

    def _record_intent(self, chat: ChatSession, intent: Intent) -> None:
        context = chat.context
        context.record_intent(intent.type, self.window_size)
        for entity in intent.entities:
            context.record_entity(entity, self.window_size)
        if intent.entities:
            entities = dict(context.session.entities)
            entities.update({e.type: e.value for e in intent.entities})
            context.session = context.session.model_copy(update={"entities": entities})
        context.session = context.session.model_copy(update={"current_topic": intent.type})

    async def _append(self, chat: ChatSession, draft: MessageDraft) -> Message:
        message = None
        if not chat.degraded:
            try:
                message = await self.store.add_message(chat.session_id, draft)
            except _STORE_WRITE_ERRORS:
                self._degrade(chat, "add_message")
        if message is None:
            previous = chat.context.messages[-1].timestamp if chat.context.messages else None
            message = draft.seal(chat.session_id, chat.last_sequence + 1, next_timestamp(previous))

        chat.last_sequence = message.sequence
        history = chat.context.messages
        history.append(message)
        limit = self.store.max_messages_per_session
        if len(history) > limit:
            del history[: len(history) - limit]
        chat.context.session = chat.context.session.model_copy(update={"last_activity": message.timestamp})
        chat.outbox.append(message)

        self.events.publish(
            EventType.MESSAGE_ADDED, chat.session_id,
            message_id=message.id, message_type=message.type.value, sequence=message.sequence,
        )
        return message

    async def _persist_session(self, chat: ChatSession, *field_names: str) -> None:
        if chat.degraded:
            return
        session = chat.context.session
        try:
            await self.store.update_session(
                chat.session_id, **{name: getattr(session, name) for name in field_names}
            )
        except _STORE_WRITE_ERRORS:
            self._degrade(chat, "update_session")

    async def _persist_context(self, chat: ChatSession) -> None:
        if chat.degraded:
            return
        try:
            await self.store.update_context(chat.session_id, **chat.context.persisted_fields())
        except _STORE_WRITE_ERRORS:
            self._degrade(chat, "update_context")

    def _degrade(self, chat: ChatSession, operation: str) -> None:
        if chat.degraded:
            return
        chat.degraded = True
        logger.warning(
            "Context store unavailable, continuing with ephemeral context",
            extra_data={"session_id": chat.session_id, "operation": operation}
        )
        self.events.publish(EventType.STORAGE_DEGRADED, chat.session_id, operation=operation)

    def _suggest(self, chat: ChatSession, limit: Optional[int] = None) -> list[ContextualSuggestion]:
        error = chat.context.last_error if chat.state == ChatState.ERROR else None
        return self.suggestions.suggest(chat.context, error=error, limit=limit)

    async def _finish_turn(
        self,
        chat: ChatSession,
        execution_result: Optional[ExecutionResult] = None,
        suggest: bool = True,
    ) -> TurnResult:
        await self._persist_session(
            chat, "last_activity", "entities", "current_topic", "is_active"
        )
        await self._persist_context(chat)

        if suggest:
            chat.last_suggestions = self._suggest(chat)
            self.events.publish(
                EventType.SUGGESTIONS_UPDATED, chat.session_id,
                suggestions=[s.content for s in chat.last_suggestions],
            )
        else:
            chat.last_suggestions = []

        return TurnResult(
            session_id=chat.session_id,
            state=chat.state,
            messages=list(chat.outbox),
            suggestions=list(chat.last_suggestions),
            execution_result=execution_result,
            warning=STORAGE_WARNING if chat.degraded else None,
        )


def _merge_entities(previous: list[Entity], current: list[Entity]) -> list[Entity]:
    """Entities from the clarified input win over earlier ones of the same type and value"""
    merged: dict[tuple[str, str], Entity] = {(e.type, e.value): e for e in previous}
    merged.update({(e.type, e.value): e for e in current})
    return list(merged.values())


def _clarification_prompt(intent: Intent) -> str:
    if intent.alternatives:
        options = ", ".join(a.replace("_", " ") for a in intent.alternatives)
        return f"I'm not sure what you meant. Did you mean: {options}?"
    return "I'm not sure what you want to do. Could you rephrase or add details?"
