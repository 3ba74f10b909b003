"""
Workflow Orchestrator

Drives named multi-step security procedures. The active workflow lives in
the session's ConversationContext (`current_workflow`, `workflow_step`,
`workflow_data`), so it is persisted together with the rest of the
context and survives a process restart.
"""
from typing import Any, Optional

from pydantic import BaseModel

from guardchat.conversation.models import (
    ConversationContext,
    WorkflowProgress,
    WorkflowState,
    WorkflowStep,
    utcnow,
)
from guardchat.core.events import EventBus, EventType
from guardchat.core.exceptions import (
    NoActiveWorkflowError,
    SessionNotFoundError,
    UnknownWorkflowError,
    WorkflowAlreadyActiveError,
    WorkflowStepOutOfRangeError,
)
from guardchat.core.logging import get_logger

logger = get_logger(__name__)


class WorkflowStepTemplate(BaseModel):
    step_id: str
    name: str
    description: str
    command: Optional[str] = None
    estimated_duration: int = 0  # seconds


class WorkflowTemplate(BaseModel):
    workflow_id: str
    name: str
    description: str
    steps: list[WorkflowStepTemplate]

    @property
    def estimated_duration(self) -> int:
        return sum(step.estimated_duration for step in self.steps)

    def instantiate(self, variables: Optional[dict[str, Any]] = None) -> WorkflowState:
        return WorkflowState(
            workflow_id=self.workflow_id,
            name=self.name,
            description=self.description,
            current_step=0,
            total_steps=len(self.steps),
            step_data=[
                WorkflowStep(
                    step_id=step.step_id,
                    name=step.name,
                    description=step.description,
                    command=step.command,
                )
                for step in self.steps
            ],
            start_time=utcnow(),
            estimated_duration=self.estimated_duration,
            variables=dict(variables or {}),
        )


WORKFLOW_TEMPLATES: dict[str, WorkflowTemplate] = {
    template.workflow_id: template
    for template in (
        WorkflowTemplate(
            workflow_id="incident_response",
            name="Security Incident Response",
            description="Structured approach to handling security incidents",
            steps=[
                WorkflowStepTemplate(
                    step_id="identify", name="Identify Threat",
                    description="Scan and identify the security threat",
                    command="threat scan --comprehensive", estimated_duration=60,
                ),
                WorkflowStepTemplate(
                    step_id="contain", name="Contain Threat",
                    description="Isolate and contain the threat",
                    command="threat contain", estimated_duration=180,
                ),
                WorkflowStepTemplate(
                    step_id="analyze", name="Analyze Impact",
                    description="Assess the scope and impact",
                    command="threat investigate", estimated_duration=600,
                ),
                WorkflowStepTemplate(
                    step_id="remediate", name="Remediate",
                    description="Remove threat and restore systems",
                    command="threat eradicate", estimated_duration=300,
                ),
                WorkflowStepTemplate(
                    step_id="recover", name="Recovery",
                    description="Restore normal operations",
                    command="system recover", estimated_duration=420,
                ),
                WorkflowStepTemplate(
                    step_id="lessons", name="Lessons Learned",
                    description="Document and improve procedures",
                    command="incident report", estimated_duration=120,
                ),
            ],
        ),
        WorkflowTemplate(
            workflow_id="threat_hunting",
            name="Proactive Threat Hunting",
            description="Systematic search for threats in the environment",
            steps=[
                WorkflowStepTemplate(
                    step_id="hypothesis", name="Develop Hypothesis",
                    description="Form threat hypothesis based on intelligence",
                    command="hunt generate-hypothesis", estimated_duration=120,
                ),
                WorkflowStepTemplate(
                    step_id="collect", name="Data Collection",
                    description="Gather relevant security data",
                    command="hunt search", estimated_duration=480,
                ),
                WorkflowStepTemplate(
                    step_id="analyze", name="Data Analysis",
                    description="Analyze data for threat indicators",
                    command="hunt analyze", estimated_duration=300,
                ),
                WorkflowStepTemplate(
                    step_id="investigate", name="Investigation",
                    description="Deep dive into suspicious activities",
                    command="threat validate", estimated_duration=240,
                ),
                WorkflowStepTemplate(
                    step_id="document", name="Documentation",
                    description="Document findings and update defenses",
                    command="hunt document", estimated_duration=90,
                ),
            ],
        ),
        WorkflowTemplate(
            workflow_id="vulnerability_assessment",
            name="Comprehensive Vulnerability Assessment",
            description="Systematic evaluation of security vulnerabilities",
            steps=[
                # scope is agreed with the user, nothing to run
                WorkflowStepTemplate(
                    step_id="scope", name="Define Scope",
                    description="Identify systems and networks to assess",
                    estimated_duration=60,
                ),
                WorkflowStepTemplate(
                    step_id="discovery", name="Asset Discovery",
                    description="Discover and inventory assets",
                    command="asset inventory", estimated_duration=300,
                ),
                WorkflowStepTemplate(
                    step_id="scan", name="Vulnerability Scanning",
                    description="Scan for known vulnerabilities",
                    command="vuln scan", estimated_duration=900,
                ),
                WorkflowStepTemplate(
                    step_id="analyze", name="Risk Analysis",
                    description="Analyze and prioritize vulnerabilities",
                    command="risk assess", estimated_duration=240,
                ),
                WorkflowStepTemplate(
                    step_id="report", name="Reporting",
                    description="Generate comprehensive vulnerability report",
                    command="assessment report", estimated_duration=180,
                ),
            ],
        ),
    )
}


class WorkflowOrchestrator:
    """
    Starts, advances, skips and abandons workflows.

    The context-level methods (`start`, `advance`, `skip`, `abandon`) mutate
    a ConversationContext in place and are what the session state machine
    uses on its live context. The session-keyed coroutines load the context
    from the store, apply the change and write it back.
    """

    def __init__(
        self,
        store=None,
        events: Optional[EventBus] = None,
        templates: Optional[dict[str, WorkflowTemplate]] = None,
    ):
        self.store = store
        self.events = events
        self.templates = templates if templates is not None else WORKFLOW_TEMPLATES

    def list_templates(self) -> list[WorkflowTemplate]:
        return list(self.templates.values())

    def get_template(self, template_id: str) -> WorkflowTemplate:
        template = self.templates.get(template_id)
        if template is None:
            raise UnknownWorkflowError(template_id)
        return template

    # ------------------------------------------------------------------
    # Context-level operations
    # ------------------------------------------------------------------

    def start(
        self,
        context: ConversationContext,
        template_id: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        template = self.get_template(template_id)
        if context.current_workflow is not None:
            raise WorkflowAlreadyActiveError(context.session_id, context.current_workflow)

        workflow = template.instantiate(variables)
        context.workflow_data = workflow
        context.current_workflow = workflow.workflow_id
        context.workflow_step = 0

        logger.info(
            "Workflow started",
            extra_data={
                "session_id": context.session_id,
                "workflow_id": workflow.workflow_id,
                "total_steps": workflow.total_steps,
            }
        )
        self._publish(
            EventType.WORKFLOW_STARTED, context,
            workflow_id=workflow.workflow_id, total_steps=workflow.total_steps,
        )
        return workflow

    def advance(
        self,
        context: ConversationContext,
        result: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        """Mark the current step completed and move to the next one"""
        return self._finish_step(context, completed=True, result=result)

    def skip(self, context: ConversationContext) -> WorkflowState:
        """Mark the current step skipped and move to the next one"""
        return self._finish_step(context, completed=False, result=None)

    def abandon(self, context: ConversationContext) -> WorkflowState:
        """Drop the active workflow; its step history is returned untouched"""
        workflow = self._require_active(context)
        self._clear(context)

        logger.info(
            "Workflow abandoned",
            extra_data={
                "session_id": context.session_id,
                "workflow_id": workflow.workflow_id,
                "current_step": workflow.current_step,
            }
        )
        self._publish(
            EventType.WORKFLOW_ABANDONED, context,
            workflow_id=workflow.workflow_id, current_step=workflow.current_step,
        )
        return workflow

    def progress(self, context: ConversationContext) -> Optional[WorkflowProgress]:
        if context.workflow_data is None:
            return None
        return context.workflow_data.progress()

    def current_step(self, context: ConversationContext) -> Optional[WorkflowStep]:
        if context.workflow_data is None:
            return None
        return context.workflow_data.current

    def matches_current_step(self, context: ConversationContext, command: str) -> bool:
        """True when `command` is the one bound to the current step"""
        step = self.current_step(context)
        if step is None or not step.command:
            return False
        return command.strip().lower().startswith(step.command.lower())

    def _require_active(self, context: ConversationContext) -> WorkflowState:
        if context.current_workflow is None or context.workflow_data is None:
            raise NoActiveWorkflowError(context.session_id)
        return context.workflow_data

    def _finish_step(
        self,
        context: ConversationContext,
        completed: bool,
        result: Optional[dict[str, Any]],
    ) -> WorkflowState:
        workflow = self._require_active(context)
        if workflow.is_finished:
            raise WorkflowStepOutOfRangeError(
                workflow.workflow_id, workflow.current_step, workflow.total_steps
            )

        index = workflow.current_step
        steps = list(workflow.step_data)
        steps[index] = steps[index].model_copy(update={
            "completed": completed,
            "skipped": not completed,
            "result": result,
            "finished_at": utcnow(),
        })
        workflow = workflow.model_copy(update={"step_data": steps, "current_step": index + 1})

        event = EventType.WORKFLOW_STEP_COMPLETED if completed else EventType.WORKFLOW_STEP_SKIPPED
        logger.info(
            "Workflow step completed" if completed else "Workflow step skipped",
            extra_data={
                "session_id": context.session_id,
                "workflow_id": workflow.workflow_id,
                "step_id": steps[index].step_id,
                "current_step": workflow.current_step,
                "total_steps": workflow.total_steps,
            }
        )
        self._publish(
            event, context,
            workflow_id=workflow.workflow_id,
            step_id=steps[index].step_id,
            current_step=workflow.current_step,
        )

        if workflow.is_finished:
            self._clear(context)
            progress = workflow.progress()
            logger.info(
                "Workflow completed",
                extra_data={
                    "session_id": context.session_id,
                    "workflow_id": workflow.workflow_id,
                    "completed": progress.completed,
                    "skipped": progress.skipped,
                }
            )
            self._publish(
                EventType.WORKFLOW_COMPLETED, context,
                workflow_id=workflow.workflow_id,
                completed=progress.completed,
                skipped=progress.skipped,
            )
        else:
            context.workflow_data = workflow
            context.workflow_step = workflow.current_step

        return workflow

    @staticmethod
    def _clear(context: ConversationContext) -> None:
        context.current_workflow = None
        context.workflow_step = None
        context.workflow_data = None

    def _publish(self, event_type: EventType, context: ConversationContext, **data: Any) -> None:
        if self.events is not None:
            self.events.publish(event_type, context.session_id, **data)

    # ------------------------------------------------------------------
    # Session-keyed operations against the store
    # ------------------------------------------------------------------

    async def _load(self, session_id: str) -> ConversationContext:
        context = await self.store.get_context(session_id) if self.store else None
        if context is None:
            raise SessionNotFoundError(session_id)
        return context

    async def _save(self, context: ConversationContext) -> None:
        await self.store.update_context(context.session_id, **context.persisted_fields())

    async def start_workflow(
        self,
        session_id: str,
        template_id: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        context = await self._load(session_id)
        workflow = self.start(context, template_id, variables)
        await self._save(context)
        return workflow

    async def advance_step(
        self,
        session_id: str,
        result: Optional[dict[str, Any]] = None,
    ) -> WorkflowState:
        context = await self._load(session_id)
        workflow = self.advance(context, result)
        await self._save(context)
        return workflow

    async def skip_step(self, session_id: str) -> WorkflowState:
        context = await self._load(session_id)
        workflow = self.skip(context)
        await self._save(context)
        return workflow

    async def abandon_workflow(self, session_id: str) -> WorkflowState:
        context = await self._load(session_id)
        workflow = self.abandon(context)
        await self._save(context)
        return workflow

    async def get_workflow(self, session_id: str) -> Optional[WorkflowState]:
        context = await self._load(session_id)
        return context.workflow_data
