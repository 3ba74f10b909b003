"""
Workflow template catalogue
"""
from fastapi import APIRouter

from guardchat.conversation.workflow import WORKFLOW_TEMPLATES, WorkflowTemplate

router = APIRouter()


@router.get("", response_model=list[WorkflowTemplate], summary="Available guided workflows")
async def list_workflow_templates() -> list[WorkflowTemplate]:
    return list(WORKFLOW_TEMPLATES.values())
