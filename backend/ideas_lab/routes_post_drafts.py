"""
Post draft API: assemble, moderate, approve / unapprove, mark published, export.
"""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import get_orchestrator, get_workflow, outcome_or_error
from .integrations.generation_api import BackendError
from .schemas import ApiModel, PostDraft
from .services.orchestrator import GenerationOrchestrator
from .services.publish_workflow import (
    DraftSelection,
    PublishWorkflow,
    available_asset_ids,
    can_approve,
    can_submit,
    default_selection,
    export_view,
    publish_checklist,
)

router = APIRouter(prefix="/api/post-drafts", tags=["post-drafts"])


class AssembleRequest(ApiModel):
    caption_id: str | None = None
    asset_ids: list[str] = []
    scheduled_at: datetime | None = None

    def to_selection(self) -> DraftSelection:
        return DraftSelection(self.caption_id, tuple(self.asset_ids), self.scheduled_at)


class ApproveRequest(ApiModel):
    override_reason: str | None = None


def _draft_view(draft: PostDraft | None) -> dict:
    if draft is None:
        return {"draft": None}
    return {
        "draft": draft.model_dump(by_alias=True, mode="json"),
        "checklist": [{"key": i.key, "label": i.label, "done": i.done} for i in publish_checklist(draft)],
        "canApprove": can_approve(draft),
        "failedChecks": draft.latest_moderation.checks.failed_names() if draft.latest_moderation else [],
    }


@router.get("/by-idea/{idea_id}")
async def get_latest_draft(idea_id: str, workflow: PublishWorkflow = Depends(get_workflow)):
    try:
        draft = await workflow.load_latest(idea_id)
    except BackendError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc
    return _draft_view(draft)


@router.get("/by-idea/{idea_id}/selection")
async def draft_selection(
    idea_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    workflow: PublishWorkflow = Depends(get_workflow),
):
    """Selection to prefill: the current draft's, else the latest succeeded caption and assets."""
    try:
        details = await orchestrator.refresh_details(idea_id)
    except BackendError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc
    draft = workflow.current(idea_id)
    if draft is not None:
        selection = DraftSelection(draft.caption_id, tuple(available_asset_ids(draft, details)), draft.scheduled_at)
    else:
        selection = default_selection(details)
    return {
        "captionId": selection.caption_id,
        "assetIds": list(selection.asset_ids),
        "scheduledAt": selection.scheduled_at.isoformat() if selection.scheduled_at else None,
        "canSubmit": can_submit(selection, draft),
    }


@router.post("/by-idea/{idea_id}/assemble")
async def assemble_draft(idea_id: str, payload: AssembleRequest, workflow: PublishWorkflow = Depends(get_workflow)):
    return outcome_or_error(await workflow.assemble(idea_id, payload.to_selection()))


@router.post("/by-idea/{idea_id}/moderate")
async def run_checks(idea_id: str, workflow: PublishWorkflow = Depends(get_workflow)):
    return outcome_or_error(await workflow.run_checks(idea_id))


@router.post("/by-idea/{idea_id}/approve")
async def approve_draft(
    idea_id: str,
    payload: ApproveRequest | None = None,
    workflow: PublishWorkflow = Depends(get_workflow),
):
    reason = payload.override_reason if payload else None
    return outcome_or_error(await workflow.approve(idea_id, reason))


@router.post("/by-idea/{idea_id}/unapprove")
async def unapprove_draft(idea_id: str, workflow: PublishWorkflow = Depends(get_workflow)):
    return outcome_or_error(await workflow.unapprove(idea_id))


@router.post("/by-idea/{idea_id}/publish/mark")
async def mark_published(idea_id: str, workflow: PublishWorkflow = Depends(get_workflow)):
    return outcome_or_error(await workflow.mark_published(idea_id))


@router.get("/{draft_id}/export")
async def export_draft(draft_id: str, workflow: PublishWorkflow = Depends(get_workflow)):
    try:
        draft = await workflow.export(draft_id)
    except BackendError as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc
    return export_view(draft)
