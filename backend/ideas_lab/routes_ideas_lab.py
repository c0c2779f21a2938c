"""
Ideas lab API: idea pipelines, stage commands, batch generation, run logs.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .deps import Console, get_console, get_orchestrator, outcome_or_error
from .integrations.generation_api import BackendError
from .schemas import ApiModel, IdeaFormat, Stage
from .services.orchestrator import GenerationOrchestrator
from .services.preferences import read_logs_collapsed, write_logs_collapsed

router = APIRouter(prefix="/api/ideas-lab", tags=["ideas-lab"])


class GenerateIdeasForm(ApiModel):
    persona_id: str | None = None
    topic: str | None = None
    count: float | str | None = 5
    format: IdeaFormat = IdeaFormat.reel


class StageCommand(ApiModel):
    regenerate: bool = False


class SelectionUpdate(ApiModel):
    idea_id: str


class LogsCollapsedUpdate(ApiModel):
    collapsed: bool


def _backend_failure(exc: BackendError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict())


# ── Ideas ────────────────────────────────────────────────────


@router.get("/projects/{project_id}/ideas")
async def list_ideas(
    project_id: str,
    refresh: bool = Query(False, description="Refetch from the backend before answering"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Ideas of a project with the resolved pipeline of each."""
    if refresh or not orchestrator.ideas(project_id):
        try:
            await orchestrator.refresh_ideas(project_id)
        except BackendError as exc:
            raise _backend_failure(exc) from exc
    ideas = {idea.id: idea for idea in orchestrator.ideas(project_id)}
    return {
        "projectId": project_id,
        "selectedIdeaId": orchestrator.selected_idea_id(project_id),
        "waitingForBatch": orchestrator.is_waiting_for_batch(project_id),
        "items": [
            {
                "idea": ideas[pipeline.idea_id].model_dump(by_alias=True, mode="json"),
                "pipeline": pipeline.to_dict(),
            }
            for pipeline in orchestrator.pipelines(project_id)
        ],
    }


@router.post("/projects/{project_id}/ideas/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_ideas(
    project_id: str,
    form: GenerateIdeasForm,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.submit_idea_generation(
        project_id,
        form.persona_id,
        form.topic,
        form.count,
        form.format,
    )
    return outcome_or_error(outcome)


@router.get("/ideas/{idea_id}")
async def get_idea(idea_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    try:
        details = await orchestrator.refresh_details(idea_id)
    except BackendError as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
        raise _backend_failure(exc) from exc
    return details.model_dump(by_alias=True, mode="json")


@router.post("/ideas/{idea_id}/stages/{stage}", status_code=status.HTTP_202_ACCEPTED)
async def invoke_stage(
    idea_id: str,
    stage: Stage,
    command: StageCommand | None = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    regenerate = command.regenerate if command else False
    return outcome_or_error(await orchestrator.invoke_stage(idea_id, stage, regenerate))


@router.delete("/projects/{project_id}/ideas")
async def clear_ideas(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return outcome_or_error(await orchestrator.clear_ideas(project_id))


@router.delete("/ideas/{idea_id}")
async def remove_idea(idea_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return outcome_or_error(await orchestrator.remove_idea(idea_id))


@router.delete("/assets/{asset_id}")
async def remove_asset(
    asset_id: str,
    idea_id: str | None = Query(None, alias="ideaId"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return outcome_or_error(await orchestrator.remove_asset(asset_id, idea_id))


# ── Selection / polling ──────────────────────────────────────


@router.get("/projects/{project_id}/selection")
async def get_selection(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return {"projectId": project_id, "ideaId": orchestrator.selected_idea_id(project_id)}


@router.put("/projects/{project_id}/selection")
async def set_selection(
    project_id: str,
    payload: SelectionUpdate,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return outcome_or_error(await orchestrator.select_idea(project_id, payload.idea_id))


@router.get("/projects/{project_id}/status")
async def project_status(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return {
        "batch": orchestrator.detector(project_id).to_dict(),
        "polling": orchestrator.polling_state(),
        "selectedIdeaId": orchestrator.selected_idea_id(project_id),
        "changesVersion": orchestrator.changes.version,
    }


@router.post("/projects/{project_id}/watch")
async def watch_project(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Start the poll loops of a project and of its selected idea."""
    orchestrator.watch_project(project_id)
    selected = orchestrator.selected_idea_id(project_id)
    if selected:
        await orchestrator.watch_idea(selected)
    return {"polling": orchestrator.polling_state()}


@router.delete("/projects/{project_id}/watch")
async def unwatch_project(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    await orchestrator.stop_watching(project_id)
    return {"polling": orchestrator.polling_state()}


# ── Run logs ─────────────────────────────────────────────────


@router.get("/projects/{project_id}/logs")
async def list_logs(
    project_id: str,
    refresh: bool = Query(True),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    if refresh:
        try:
            await orchestrator.refresh_logs(project_id)
        except BackendError as exc:
            raise _backend_failure(exc) from exc
    return {
        "items": [log.model_dump(by_alias=True, mode="json") for log in orchestrator.logs(project_id)],
        "stats": orchestrator.logs_stats(project_id).to_dict(),
    }


@router.delete("/projects/{project_id}/logs")
async def clear_logs(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return outcome_or_error(await orchestrator.clear_logs(project_id))


@router.delete("/logs/{log_id}")
async def remove_log(
    log_id: str,
    project_id: str | None = Query(None, alias="projectId"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return outcome_or_error(await orchestrator.remove_log(log_id, project_id))


# ── Notifications / preferences ──────────────────────────────


@router.get("/notifications")
async def list_notifications(console: Console = Depends(get_console)):
    return [n.to_dict() for n in console.notifications.active()]


@router.delete("/notifications/{notification_id}")
async def dismiss_notification(notification_id: int, console: Console = Depends(get_console)):
    if not console.notifications.dismiss(notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"dismissed": notification_id}


@router.get("/preferences/logs-collapsed")
async def get_logs_collapsed(console: Console = Depends(get_console)):
    return {"collapsed": read_logs_collapsed(console.preferences)}


@router.put("/preferences/logs-collapsed")
async def set_logs_collapsed(payload: LogsCollapsedUpdate, console: Console = Depends(get_console)):
    write_logs_collapsed(console.preferences, payload.collapsed)
    return {"collapsed": payload.collapsed}
