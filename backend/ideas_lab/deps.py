from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import HTTPException, Request, status

from ideas_lab.integrations.generation_api import GenerationApiClient
from ideas_lab.services.notify import NotificationChannel
from ideas_lab.services.orchestrator import GenerationOrchestrator
from ideas_lab.services.outcome import CommandOutcome
from ideas_lab.services.preferences import PreferenceStore, get_preference_store
from ideas_lab.services.publish_workflow import PublishWorkflow


@dataclass
class Console:
    client: GenerationApiClient
    notifications: NotificationChannel
    preferences: PreferenceStore
    orchestrator: GenerationOrchestrator
    workflow: PublishWorkflow

    async def aclose(self) -> None:
        await self.orchestrator.stop_watching()
        await self.client.aclose()


def build_console(
    preferences: PreferenceStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Console:
    client = GenerationApiClient(transport=transport)
    notifications = NotificationChannel()
    preferences = preferences if preferences is not None else get_preference_store()
    return Console(
        client=client,
        notifications=notifications,
        preferences=preferences,
        orchestrator=GenerationOrchestrator(client, notifications=notifications, preferences=preferences),
        workflow=PublishWorkflow(client, notifications=notifications),
    )


def get_console(request: Request) -> Console:
    console = getattr(request.app.state, "console", None)
    if console is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Console is not started")
    return console


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return get_console(request).orchestrator


def get_workflow(request: Request) -> PublishWorkflow:
    return get_console(request).workflow


def outcome_or_error(outcome: CommandOutcome) -> dict:
    """Accepted/duplicate outcomes are returned, rejected ones become HTTP errors.

    409 for rejected transitions and conflicts, 422 for form errors, 404 for
    unknown targets, 502 for anything the backend refused otherwise.
    """
    if outcome.ok:
        return outcome.to_dict()
    code = outcome.http_status
    if code is None and outcome.field_errors:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    if code not in (status.HTTP_404_NOT_FOUND, status.HTTP_409_CONFLICT, status.HTTP_422_UNPROCESSABLE_ENTITY):
        code = status.HTTP_502_BAD_GATEWAY
    raise HTTPException(status_code=code, detail=outcome.to_dict())
