"""
Generation orchestrator.

Owns the console's view of the backend: cached snapshots (idea lists, the
selected idea's details, run logs), the pending-command tracker, one batch
detector per project, the poll loops and the selection bookmarks.

Commands never raise: each returns a CommandOutcome, and submission errors are
also pushed to the notification channel. Snapshots are replaced only by
successful refetches; a failed refetch keeps the last good snapshot.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ideas_lab.integrations.generation_api import BackendConflict, BackendError, GenerationApiClient
from ideas_lab.schemas import AiRunLog, ClearResponse, Idea, IdeaDetails, IdeaFormat, Stage
from ideas_lab.services.batch_detector import BatchCompletionDetector
from ideas_lab.services.broadcast import ValueChannel
from ideas_lab.services.ideas_validation import IdeasFormError, validate_start_ideas_generation
from ideas_lab.services.notify import NotificationChannel
from ideas_lab.services.outcome import CommandOutcome
from ideas_lab.services.polling import (
    CollectionPoller,
    next_details_interval,
    next_ideas_interval,
    next_logs_interval,
)
from ideas_lab.services.preferences import PreferenceStore, SelectedIdeaBookmarks, get_preference_store
from ideas_lab.services.request_tracker import PendingKey, RequestTracker
from ideas_lab.services.run_logs import RunLogsStats, compute_logs_stats
from ideas_lab.services.stage_status import STAGE_TITLES, IdeaPipeline, resolve_idea_pipeline
from ideas_lab.settings import get_settings

logger = logging.getLogger(__name__)

STAGE_FAILURE_TITLES: dict[Stage, str] = {
    Stage.script: "Could not queue script generation",
    Stage.caption: "Could not queue caption generation",
    Stage.image_prompt: "Could not generate image prompt",
    Stage.video_prompt: "Could not generate video prompt",
    Stage.image: "Could not queue image generation",
    Stage.video: "Could not queue video generation",
}


class GenerationOrchestrator:
    def __init__(
        self,
        client: GenerationApiClient,
        *,
        notifications: NotificationChannel | None = None,
        tracker: RequestTracker | None = None,
        preferences: PreferenceStore | None = None,
        poll_interval: float | None = None,
        logs_limit: int | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.notifications = notifications if notifications is not None else NotificationChannel()
        self.tracker = tracker if tracker is not None else RequestTracker()
        self.bookmarks = SelectedIdeaBookmarks(preferences if preferences is not None else get_preference_store())
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_sec
        self.logs_limit = logs_limit if logs_limit is not None else settings.run_logs_limit
        self.changes = ValueChannel("ideas-lab")

        self._ideas: dict[str, list[Idea]] = {}
        self._details: dict[str, IdeaDetails] = {}
        self._logs: dict[str, list[AiRunLog]] = {}
        self._idea_project: dict[str, str] = {}
        self._detectors: dict[str, BatchCompletionDetector] = {}
        self._selected: dict[str, str | None] = {}
        self._pollers: dict[str, CollectionPoller] = {}
        self._watched_detail: dict[str, str] = {}

    # ── Snapshots ────────────────────────────────────────────

    def ideas(self, project_id: str) -> list[Idea]:
        return list(self._ideas.get(project_id, []))

    def details(self, idea_id: str) -> IdeaDetails | None:
        return self._details.get(idea_id)

    def logs(self, project_id: str) -> list[AiRunLog]:
        return list(self._logs.get(project_id, []))

    def project_of(self, idea_id: str) -> str | None:
        return self._idea_project.get(idea_id)

    def find_idea(self, idea_id: str) -> Idea | None:
        project_id = self._idea_project.get(idea_id)
        for idea in self._ideas.get(project_id, []) if project_id else []:
            if idea.id == idea_id:
                return idea
        return None

    def detector(self, project_id: str) -> BatchCompletionDetector:
        if project_id not in self._detectors:
            self._detectors[project_id] = BatchCompletionDetector(project_id)
        return self._detectors[project_id]

    def is_waiting_for_batch(self, project_id: str) -> bool:
        return self.detector(project_id).waiting

    def pipelines(self, project_id: str) -> list[IdeaPipeline]:
        return [resolve_idea_pipeline(idea, self.tracker, self.invoke_stage) for idea in self._ideas.get(project_id, [])]

    def logs_stats(self, project_id: str) -> RunLogsStats:
        return compute_logs_stats(self._logs.get(project_id, []))

    # ── Refetch ──────────────────────────────────────────────

    async def refresh_ideas(self, project_id: str) -> list[Idea]:
        ideas = await self.client.list_ideas(project_id)
        self._ideas[project_id] = ideas
        for idea in ideas:
            self._idea_project[idea.id] = project_id
        self.detector(project_id).observe_ideas(len(ideas))
        self._resolve_selection(project_id)
        self.changes.publish({"projectId": project_id, "ideas": len(ideas)})
        return ideas

    async def refresh_details(self, idea_id: str) -> IdeaDetails:
        details = await self.client.get_idea(idea_id)
        self._details[idea_id] = details
        self._idea_project[idea_id] = details.project_id
        return details

    async def refresh_logs(self, project_id: str) -> list[AiRunLog]:
        logs = await self.client.list_logs(project_id, self.logs_limit)
        self._logs[project_id] = logs
        self.detector(project_id).observe_logs(logs)
        return logs

    async def invalidate_all(self, project_id: str | None, idea_id: str | None = None) -> None:
        """Refetch idea list, selected idea detail and run logs concurrently."""
        jobs: list[tuple[str, Awaitable[Any]]] = []
        detail_id = None
        if project_id:
            jobs.append((f"ideas:{project_id}", self.refresh_ideas(project_id)))
            jobs.append((f"logs:{project_id}", self.refresh_logs(project_id)))
            detail_id = self._selected.get(project_id)
        elif idea_id:
            detail_id = idea_id
        if detail_id:
            jobs.append((f"details:{detail_id}", self.refresh_details(detail_id)))
        if not jobs:
            return
        results = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)
        for (name, _), result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.warning(f"[orchestrator] refetch {name} failed: {result}")

    # ── Commands ─────────────────────────────────────────────

    async def submit_idea_generation(
        self,
        project_id: str | None,
        persona_id: str | None,
        topic: str | None,
        count: Any = 5,
        format: IdeaFormat | str = IdeaFormat.reel,
    ) -> CommandOutcome:
        try:
            request = validate_start_ideas_generation(project_id, persona_id, topic, count, format)
        except IdeasFormError as exc:
            self.notifications.warn("Check the form", exc.message)
            return CommandOutcome.rejected(exc.message, field_errors=exc.field_errors)

        project_id = request.project_id
        detector = self.detector(project_id)
        # baseline is read fresh; without it completion cannot be detected
        try:
            ideas = await self.refresh_ideas(project_id)
            logs = await self.refresh_logs(project_id)
        except BackendError as exc:
            detector.reset()
            logger.warning(f"[orchestrator] baseline for project={project_id} failed: {exc.message}")
            self.notifications.error("Could not queue idea generation", exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)
        detector.begin(len(ideas), logs)

        try:
            response = await self.client.generate_ideas(request)
        except BackendError as exc:
            detector.reset()
            self.notifications.error("Could not queue idea generation", exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)

        logger.info(f"[orchestrator] ideas batch queued project={project_id} job={response.job_id} count={request.count}")
        await self.invalidate_all(project_id)
        self._kick(project_id)
        return CommandOutcome.accepted(job_id=response.job_id)

    async def invoke_stage(self, idea_id: str, stage: Stage | str, regenerate: bool = False) -> CommandOutcome:
        stage = Stage(stage)
        key = PendingKey(idea_id, stage, bool(regenerate) and stage.accepts_regenerate)
        project_id = self._idea_project.get(idea_id)

        if self.tracker.is_stage_pending(idea_id, stage):
            logger.debug(f"[orchestrator] {stage.value} already pending for idea={idea_id}, refreshing only")
            await self.invalidate_all(project_id, idea_id)
            return CommandOutcome.duplicate()

        idea = self.find_idea(idea_id)
        if idea is not None and resolve_idea_pipeline(idea, self.tracker).action(stage).disabled:
            message = f"{STAGE_TITLES[stage]} is waiting on its prerequisite"
            self.notifications.warn("Stage is not ready", message)
            return CommandOutcome.rejected(message, http_status=409)

        self.tracker.mark_pending(key)
        try:
            try:
                ack = await self.client.generate_stage(idea_id, stage, key.regenerate)
            except BackendConflict as exc:
                logger.info(f"[orchestrator] {stage.value} conflict for idea={idea_id}: {exc.message}")
                await self.invalidate_all(project_id, idea_id)
                return CommandOutcome.duplicate(error=exc.message, error_code=exc.code, http_status=409)
            except BackendError as exc:
                self.notifications.error(STAGE_FAILURE_TITLES[stage], exc.message)
                return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)
            await self.invalidate_all(project_id or self._idea_project.get(idea_id), idea_id)
        finally:
            self.tracker.clear(key)

        self._kick(self._idea_project.get(idea_id), idea_id)
        return CommandOutcome.accepted(
            job_id=ack.job_id,
            artifact_id=ack.artifact_id,
            data={"prompt": ack.prompt} if ack.prompt is not None else None,
        )

    async def _run_removal(
        self,
        title: str,
        call: Callable[[], Awaitable[ClearResponse]],
        project_id: str | None,
        idea_id: str | None = None,
        on_success: Callable[[], None] | None = None,
    ) -> CommandOutcome:
        try:
            result = await call()
        except BackendError as exc:
            self.notifications.error(title, exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)
        if on_success is not None:
            on_success()
        await self.invalidate_all(project_id, idea_id)
        return CommandOutcome.accepted(data={"deleted": result.deleted})

    async def clear_ideas(self, project_id: str) -> CommandOutcome:
        def forget() -> None:
            self.bookmarks.forget(project_id)
            self._selected[project_id] = None
            for idea_id in [i for i, p in self._idea_project.items() if p == project_id]:
                self._details.pop(idea_id, None)

        return await self._run_removal(
            "Could not clear ideas",
            lambda: self.client.clear_ideas(project_id),
            project_id,
            on_success=forget,
        )

    async def clear_logs(self, project_id: str) -> CommandOutcome:
        return await self._run_removal(
            "Could not clear run logs",
            lambda: self.client.clear_logs(project_id),
            project_id,
        )

    async def remove_idea(self, idea_id: str) -> CommandOutcome:
        project_id = self._idea_project.get(idea_id)

        def forget() -> None:
            self._details.pop(idea_id, None)
            if project_id and self._selected.get(project_id) == idea_id:
                self._selected[project_id] = None

        return await self._run_removal(
            "Could not remove idea",
            lambda: self.client.remove_idea(idea_id),
            project_id,
            on_success=forget,
        )

    async def remove_log(self, log_id: str, project_id: str | None = None) -> CommandOutcome:
        return await self._run_removal(
            "Could not remove run log",
            lambda: self.client.remove_log(log_id),
            project_id,
        )

    async def remove_asset(self, asset_id: str, idea_id: str | None = None) -> CommandOutcome:
        project_id = self._idea_project.get(idea_id) if idea_id else None
        return await self._run_removal(
            "Could not remove asset",
            lambda: self.client.remove_asset(asset_id),
            project_id,
            idea_id,
        )

    # ── Selection ────────────────────────────────────────────

    def _resolve_selection(self, project_id: str) -> str | None:
        """Current selection if still listed, else the bookmark, else the first idea."""
        ideas = self._ideas.get(project_id, [])
        if not ideas:
            self._selected[project_id] = None
            return None
        ids = {idea.id for idea in ideas}
        chosen = self._selected.get(project_id)
        if chosen not in ids:
            bookmarked = self.bookmarks.get(project_id)
            chosen = bookmarked if bookmarked in ids else ideas[0].id
        self._selected[project_id] = chosen
        if self.bookmarks.get(project_id) != chosen:
            self.bookmarks.set(project_id, chosen)
        return chosen

    def selected_idea_id(self, project_id: str) -> str | None:
        if project_id in self._selected and self._selected[project_id] is not None:
            return self._selected[project_id]
        return self._resolve_selection(project_id)

    async def select_idea(self, project_id: str, idea_id: str) -> CommandOutcome:
        if idea_id not in {idea.id for idea in self._ideas.get(project_id, [])}:
            return CommandOutcome.rejected(f"Idea {idea_id} is not in project {project_id}", http_status=404)
        self._selected[project_id] = idea_id
        self.bookmarks.set(project_id, idea_id)
        if project_id in self._watched_detail:
            await self.watch_idea(idea_id)
        try:
            await self.refresh_details(idea_id)
        except BackendError as exc:
            logger.warning(f"[orchestrator] details for idea={idea_id} failed: {exc.message}")
        return CommandOutcome.accepted()

    # ── Polling ──────────────────────────────────────────────

    def _ensure_poller(self, name: str, fetch, decide) -> CollectionPoller:
        poller = self._pollers.get(name)
        if poller is None:
            poller = CollectionPoller(name, fetch, decide)
            self._pollers[name] = poller
        poller.ensure_running()
        return poller

    def watch_project(self, project_id: str) -> None:
        self._ensure_poller(
            f"ideas:{project_id}",
            lambda: self.refresh_ideas(project_id),
            lambda ideas: next_ideas_interval(ideas, self.detector(project_id).waiting, self.poll_interval),
        )
        self._ensure_poller(
            f"logs:{project_id}",
            lambda: self.refresh_logs(project_id),
            lambda _logs: next_logs_interval(
                self._ideas.get(project_id, []), self.detector(project_id).waiting, self.poll_interval
            ),
        )

    async def watch_idea(self, idea_id: str) -> None:
        project_id = self._idea_project.get(idea_id)
        if project_id:
            previous = self._watched_detail.get(project_id)
            if previous and previous != idea_id:
                poller = self._pollers.pop(f"details:{previous}", None)
                if poller is not None:
                    await poller.stop()
            self._watched_detail[project_id] = idea_id
        self._ensure_poller(
            f"details:{idea_id}",
            lambda: self.refresh_details(idea_id),
            lambda details: next_details_interval(details, self.poll_interval),
        )

    def _kick(self, project_id: str | None, idea_id: str | None = None) -> None:
        """Restart registered pollers that stopped once work was reported done."""
        names = []
        if project_id:
            names += [f"ideas:{project_id}", f"logs:{project_id}"]
            watched = self._watched_detail.get(project_id)
            if watched:
                names.append(f"details:{watched}")
        elif idea_id:
            names.append(f"details:{idea_id}")
        for name in names:
            poller = self._pollers.get(name)
            if poller is not None:
                poller.ensure_running()

    def polling_state(self) -> dict[str, dict[str, Any]]:
        return {
            name: {"running": poller.running, "interval": poller.last_interval, "errors": poller.error_count}
            for name, poller in self._pollers.items()
        }

    async def stop_watching(self, project_id: str | None = None) -> None:
        for name in list(self._pollers):
            if project_id is None or name.endswith(f":{project_id}") or (
                name.startswith("details:") and self._watched_detail.get(project_id) == name.split(":", 1)[1]
            ):
                await self._pollers.pop(name).stop()
        if project_id is None:
            self._watched_detail.clear()
        else:
            self._watched_detail.pop(project_id, None)
