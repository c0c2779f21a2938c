"""
Stage status resolver.

Turns one Idea snapshot plus the pending-command tracker into per-stage state
(done flag, status text) and per-stage action (label, loading, disabled,
regenerate). Pure: no I/O, nothing awaited except by StepAction.invoke().

Gating:
  caption / image_prompt / video_prompt  need a script that succeeded at least
                                         once and no script currently running
  image / video                          need their prompt and no prompt pending
  any stage                              blocked while the same (idea, stage)
                                         command is pending
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ideas_lab.schemas import PIPELINE_STAGES, GenerationStatus, Idea, Stage
from ideas_lab.services.request_tracker import PendingKey, RequestTracker

StageInvoker = Callable[[str, Stage, bool], Awaitable[Any]]

ACTION_CREATE = "create"
ACTION_NEW_VERSION = "new version"
ACTION_RETRY = "retry"

STATUS_READY = "ready to run"

STAGE_TITLES: dict[Stage, str] = {
    Stage.script: "Script",
    Stage.caption: "Caption",
    Stage.image_prompt: "Image prompt",
    Stage.video_prompt: "Video prompt",
    Stage.image: "Image",
    Stage.video: "Video",
}

_PROMPT_FOR: dict[Stage, Stage] = {
    Stage.image: Stage.image_prompt,
    Stage.video: Stage.video_prompt,
}


def format_status(status: GenerationStatus | None) -> str:
    return (status or GenerationStatus.queued).value


def waiting_on(stage: Stage) -> str:
    return f"waiting on {STAGE_TITLES[stage].lower()}"


def status_kind(label: str) -> str:
    """Coarse bucket of a status text: done/ready/blocked/queued/running/failed."""
    if label.startswith("succeeded"):
        return "done"
    if label.startswith("waiting"):
        return "blocked"
    if label == STATUS_READY:
        return "ready"
    if label in ("queued", "running", "failed"):
        return label
    return "blocked"


# ── Derived snapshot fields ──────────────────────────────────


@dataclass(frozen=True)
class IdeaProgress:
    """Latest status and success counters per stage, derived once per snapshot."""

    idea_id: str
    script_status: GenerationStatus | None
    caption_status: GenerationStatus | None
    script_ever_succeeded: bool
    caption_ever_succeeded: bool
    image_prompt_done: bool
    video_prompt_done: bool
    image_status: GenerationStatus | None
    video_status: GenerationStatus | None
    image_succeeded: int
    image_total: int
    video_succeeded: int
    video_total: int
    idea_failed: bool

    @classmethod
    def from_idea(cls, idea: Idea) -> IdeaProgress:
        script_status = idea.latest_script.status if idea.latest_script else None
        caption_status = idea.latest_caption.status if idea.latest_caption else None
        image_status = idea.latest_image_status or (idea.latest_image.status if idea.latest_image else None)
        video_status = idea.latest_video_status or (idea.latest_video.status if idea.latest_video else None)

        def _succeeded(count: int | None, latest) -> int:
            if count is not None:
                return max(0, count)
            return 1 if latest is not None and latest.status == GenerationStatus.succeeded else 0

        def _total(count: int | None, latest) -> int:
            if count is not None:
                return max(0, count)
            return 1 if latest is not None else 0

        return cls(
            idea_id=idea.id,
            script_status=script_status,
            caption_status=caption_status,
            script_ever_succeeded=(idea.script_succeeded_count or 0) > 0
            or script_status == GenerationStatus.succeeded,
            caption_ever_succeeded=(idea.caption_succeeded_count or 0) > 0
            or caption_status == GenerationStatus.succeeded,
            image_prompt_done=bool(idea.image_prompt),
            video_prompt_done=bool(idea.video_prompt),
            image_status=image_status,
            video_status=video_status,
            image_succeeded=_succeeded(idea.image_succeeded_count, idea.latest_image),
            image_total=_total(idea.image_assets_count, idea.latest_image),
            video_succeeded=_succeeded(idea.video_succeeded_count, idea.latest_video),
            video_total=_total(idea.video_assets_count, idea.latest_video),
            idea_failed=idea.status == GenerationStatus.failed,
        )

    @property
    def script_running(self) -> bool:
        return self.script_status == GenerationStatus.running

    @property
    def can_run_followups(self) -> bool:
        return self.script_ever_succeeded and not self.script_running

    def prompt_done(self, stage: Stage) -> bool:
        return self.image_prompt_done if stage == Stage.image_prompt else self.video_prompt_done

    def asset_status(self, stage: Stage) -> GenerationStatus | None:
        return self.image_status if stage == Stage.image else self.video_status

    def asset_succeeded(self, stage: Stage) -> int:
        return self.image_succeeded if stage == Stage.image else self.video_succeeded

    def asset_pending(self, stage: Stage) -> int:
        total = self.image_total if stage == Stage.image else self.video_total
        return max(0, total - self.asset_succeeded(stage))


# ── Resolved output ──────────────────────────────────────────


@dataclass(frozen=True)
class StepState:
    stage: Stage
    title: str
    done: bool
    status_label: str

    @property
    def kind(self) -> str:
        return status_kind(self.status_label)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "title": self.title,
            "done": self.done,
            "kind": self.kind,
            "status": self.status_label,
        }


@dataclass
class StepAction:
    idea_id: str
    stage: Stage
    label: str
    loading: bool
    disabled: bool
    regenerate: bool
    handler: StageInvoker | None = field(default=None, repr=False, compare=False)

    async def invoke(self) -> Any:
        if self.handler is None:
            raise RuntimeError(f"No handler bound for {self.stage.value} action")
        return await self.handler(self.idea_id, self.stage, self.regenerate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "label": self.label,
            "loading": self.loading,
            "disabled": self.disabled,
            "regenerate": self.regenerate,
        }


@dataclass
class IdeaPipeline:
    idea_id: str
    steps: list[StepState]
    actions: dict[Stage, StepAction]
    is_idea_failed: bool = False

    @property
    def completed_step_count(self) -> int:
        return sum(1 for step in self.steps if step.done)

    @property
    def pipeline_progress(self) -> int:
        return round(self.completed_step_count / len(PIPELINE_STAGES) * 100)

    def step(self, stage: Stage) -> StepState:
        return next(s for s in self.steps if s.stage == stage)

    def action(self, stage: Stage) -> StepAction:
        return self.actions[stage]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ideaId": self.idea_id,
            "steps": [s.to_dict() for s in self.steps],
            "actions": {stage.value: a.to_dict() for stage, a in self.actions.items()},
            "completedStepCount": self.completed_step_count,
            "pipelineProgress": self.pipeline_progress,
            "isIdeaFailed": self.is_idea_failed,
        }


# ── Resolver ─────────────────────────────────────────────────


def _version_label(failed: bool, has_version: bool) -> str:
    if failed:
        return ACTION_RETRY
    return ACTION_NEW_VERSION if has_version else ACTION_CREATE


def resolve_idea_pipeline(
    idea: Idea,
    tracker: RequestTracker | None = None,
    invoke: StageInvoker | None = None,
) -> IdeaPipeline:
    progress = IdeaProgress.from_idea(idea)
    tracker = tracker if tracker is not None else RequestTracker()

    def create_pending(stage: Stage) -> bool:
        return tracker.is_pending(PendingKey(idea.id, stage, False))

    def regen_pending(stage: Stage) -> bool:
        return tracker.is_pending(PendingKey(idea.id, stage, True))

    def stage_pending(stage: Stage) -> bool:
        return tracker.is_stage_pending(idea.id, stage)

    steps: list[StepState] = []
    actions: dict[Stage, StepAction] = {}

    def add(stage: Stage, done: bool, status_label: str, label: str, loading: bool, disabled: bool, regenerate: bool):
        steps.append(StepState(stage=stage, title=STAGE_TITLES[stage], done=done, status_label=status_label))
        actions[stage] = StepAction(
            idea_id=idea.id,
            stage=stage,
            label=label,
            loading=loading,
            disabled=disabled or stage_pending(stage),
            regenerate=regenerate,
            handler=invoke,
        )

    # script
    script_done = progress.script_status == GenerationStatus.succeeded
    script_has_version = progress.script_ever_succeeded or regen_pending(Stage.script)
    add(
        Stage.script,
        done=script_done,
        status_label=format_status(progress.script_status),
        label=_version_label(progress.script_status == GenerationStatus.failed, script_has_version),
        loading=(regen_pending(Stage.script) if script_has_version else create_pending(Stage.script))
        or progress.script_running,
        disabled=False,
        regenerate=script_has_version,
    )

    # caption
    caption_status = progress.caption_status
    caption_done = caption_status == GenerationStatus.succeeded
    caption_has_version = progress.caption_ever_succeeded or regen_pending(Stage.caption)
    if progress.script_running:
        caption_label = "succeeded, waiting on script" if progress.caption_ever_succeeded else waiting_on(Stage.script)
    elif not progress.can_run_followups:
        caption_label = waiting_on(Stage.script)
    elif caption_status is None:
        caption_label = STATUS_READY
    else:
        caption_label = format_status(caption_status)
    add(
        Stage.caption,
        done=caption_done and not progress.script_running,
        status_label=caption_label,
        label=_version_label(caption_status == GenerationStatus.failed, caption_has_version),
        loading=(regen_pending(Stage.caption) if caption_has_version else create_pending(Stage.caption))
        or caption_status == GenerationStatus.running,
        disabled=not progress.can_run_followups,
        regenerate=caption_has_version,
    )

    # prompts
    for stage in (Stage.image_prompt, Stage.video_prompt):
        done = progress.prompt_done(stage)
        pending = stage_pending(stage)
        if pending:
            status_label = GenerationStatus.running.value
        elif progress.script_running:
            status_label = waiting_on(Stage.script)
        elif done:
            status_label = GenerationStatus.succeeded.value
        elif progress.can_run_followups:
            status_label = STATUS_READY
        else:
            status_label = waiting_on(Stage.script)
        add(
            stage,
            done=done and not progress.script_running,
            status_label=status_label,
            label=ACTION_NEW_VERSION if done else ACTION_CREATE,
            loading=pending,
            disabled=not progress.can_run_followups,
            regenerate=False,
        )

    # assets
    for stage, prompt_stage in _PROMPT_FOR.items():
        status = progress.asset_status(stage)
        has_any = progress.asset_succeeded(stage) > 0
        pending_count = progress.asset_pending(stage)
        has_version = has_any or regen_pending(stage)
        prompt_done = progress.prompt_done(prompt_stage)
        prompt_pending = stage_pending(prompt_stage)
        if status == GenerationStatus.running:
            status_label = GenerationStatus.running.value
        elif has_any:
            status_label = f"succeeded ({pending_count} pending)" if pending_count > 0 else "succeeded"
        elif status in (GenerationStatus.failed, GenerationStatus.queued):
            status_label = status.value
        elif prompt_done and not prompt_pending:
            status_label = STATUS_READY
        else:
            status_label = waiting_on(prompt_stage)
        add(
            stage,
            done=has_any,
            status_label=status_label,
            label=_version_label(status == GenerationStatus.failed, has_version),
            loading=(regen_pending(stage) if has_version else create_pending(stage))
            or status == GenerationStatus.running,
            disabled=not prompt_done or prompt_pending,
            regenerate=has_version,
        )

    return IdeaPipeline(
        idea_id=idea.id,
        steps=steps,
        actions=actions,
        is_idea_failed=progress.idea_failed,
    )
