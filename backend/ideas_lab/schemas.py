from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class GenerationStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.succeeded, GenerationStatus.failed)

    @property
    def is_active(self) -> bool:
        return self in (GenerationStatus.queued, GenerationStatus.running)


class IdeaFormat(str, Enum):
    reel = "reel"
    short = "short"
    tiktok = "tiktok"


class AiOperation(str, Enum):
    ideas = "ideas"
    script = "script"
    caption = "caption"
    image_prompt = "image_prompt"
    video_prompt = "video_prompt"
    image = "image"
    video = "video"


class AssetType(str, Enum):
    image = "image"
    video = "video"
    audio = "audio"


class Stage(str, Enum):
    """Pipeline stages of one idea, in pipeline order."""

    script = "script"
    caption = "caption"
    image_prompt = "image_prompt"
    video_prompt = "video_prompt"
    image = "image"
    video = "video"

    @property
    def is_prompt(self) -> bool:
        return self in (Stage.image_prompt, Stage.video_prompt)

    @property
    def accepts_regenerate(self) -> bool:
        return not self.is_prompt


PIPELINE_STAGES: tuple[Stage, ...] = tuple(Stage)


class PostDraftStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    published = "published"
    archived = "archived"


class ModerationCheckStatus(str, Enum):
    passed = "passed"
    failed = "failed"


class ApiModel(BaseModel):
    """Backend payloads are camelCase; fields here are snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ── Generated artifacts ──────────────────────────────────────


class Script(ApiModel):
    id: str
    idea_id: str | None = None
    text: str | None = None
    shot_list: list[str] | None = None
    status: GenerationStatus
    error: str | None = None
    created_at: datetime | None = None


class Caption(ApiModel):
    id: str
    idea_id: str | None = None
    text: str | None = None
    hashtags: list[str] | None = None
    status: GenerationStatus
    error: str | None = None
    created_at: datetime | None = None


class Asset(ApiModel):
    id: str
    idea_id: str | None = None
    type: AssetType
    url: str | None = None
    mime: str | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    source_prompt: str | None = None
    provider: str | None = None
    status: GenerationStatus
    error: str | None = None
    created_at: datetime | None = None


# ── Ideas ────────────────────────────────────────────────────


class IdeaBase(ApiModel):
    id: str
    project_id: str
    persona_id: str
    topic: str
    hook: str = ""
    format: IdeaFormat = IdeaFormat.reel
    status: GenerationStatus = GenerationStatus.succeeded
    error: str | None = None
    created_at: datetime | None = None
    image_prompt: str | None = None
    video_prompt: str | None = None


class Idea(IdeaBase):
    latest_script: Script | None = None
    latest_caption: Caption | None = None
    latest_image: Asset | None = None
    latest_video: Asset | None = None
    latest_image_status: GenerationStatus | None = None
    latest_video_status: GenerationStatus | None = None
    script_succeeded_count: int | None = None
    caption_succeeded_count: int | None = None
    image_assets_count: int | None = None
    video_assets_count: int | None = None
    image_succeeded_count: int | None = None
    video_succeeded_count: int | None = None


class IdeaDetails(IdeaBase):
    latest_image: Asset | None = None
    latest_video: Asset | None = None
    latest_image_status: GenerationStatus | None = None
    latest_video_status: GenerationStatus | None = None
    scripts: list[Script] = Field(default_factory=list)
    captions: list[Caption] = Field(default_factory=list)
    assets: list[Asset] = Field(default_factory=list)


class AiRunLog(ApiModel):
    id: str
    provider: str = ""
    model: str = ""
    operation: AiOperation
    project_id: str | None = None
    idea_id: str | None = None
    latency_ms: int | None = None
    tokens: int | None = None
    request_id: str | None = None
    status: GenerationStatus
    error: str | None = None
    error_code: str | None = None
    raw_response: str | None = None
    created_at: datetime | None = None


# ── Commands ─────────────────────────────────────────────────


class GenerateIdeasRequest(ApiModel):
    project_id: str
    persona_id: str
    topic: str
    count: int = 5
    format: IdeaFormat = IdeaFormat.reel


class GenerateIdeasResponse(ApiModel):
    job_id: str
    status: GenerationStatus


class StageJobResponse(ApiModel):
    """Unified acknowledgement for stage commands.

    Script, caption and asset endpoints answer with ``scriptId``, ``captionId``
    or ``assetId``; prompt endpoints answer with the generated ``prompt``.
    """

    stage: Stage
    job_id: str | None = None
    artifact_id: str | None = None
    status: GenerationStatus | None = None
    prompt: str | None = None


class ClearResponse(ApiModel):
    deleted: int = 0


# ── Post drafts ──────────────────────────────────────────────


class ModerationCheckItem(ApiModel):
    passed: bool
    score: float = 0.0
    hits: list[str] = Field(default_factory=list)

    @field_validator("hits", mode="before")
    @classmethod
    def _none_hits(cls, v: Any) -> Any:
        return v or []


class ModerationChecks(ApiModel):
    nsfw: ModerationCheckItem
    toxicity: ModerationCheckItem
    forbidden_topics: ModerationCheckItem
    policy: ModerationCheckItem

    def items(self) -> list[tuple[str, ModerationCheckItem]]:
        return [
            ("nsfw", self.nsfw),
            ("toxicity", self.toxicity),
            ("forbiddenTopics", self.forbidden_topics),
            ("policy", self.policy),
        ]

    def failed_names(self) -> list[str]:
        return [name for name, item in self.items() if not item.passed]


class PostDraftModeration(ApiModel):
    id: str
    status: ModerationCheckStatus
    checks: ModerationChecks
    notes: str | None = None
    created_at: datetime | None = None


class PostDraftIdea(ApiModel):
    id: str
    project_id: str
    persona_id: str
    topic: str
    hook: str = ""
    format: str = IdeaFormat.reel.value


class PostDraftAsset(ApiModel):
    id: str
    type: str
    url: str | None = None
    mime: str | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    source_prompt: str | None = None
    provider: str | None = None
    status: str
    error: str | None = None
    created_at: datetime | None = None


class PostDraftCaption(ApiModel):
    id: str
    text: str | None = None
    hashtags: list[str] | None = None
    status: str
    error: str | None = None
    created_at: datetime | None = None


class PostDraft(ApiModel):
    id: str
    idea_id: str
    caption_id: str | None = None
    selected_assets: list[str] = Field(default_factory=list)
    status: PostDraftStatus
    scheduled_at: datetime | None = None
    created_at: datetime | None = None
    idea: PostDraftIdea | None = None
    assets: list[PostDraftAsset] = Field(default_factory=list)
    caption: PostDraftCaption | None = None
    latest_moderation: PostDraftModeration | None = None


class CreatePostDraftRequest(ApiModel):
    caption_id: str | None = None
    asset_ids: list[str] | None = None
    scheduled_at: datetime | None = None


class ApprovePostDraftRequest(ApiModel):
    override_reason: str | None = None
