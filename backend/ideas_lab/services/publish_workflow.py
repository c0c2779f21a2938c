"""
Post draft lifecycle: assemble -> run checks -> approve -> mark published.

  draft --run checks--> draft (latest moderation attached)
  draft --approve--> approved        passed checks, or failed checks + override reason
  approved --unapprove--> draft
  approved --mark published--> published (terminal, manual confirmation only)

Guards are plain functions raising TransitionRejected so they can be checked
before any request is made. PublishWorkflow pairs them with backend calls.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ideas_lab.integrations.generation_api import BackendError, GenerationApiClient
from ideas_lab.schemas import (
    AssetType,
    CreatePostDraftRequest,
    GenerationStatus,
    IdeaDetails,
    ModerationCheckItem,
    ModerationCheckStatus,
    PostDraft,
    PostDraftStatus,
)
from ideas_lab.services.notify import NotificationChannel
from ideas_lab.services.outcome import CommandOutcome

logger = logging.getLogger(__name__)

MIN_OVERRIDE_REASON_LENGTH = 3


class TransitionRejected(Exception):
    def __init__(self, message: str, failed_checks: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.failed_checks = failed_checks or []


# ── Guards ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ApprovalDecision:
    override_reason: str | None = None
    failed_checks: tuple[str, ...] = ()

    @property
    def is_override(self) -> bool:
        return self.override_reason is not None


def ensure_can_run_checks(draft: PostDraft) -> None:
    if draft.status != PostDraftStatus.draft:
        raise TransitionRejected(f"Checks can only run on a draft, this one is {draft.status.value}")


def approval_decision(draft: PostDraft, override_reason: str | None = None) -> ApprovalDecision:
    """Decide how the draft may be approved, or raise TransitionRejected."""
    if draft.status != PostDraftStatus.draft:
        raise TransitionRejected(f"Only a draft can be approved, this one is {draft.status.value}")
    moderation = draft.latest_moderation
    if moderation is None:
        raise TransitionRejected("Run checks before approving draft")
    if moderation.status == ModerationCheckStatus.passed:
        return ApprovalDecision()

    failed = moderation.checks.failed_names()
    if not failed:
        raise TransitionRejected("Moderation failed without a failing check; run checks again")
    reason = (override_reason or "").strip()
    if len(reason) < MIN_OVERRIDE_REASON_LENGTH:
        raise TransitionRejected(
            f"Moderation checks did not pass ({', '.join(failed)}). "
            f"Provide an override reason of at least {MIN_OVERRIDE_REASON_LENGTH} characters.",
            failed_checks=failed,
        )
    return ApprovalDecision(override_reason=reason, failed_checks=tuple(failed))


def can_approve(draft: PostDraft | None, override_reason: str | None = None) -> bool:
    if draft is None:
        return False
    try:
        approval_decision(draft, override_reason)
    except TransitionRejected:
        return False
    return True


def ensure_can_unapprove(draft: PostDraft) -> None:
    if draft.status != PostDraftStatus.approved:
        raise TransitionRejected(f"Only an approved draft can be unapproved, this one is {draft.status.value}")


def ensure_can_mark_published(draft: PostDraft) -> None:
    if draft.status != PostDraftStatus.approved:
        raise TransitionRejected("Draft must be approved before marking as published")


def ensure_can_reassemble(draft: PostDraft | None) -> None:
    if draft is None:
        return
    if draft.status == PostDraftStatus.approved:
        raise TransitionRejected("Unapprove the draft before reassembling it")
    if draft.status == PostDraftStatus.published:
        raise TransitionRejected("Published draft cannot be reassembled")


# ── Selection ────────────────────────────────────────────────


def normalize_schedule(value: datetime | None) -> datetime | None:
    """UTC, minute precision. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(second=0, microsecond=0)


@dataclass(frozen=True)
class DraftSelection:
    caption_id: str | None = None
    asset_ids: tuple[str, ...] = field(default_factory=tuple)
    scheduled_at: datetime | None = None

    @classmethod
    def from_draft(cls, draft: PostDraft) -> DraftSelection:
        return cls(draft.caption_id, tuple(draft.selected_assets), draft.scheduled_at)

    def to_request(self) -> CreatePostDraftRequest:
        return CreatePostDraftRequest(
            caption_id=self.caption_id,
            asset_ids=list(self.asset_ids),
            scheduled_at=normalize_schedule(self.scheduled_at),
        )


def has_changes(selection: DraftSelection, draft: PostDraft | None) -> bool:
    if draft is None:
        return True
    return (
        sorted(selection.asset_ids) != sorted(draft.selected_assets)
        or (selection.caption_id or None) != (draft.caption_id or None)
        or normalize_schedule(selection.scheduled_at) != normalize_schedule(draft.scheduled_at)
    )


def can_submit(selection: DraftSelection, draft: PostDraft | None) -> bool:
    if not selection.asset_ids:
        return False
    if draft is None:
        return True
    if draft.status in (PostDraftStatus.approved, PostDraftStatus.published):
        return False
    return has_changes(selection, draft)


def _newest_first(items: list) -> list:
    return sorted(items, key=lambda item: item.created_at.timestamp() if item.created_at else float("-inf"), reverse=True)


def default_asset_ids(details: IdeaDetails | None) -> list[str]:
    """Latest succeeded video, then latest succeeded image."""
    if details is None:
        return []
    succeeded = _newest_first(
        [
            a
            for a in details.assets
            if a.status == GenerationStatus.succeeded and a.type in (AssetType.image, AssetType.video)
        ]
    )
    selected: list[str] = []
    for asset_type in (AssetType.video, AssetType.image):
        latest = next((a for a in succeeded if a.type == asset_type), None)
        if latest is not None and latest.id not in selected:
            selected.append(latest.id)
    return selected


def default_selection(details: IdeaDetails | None) -> DraftSelection:
    caption_id = None
    if details is not None:
        caption = next(
            (c for c in _newest_first(list(details.captions)) if c.status == GenerationStatus.succeeded),
            None,
        )
        caption_id = caption.id if caption else None
    return DraftSelection(caption_id=caption_id, asset_ids=tuple(default_asset_ids(details)))


def available_asset_ids(draft: PostDraft, details: IdeaDetails | None) -> list[str]:
    """Draft's selected assets that still exist and succeeded."""
    if details is None:
        return list(draft.selected_assets)
    alive = {a.id for a in details.assets if a.status == GenerationStatus.succeeded}
    return [asset_id for asset_id in draft.selected_assets if asset_id in alive]


# ── Export helpers ───────────────────────────────────────────


@dataclass(frozen=True)
class ChecklistItem:
    key: str
    label: str
    done: bool


def publish_checklist(draft: PostDraft) -> list[ChecklistItem]:
    moderation = draft.latest_moderation
    caption_text = (draft.caption.text if draft.caption else None) or ""
    return [
        ChecklistItem("has_asset", "At least one asset", len(draft.assets) > 0),
        ChecklistItem("has_caption", "Caption text present", bool(caption_text.strip())),
        ChecklistItem(
            "moderation_passed",
            "Moderation passed",
            moderation is not None and moderation.status == ModerationCheckStatus.passed,
        ),
        ChecklistItem(
            "approved",
            "Draft approved",
            draft.status in (PostDraftStatus.approved, PostDraftStatus.published),
        ),
    ]


def build_caption_for_copy(text: str | None, hashtags: list[str] | None) -> str:
    text = (text or "").strip()
    tags = " ".join(hashtags or []).strip()
    if text and tags:
        return f"{text}\n\n{tags}"
    return text or tags


def to_percent(score: float) -> int:
    """Scores come either as 0..1 fractions or as 0..100 percents."""
    if not math.isfinite(score):
        return 0
    percent = score * 100 if score <= 1 else score
    # halves round up
    return max(0, min(100, math.floor(percent + 0.5)))


def format_check_result(check: ModerationCheckItem) -> str:
    if check.passed:
        return "passed"
    if not check.hits:
        return "failed"
    return f"failed: {', '.join(check.hits)}"


def export_view(draft: PostDraft) -> dict[str, Any]:
    moderation = draft.latest_moderation
    return {
        "draft": draft.model_dump(by_alias=True, mode="json"),
        "checklist": [{"key": i.key, "label": i.label, "done": i.done} for i in publish_checklist(draft)],
        "captionForCopy": build_caption_for_copy(
            draft.caption.text if draft.caption else None,
            draft.caption.hashtags if draft.caption else None,
        ),
        "checks": [
            {"name": name, "result": format_check_result(item), "scorePercent": to_percent(item.score)}
            for name, item in (moderation.checks.items() if moderation else [])
        ],
    }


# ── Workflow ─────────────────────────────────────────────────


class PublishWorkflow:
    """Current post draft per idea plus guarded transitions against the backend."""

    def __init__(self, client: GenerationApiClient, notifications: NotificationChannel | None = None):
        self.client = client
        self.notifications = notifications if notifications is not None else NotificationChannel()
        self._drafts: dict[str, PostDraft] = {}

    def current(self, idea_id: str) -> PostDraft | None:
        return self._drafts.get(idea_id)

    async def load_latest(self, idea_id: str) -> PostDraft | None:
        draft = await self.client.latest_post_draft(idea_id)
        if draft is None:
            self._drafts.pop(idea_id, None)
        else:
            self._drafts[idea_id] = draft
        return draft

    async def _draft_for(self, idea_id: str) -> PostDraft | None:
        draft = self._drafts.get(idea_id)
        if draft is None:
            draft = await self.load_latest(idea_id)
        return draft

    async def _transition(
        self,
        idea_id: str,
        title: str,
        guard: Callable[[PostDraft], Any],
        call: Callable[[PostDraft], Awaitable[PostDraft]],
    ) -> CommandOutcome:
        try:
            draft = await self._draft_for(idea_id)
            if draft is None:
                return CommandOutcome.rejected("No post draft for this idea", http_status=404)
            guard(draft)
            updated = await call(draft)
        except TransitionRejected as exc:
            self.notifications.warn(title, exc.message)
            return CommandOutcome.rejected(
                exc.message,
                error_code="invalid_transition",
                http_status=409,
                field_errors={"failedChecks": ", ".join(exc.failed_checks)} if exc.failed_checks else {},
            )
        except BackendError as exc:
            self.notifications.error(title, exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)
        self._drafts[idea_id] = updated
        logger.info(f"[publish] idea={idea_id} draft={updated.id} -> {updated.status.value}")
        return CommandOutcome.accepted(artifact_id=updated.id, data=updated)

    async def assemble(self, idea_id: str, selection: DraftSelection) -> CommandOutcome:
        title = "Could not save post draft"
        try:
            current = await self._draft_for(idea_id)
            ensure_can_reassemble(current)
        except TransitionRejected as exc:
            self.notifications.warn(title, exc.message)
            return CommandOutcome.rejected(exc.message, error_code="invalid_transition", http_status=409)
        except BackendError as exc:
            self.notifications.error(title, exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)

        if not selection.asset_ids:
            message = "Select at least one asset for the draft"
            self.notifications.warn(title, message)
            return CommandOutcome.rejected(message, http_status=422, field_errors={"assetIds": "required"})
        if current is not None and not has_changes(selection, current):
            return CommandOutcome.duplicate(artifact_id=current.id, data=current)

        try:
            draft = await self.client.create_post_draft(idea_id, selection.to_request())
        except BackendError as exc:
            self.notifications.error(title, exc.message)
            return CommandOutcome.rejected(exc.message, error_code=exc.code, http_status=exc.status_code)
        self._drafts[idea_id] = draft
        logger.info(f"[publish] idea={idea_id} assembled draft={draft.id} assets={len(draft.selected_assets)}")
        return CommandOutcome.accepted(artifact_id=draft.id, data=draft)

    async def run_checks(self, idea_id: str) -> CommandOutcome:
        return await self._transition(
            idea_id,
            "Could not run checks",
            ensure_can_run_checks,
            lambda d: self.client.moderate_post_draft(d.id),
        )

    async def approve(self, idea_id: str, override_reason: str | None = None) -> CommandOutcome:
        decision: dict[str, ApprovalDecision] = {}

        def guard(draft: PostDraft) -> None:
            decision["value"] = approval_decision(draft, override_reason)

        outcome = await self._transition(
            idea_id,
            "Could not approve draft",
            guard,
            lambda d: self.client.approve_post_draft(d.id, decision["value"].override_reason),
        )
        if outcome.ok and decision["value"].is_override:
            logger.info(
                f"[publish] idea={idea_id} approved with override over {list(decision['value'].failed_checks)}"
            )
        return outcome

    async def unapprove(self, idea_id: str) -> CommandOutcome:
        return await self._transition(
            idea_id,
            "Could not unapprove draft",
            ensure_can_unapprove,
            lambda d: self.client.unapprove_post_draft(d.id),
        )

    async def mark_published(self, idea_id: str) -> CommandOutcome:
        return await self._transition(
            idea_id,
            "Could not mark draft as published",
            ensure_can_mark_published,
            lambda d: self.client.mark_post_draft_published(d.id),
        )

    async def export(self, draft_id: str) -> PostDraft:
        return await self.client.export_post_draft(draft_id)
