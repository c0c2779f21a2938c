"""
HTTP client for the generation backend.

Every call is a single request: no retries, no backoff. Progress of accepted
jobs is observed by re-reading ideas/logs, never by waiting on the job.

Errors:
  BackendError        HTTP >= 400 with a readable message, or a 2xx body that
                      is not JSON or does not match the expected shape
  BackendConflict     409, the requested version already exists / wrong state
  BackendUnavailable  transport failure or timeout
"""
from __future__ import annotations

import logging
import re
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ideas_lab.schemas import (
    AiRunLog,
    ClearResponse,
    CreatePostDraftRequest,
    GenerateIdeasRequest,
    GenerateIdeasResponse,
    Idea,
    IdeaDetails,
    PostDraft,
    Stage,
    StageJobResponse,
)
from ideas_lab.settings import get_settings

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# stage -> (path segment, id field of the acknowledgement)
STAGE_ENDPOINTS: dict[Stage, tuple[str, str | None]] = {
    Stage.script: ("script", "scriptId"),
    Stage.caption: ("caption", "captionId"),
    Stage.image_prompt: ("image-prompt", None),
    Stage.video_prompt: ("video-prompt", None),
    Stage.image: ("images", "assetId"),
    Stage.video: ("videos", "assetId"),
}

_CODE_PREFIX = re.compile(r"^\[[a-z0-9_]+\]\s*", re.IGNORECASE)

MALFORMED_RESPONSE_CODE = "malformed_response"


class BackendError(Exception):
    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "status": self.status_code, "code": self.code}


class BackendConflict(BackendError):
    """409 from the backend."""


class BackendUnavailable(BackendError):
    """Backend could not be reached or did not answer in time."""


def _to_message(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, str) and item.strip():
                return item
    return None


def strip_error_code(message: str) -> tuple[str, str | None]:
    """Split a leading ``[code] `` marker off a backend message."""
    match = _CODE_PREFIX.match(message)
    if not match:
        return message.strip(), None
    code = match.group(0).strip()[1:-1]
    return message[match.end():].strip(), code


def extract_error_message(payload: Any, fallback: str) -> tuple[str, str | None]:
    """Pick the readable message from an error body: ``message`` then ``error``."""
    message = None
    if isinstance(payload, dict):
        message = _to_message(payload.get("message")) or _to_message(payload.get("error"))
    elif isinstance(payload, str):
        message = _to_message(payload)
    return strip_error_code(message or fallback)


def _malformed(what: str, detail: Any) -> BackendError:
    logger.warning(f"[generation_api] unexpected {what} payload: {detail}")
    return BackendError(f"Backend returned an unexpected {what} response", code=MALFORMED_RESPONSE_CODE)


def _parse(model: type[M], data: Any, what: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise _malformed(what, exc) from exc


def _parse_list(model: type[M], data: Any, what: str) -> list[M]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise _malformed(what, f"expected a list, got {type(data).__name__}")
    return [_parse(model, item, what) for item in data]


class GenerationApiClient:
    """Async client for ideas / post-draft endpoints of the generation backend."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        headers = {"Accept": "application/json"}
        token = token if token is not None else settings.api_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.api_base).rstrip("/"),
            headers=headers,
            timeout=timeout if timeout is not None else settings.request_timeout_sec,
            transport=transport,
        )

    async def __aenter__(self) -> GenerationApiClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning(f"[generation_api] {method} {path} transport error: {exc}")
            raise BackendUnavailable(str(exc) or "Backend is unreachable") from exc

        if resp.status_code >= 400:
            try:
                payload: Any = resp.json()
            except ValueError:
                payload = resp.text[:400]
            message, code = extract_error_message(payload, f"Backend error {resp.status_code}")
            logger.info(f"[generation_api] {method} {path} -> {resp.status_code}: {message}")
            error_cls = BackendConflict if resp.status_code == 409 else BackendError
            raise error_cls(message, status_code=resp.status_code, code=code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            logger.warning(f"[generation_api] {method} {path} -> {resp.status_code}: body is not JSON: {resp.text[:200]!r}")
            raise BackendError(
                "Backend returned a response that is not JSON",
                status_code=resp.status_code,
                code=MALFORMED_RESPONSE_CODE,
            ) from exc

    # ── Ideas ────────────────────────────────────────────────

    async def generate_ideas(self, payload: GenerateIdeasRequest) -> GenerateIdeasResponse:
        data = await self._request("POST", "/ideas/generate", json=payload.model_dump(by_alias=True, mode="json"))
        return _parse(GenerateIdeasResponse, data, "generate ideas")

    async def generate_stage(self, idea_id: str, stage: Stage, regenerate: bool = False) -> StageJobResponse:
        segment, id_field = STAGE_ENDPOINTS[stage]
        path = f"/ideas/{idea_id}/{segment}/generate"
        body = {"regenerate": regenerate} if stage.accepts_regenerate else None
        data = await self._request("POST", path, json=body) or {}
        if not isinstance(data, dict):
            raise _malformed(f"{stage.value} generate", f"expected an object, got {type(data).__name__}")
        return _parse(
            StageJobResponse,
            {
                "stage": stage,
                "job_id": data.get("jobId"),
                "artifact_id": data.get(id_field) if id_field else None,
                "status": data.get("status"),
                "prompt": data.get("prompt"),
            },
            f"{stage.value} generate",
        )

    async def generate_script(self, idea_id: str, regenerate: bool = False) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.script, regenerate)

    async def generate_caption(self, idea_id: str, regenerate: bool = False) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.caption, regenerate)

    async def generate_image_prompt(self, idea_id: str) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.image_prompt)

    async def generate_video_prompt(self, idea_id: str) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.video_prompt)

    async def generate_image(self, idea_id: str, regenerate: bool = False) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.image, regenerate)

    async def generate_video(self, idea_id: str, regenerate: bool = False) -> StageJobResponse:
        return await self.generate_stage(idea_id, Stage.video, regenerate)

    async def list_ideas(self, project_id: str) -> list[Idea]:
        data = await self._request("GET", "/ideas", params={"projectId": project_id})
        return _parse_list(Idea, data, "ideas")

    async def get_idea(self, idea_id: str) -> IdeaDetails:
        data = await self._request("GET", f"/ideas/{idea_id}")
        return _parse(IdeaDetails, data, "idea")

    async def list_logs(self, project_id: str, limit: int | None = None) -> list[AiRunLog]:
        limit = limit if limit is not None else get_settings().run_logs_limit
        data = await self._request("GET", "/ideas/logs", params={"projectId": project_id, "limit": limit})
        return _parse_list(AiRunLog, data, "run logs")

    async def clear_ideas(self, project_id: str) -> ClearResponse:
        data = await self._request("DELETE", "/ideas", params={"projectId": project_id})
        return _parse(ClearResponse, data or {}, "delete")

    async def clear_logs(self, project_id: str) -> ClearResponse:
        data = await self._request("DELETE", "/ideas/logs", params={"projectId": project_id})
        return _parse(ClearResponse, data or {}, "delete")

    async def remove_idea(self, idea_id: str) -> ClearResponse:
        data = await self._request("DELETE", f"/ideas/{idea_id}")
        return _parse(ClearResponse, data or {}, "delete")

    async def remove_log(self, log_id: str) -> ClearResponse:
        data = await self._request("DELETE", f"/ideas/logs/{log_id}")
        return _parse(ClearResponse, data or {}, "delete")

    async def remove_asset(self, asset_id: str) -> ClearResponse:
        data = await self._request("DELETE", f"/ideas/assets/{asset_id}")
        return _parse(ClearResponse, data or {}, "delete")

    # ── Post drafts ──────────────────────────────────────────

    async def create_post_draft(self, idea_id: str, payload: CreatePostDraftRequest) -> PostDraft:
        body = payload.model_dump(by_alias=True, exclude_none=True, mode="json")
        data = await self._request("POST", f"/post-drafts/from-idea/{idea_id}", json=body)
        return _parse(PostDraft, data, "post draft")

    async def latest_post_draft(self, idea_id: str) -> PostDraft | None:
        data = await self._request("GET", f"/post-drafts/by-idea/{idea_id}/latest")
        return _parse(PostDraft, data, "post draft") if data else None

    async def moderate_post_draft(self, draft_id: str) -> PostDraft:
        data = await self._request("POST", f"/post-drafts/{draft_id}/moderate")
        return _parse(PostDraft, data, "post draft")

    async def approve_post_draft(self, draft_id: str, override_reason: str | None = None) -> PostDraft:
        body = {"overrideReason": override_reason} if override_reason else {}
        data = await self._request("POST", f"/post-drafts/{draft_id}/approve", json=body)
        return _parse(PostDraft, data, "post draft")

    async def unapprove_post_draft(self, draft_id: str) -> PostDraft:
        data = await self._request("POST", f"/post-drafts/{draft_id}/unapprove")
        return _parse(PostDraft, data, "post draft")

    async def mark_post_draft_published(self, draft_id: str) -> PostDraft:
        data = await self._request("POST", f"/post-drafts/{draft_id}/publish/mark")
        return _parse(PostDraft, data, "post draft")

    async def export_post_draft(self, draft_id: str) -> PostDraft:
        data = await self._request("GET", f"/post-drafts/{draft_id}/export")
        return _parse(PostDraft, data, "post draft")
