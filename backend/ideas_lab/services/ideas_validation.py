"""
Validation of the "generate ideas" form before anything is sent.
"""
from __future__ import annotations

import math
from typing import Any

from ideas_lab.schemas import GenerateIdeasRequest, IdeaFormat

MIN_TOPIC_LENGTH = 3
MIN_COUNT = 1

FORM_INCOMPLETE_MESSAGE = "Choose a project and a persona and fill in the topic"
COUNT_INVALID_MESSAGE = "Number of ideas must be a number of at least 1"
FORMAT_INVALID_MESSAGE = "Choose one of the supported idea formats"


class IdeasFormError(ValueError):
    def __init__(self, message: str, field_errors: dict[str, str]):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors


def _parse_count(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def validate_start_ideas_generation(
    project_id: str | None,
    persona_id: str | None,
    topic: str | None,
    count: Any,
    format: IdeaFormat | str = IdeaFormat.reel,
) -> GenerateIdeasRequest:
    """Return the request to send, or raise IdeasFormError.

    Topic is trimmed, count is floored.
    """
    topic = (topic or "").strip()
    field_errors: dict[str, str] = {}
    if not project_id:
        field_errors["projectId"] = "required"
    if not persona_id:
        field_errors["personaId"] = "required"
    if len(topic) < MIN_TOPIC_LENGTH:
        field_errors["topic"] = f"at least {MIN_TOPIC_LENGTH} characters"
    if field_errors:
        raise IdeasFormError(FORM_INCOMPLETE_MESSAGE, field_errors)

    parsed = _parse_count(count)
    if parsed is None or parsed < MIN_COUNT:
        raise IdeasFormError(COUNT_INVALID_MESSAGE, {"count": f"number >= {MIN_COUNT}"})

    try:
        idea_format = IdeaFormat(format)
    except ValueError:
        choices = ", ".join(f.value for f in IdeaFormat)
        raise IdeasFormError(FORMAT_INVALID_MESSAGE, {"format": f"one of {choices}"}) from None

    return GenerateIdeasRequest(
        project_id=project_id,
        persona_id=persona_id,
        topic=topic,
        count=math.floor(parsed),
        format=idea_format,
    )
