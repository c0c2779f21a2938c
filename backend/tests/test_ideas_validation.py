import pytest

from ideas_lab.schemas import IdeaFormat
from ideas_lab.services.ideas_validation import (
    COUNT_INVALID_MESSAGE,
    FORM_INCOMPLETE_MESSAGE,
    FORMAT_INVALID_MESSAGE,
    IdeasFormError,
    validate_start_ideas_generation,
)


def test_valid_form_is_normalized():
    request = validate_start_ideas_generation("project-1", "persona-1", "  Sleep hygiene  ", "4.9", "tiktok")

    assert request.topic == "Sleep hygiene"
    assert request.count == 4
    assert request.format == IdeaFormat.tiktok


@pytest.mark.parametrize(
    "project_id, persona_id, topic, missing",
    [
        (None, "persona-1", "Sleep", "projectId"),
        ("project-1", "", "Sleep", "personaId"),
        ("project-1", "persona-1", " ab ", "topic"),
        ("project-1", "persona-1", None, "topic"),
    ],
)
def test_incomplete_form(project_id, persona_id, topic, missing):
    with pytest.raises(IdeasFormError) as info:
        validate_start_ideas_generation(project_id, persona_id, topic, 5)

    assert info.value.message == FORM_INCOMPLETE_MESSAGE
    assert missing in info.value.field_errors


@pytest.mark.parametrize("count", [0, 0.5, -3, "abc", None, float("nan"), float("inf"), True])
def test_invalid_count(count):
    with pytest.raises(IdeasFormError) as info:
        validate_start_ideas_generation("project-1", "persona-1", "Sleep", count)

    assert info.value.message == COUNT_INVALID_MESSAGE
    assert "count" in info.value.field_errors


@pytest.mark.parametrize("fmt", ["story", "", "REEL"])
def test_unknown_format(fmt):
    with pytest.raises(IdeasFormError) as info:
        validate_start_ideas_generation("project-1", "persona-1", "Sleep", 3, fmt)

    assert info.value.message == FORMAT_INVALID_MESSAGE
    assert info.value.field_errors == {"format": "one of reel, short, tiktok"}
