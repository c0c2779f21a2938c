import asyncio
from datetime import datetime, timezone

import pytest

from factories import at, make_asset, make_caption, make_details, make_draft, make_moderation
from ideas_lab.schemas import ModerationCheckItem
from ideas_lab.services.publish_workflow import (
    DraftSelection,
    PublishWorkflow,
    TransitionRejected,
    approval_decision,
    available_asset_ids,
    build_caption_for_copy,
    can_approve,
    can_submit,
    default_selection,
    ensure_can_mark_published,
    ensure_can_reassemble,
    ensure_can_run_checks,
    ensure_can_unapprove,
    export_view,
    format_check_result,
    has_changes,
    normalize_schedule,
    publish_checklist,
    to_percent,
)


# ── Guards ───────────────────────────────────────────────────


def test_approval_requires_checks():
    with pytest.raises(TransitionRejected, match="Run checks"):
        approval_decision(make_draft())


def test_passed_checks_approve_without_reason():
    decision = approval_decision(make_draft(moderation=make_moderation()))

    assert decision.is_override is False


def test_failed_checks_need_override_reason():
    draft = make_draft(moderation=make_moderation(failed=("toxicity", "policy")))

    with pytest.raises(TransitionRejected) as info:
        approval_decision(draft, "  ok ")
    assert info.value.failed_checks == ["toxicity", "policy"]
    assert can_approve(draft) is False

    decision = approval_decision(draft, "  client-approved, minor ")
    assert decision.override_reason == "client-approved, minor"
    assert decision.failed_checks == ("toxicity", "policy")
    assert can_approve(draft, "client-approved, minor") is True


def test_only_drafts_can_be_approved():
    approved = make_draft("approved", moderation=make_moderation())

    assert can_approve(approved) is False
    assert can_approve(None) is False


def test_status_guards():
    ensure_can_run_checks(make_draft())
    ensure_can_unapprove(make_draft("approved"))
    ensure_can_mark_published(make_draft("approved"))
    ensure_can_reassemble(None)
    ensure_can_reassemble(make_draft())

    with pytest.raises(TransitionRejected):
        ensure_can_run_checks(make_draft("approved"))
    with pytest.raises(TransitionRejected):
        ensure_can_unapprove(make_draft())
    with pytest.raises(TransitionRejected, match="approved before marking"):
        ensure_can_mark_published(make_draft())
    with pytest.raises(TransitionRejected, match="Unapprove"):
        ensure_can_reassemble(make_draft("approved"))
    with pytest.raises(TransitionRejected, match="Published"):
        ensure_can_reassemble(make_draft("published"))


# ── Selection ────────────────────────────────────────────────


@pytest.mark.parametrize(
    "selection, changed",
    [
        (DraftSelection("caption-1", ("video-1",)), False),
        (DraftSelection("caption-1", ("image-1", "video-1")), False),
        (DraftSelection("caption-1", ("video-1",), datetime(2026, 1, 1, 12, 0, 42, tzinfo=timezone.utc)), False),
        (DraftSelection("caption-2", ("video-1",)), True),
        (DraftSelection("caption-1", ("video-1", "image-2")), True),
        (DraftSelection(None, ("video-1", "image-1")), True),
        (DraftSelection("caption-1", ("video-1",), datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc)), True),
    ],
)
def test_has_changes(selection, changed):
    draft = make_draft(
        selected_assets=["video-1", "image-1"] if len(selection.asset_ids) != 1 else ["video-1"],
        scheduled_at=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc) if selection.scheduled_at else None,
    )

    assert has_changes(selection, draft) is changed


def test_has_changes_without_draft():
    assert has_changes(DraftSelection(), None) is True


def test_can_submit():
    selection = DraftSelection("caption-1", ("video-2",))

    assert can_submit(DraftSelection(), None) is False
    assert can_submit(selection, None) is True
    assert can_submit(selection, make_draft()) is True
    assert can_submit(DraftSelection("caption-1", ("video-1",)), make_draft()) is False
    assert can_submit(selection, make_draft("approved")) is False


def test_normalize_schedule_truncates_to_utc_minute():
    naive = datetime(2026, 3, 1, 9, 30, 59, 999)

    assert normalize_schedule(naive) == datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
    assert normalize_schedule(None) is None


def test_default_selection_prefers_latest_video_then_image():
    details = make_details(
        captions=[
            make_caption("succeeded", "caption-old", minutes=1),
            make_caption("failed", "caption-failed", minutes=5),
            make_caption("succeeded", "caption-new", minutes=3),
        ],
        assets=[
            make_asset("image", "succeeded", "image-old", minutes=1),
            make_asset("image", "succeeded", "image-new", minutes=4),
            make_asset("video", "succeeded", "video-new", minutes=2),
            make_asset("video", "running", "video-running", minutes=6),
        ],
    )

    selection = default_selection(details)

    assert selection.caption_id == "caption-new"
    assert selection.asset_ids == ("video-new", "image-new")


def test_default_selection_without_details():
    assert default_selection(None) == DraftSelection()


def test_available_assets_drop_removed_ones():
    draft = make_draft(selected_assets=["video-1", "image-gone"])
    details = make_details(assets=[make_asset("video", "succeeded", "video-1", minutes=0)])

    assert available_asset_ids(draft, details) == ["video-1"]
    assert available_asset_ids(draft, None) == ["video-1", "image-gone"]


# ── Export helpers ───────────────────────────────────────────


def test_checklist_for_fresh_draft():
    checklist = {item.key: item.done for item in publish_checklist(make_draft(caption_text="  "))}

    assert checklist == {"has_asset": True, "has_caption": False, "moderation_passed": False, "approved": False}


def test_checklist_for_published_draft():
    draft = make_draft("published", moderation=make_moderation())

    assert all(item.done for item in publish_checklist(draft))


def test_caption_for_copy():
    assert build_caption_for_copy(" Wake up ", ["#a", "#b"]) == "Wake up\n\n#a #b"
    assert build_caption_for_copy(None, ["#a"]) == "#a"
    assert build_caption_for_copy("Wake up", None) == "Wake up"
    assert build_caption_for_copy(None, None) == ""


def test_score_percent():
    assert to_percent(0.42) == 42
    assert to_percent(87) == 87
    assert to_percent(250) == 100
    assert to_percent(float("nan")) == 0


def test_score_percent_rounds_halves_up():
    assert to_percent(0.125) == 13
    assert to_percent(12.5) == 13
    assert to_percent(0.005) == 1


def test_check_result_text():
    assert format_check_result(ModerationCheckItem(passed=True)) == "passed"
    assert format_check_result(ModerationCheckItem(passed=False)) == "failed"
    assert format_check_result(ModerationCheckItem(passed=False, hits=["gore", "blood"])) == "failed: gore, blood"


def test_export_view_lists_checks():
    view = export_view(make_draft(moderation=make_moderation(failed=("nsfw",))))

    assert view["captionForCopy"] == "Wake up earlier\n\n#morning"
    assert [c["name"] for c in view["checks"]] == ["nsfw", "toxicity", "forbiddenTopics", "policy"]
    assert view["checks"][0]["result"] == "failed: blocked word"
    assert view["checks"][0]["scorePercent"] == 90


# ── Workflow against the backend ─────────────────────────────


@pytest.fixture
def workflow(client, notifications):
    return PublishWorkflow(client, notifications)


def test_full_lifecycle(workflow, backend):
    backend.set_draft(make_draft())

    async def scenario():
        checks = await workflow.run_checks("idea-1")
        approved = await workflow.approve("idea-1")
        published = await workflow.mark_published("idea-1")
        unapprove = await workflow.unapprove("idea-1")
        return checks, approved, published, unapprove

    checks, approved, published, unapprove = asyncio.run(scenario())

    assert checks.ok and checks.data.latest_moderation.status.value == "passed"
    assert approved.ok and approved.data.status.value == "approved"
    assert published.ok and workflow.current("idea-1").status.value == "published"
    assert unapprove.status == "rejected"
    assert unapprove.http_status == 409


def test_override_approval_sends_reason(workflow, backend, notifications):
    backend.set_draft(make_draft(moderation=make_moderation(failed=("toxicity",))))

    async def scenario():
        refused = await workflow.approve("idea-1")
        accepted = await workflow.approve("idea-1", "client-approved, minor")
        return refused, accepted

    refused, accepted = asyncio.run(scenario())

    assert refused.status == "rejected"
    assert refused.field_errors == {"failedChecks": "toxicity"}
    assert notifications.active()[0].level == "warn"
    assert accepted.ok
    assert backend.calls_to("POST", "/post-drafts/draft-1/approve") == [{"overrideReason": "client-approved, minor"}]


def test_transition_without_draft_is_not_found(workflow):
    outcome = asyncio.run(workflow.run_checks("idea-1"))

    assert outcome.status == "rejected"
    assert outcome.http_status == 404


def test_assemble_creates_then_detects_no_changes(workflow, backend):
    selection = DraftSelection("caption-1", ("video-9",), at(30))

    async def scenario():
        first = await workflow.assemble("idea-1", selection)
        second = await workflow.assemble("idea-1", selection)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.status == "accepted"
    assert second.status == "duplicate"
    assert second.artifact_id == first.artifact_id
    body = backend.calls_to("POST", "/post-drafts/from-idea/idea-1")
    assert body == [{"captionId": "caption-1", "assetIds": ["video-9"], "scheduledAt": "2026-01-01T12:30:00Z"}]


def test_assemble_requires_asset(workflow, backend):
    outcome = asyncio.run(workflow.assemble("idea-1", DraftSelection("caption-1", ())))

    assert outcome.status == "rejected"
    assert outcome.http_status == 422
    assert backend.calls_to("POST", "/post-drafts/from-idea/idea-1") == []


def test_assemble_refuses_approved_draft(workflow, backend):
    backend.set_draft(make_draft("approved"))

    outcome = asyncio.run(workflow.assemble("idea-1", DraftSelection("caption-1", ("video-2",))))

    assert outcome.status == "rejected"
    assert outcome.http_status == 409


def test_backend_failure_is_notified(workflow, backend, notifications):
    backend.set_draft(make_draft())
    backend.fail("POST", "/post-drafts/draft-1/moderate", 503, {"message": "Moderation service down"})

    outcome = asyncio.run(workflow.run_checks("idea-1"))

    assert outcome.status == "rejected"
    assert outcome.http_status == 503
    assert notifications.active()[0].message == "Moderation service down"
