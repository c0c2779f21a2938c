import asyncio

import pytest

from factories import make_asset, make_details, make_idea, make_log
from ideas_lab.schemas import Stage
from ideas_lab.services.orchestrator import GenerationOrchestrator
from ideas_lab.services.preferences import SelectedIdeaBookmarks
from ideas_lab.services.request_tracker import PendingKey


@pytest.fixture
def orchestrator(client, notifications, preferences):
    return GenerationOrchestrator(
        client,
        notifications=notifications,
        preferences=preferences,
        poll_interval=0.01,
        logs_limit=20,
    )


# ── Ideas batch ──────────────────────────────────────────────


def test_batch_completes_when_idea_count_grows(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a")])

    async def scenario():
        outcome = await orchestrator.submit_idea_generation("project-1", "persona-1", "  Sleep hygiene ", "3.7")
        waiting_after_submit = orchestrator.is_waiting_for_batch("project-1")
        backend.set_ideas("project-1", [make_idea("idea-b"), make_idea("idea-a")])
        await orchestrator.refresh_ideas("project-1")
        return outcome, waiting_after_submit

    outcome, waiting_after_submit = asyncio.run(scenario())

    assert outcome.status == "accepted"
    assert outcome.job_id == "job-ideas"
    assert waiting_after_submit is True
    assert orchestrator.is_waiting_for_batch("project-1") is False
    assert orchestrator.detector("project-1").completed_by == "ideas_count"
    body = backend.calls_to("POST", "/ideas/generate")[0]
    assert body["topic"] == "Sleep hygiene"
    assert body["count"] == 3


def test_batch_completes_on_new_terminal_ideas_log(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a")])
    backend.set_logs("project-1", [make_log("log-old", operation="ideas")])

    async def scenario():
        await orchestrator.submit_idea_generation("project-1", "persona-1", "Sleep hygiene", 2)
        backend.set_logs(
            "project-1",
            [
                make_log("log-script", operation="script", status="failed"),
                make_log("log-old", operation="ideas"),
            ],
        )
        await orchestrator.refresh_logs("project-1")
        still_waiting = orchestrator.is_waiting_for_batch("project-1")
        backend.set_logs("project-1", [make_log("log-new", operation="ideas", status="failed")])
        await orchestrator.refresh_logs("project-1")
        return still_waiting

    still_waiting = asyncio.run(scenario())

    assert still_waiting is True
    assert orchestrator.is_waiting_for_batch("project-1") is False
    assert orchestrator.detector("project-1").completed_by == "terminal_log"


def test_invalid_form_is_rejected_before_request(orchestrator, backend, notifications):
    outcome = asyncio.run(orchestrator.submit_idea_generation("project-1", "persona-1", " ab ", 5))

    assert outcome.status == "rejected"
    assert "topic" in outcome.field_errors
    assert backend.calls == []
    assert notifications.active()[0].level == "warn"
    assert orchestrator.is_waiting_for_batch("project-1") is False


def test_failed_submission_resets_waiting_and_notifies(orchestrator, backend, notifications):
    backend.fail("POST", "/ideas/generate", 500, {"message": "[provider_down] LM Studio offline"})

    outcome = asyncio.run(orchestrator.submit_idea_generation("project-1", "persona-1", "Sleep hygiene", 2))

    assert outcome.status == "rejected"
    assert outcome.error == "LM Studio offline"
    assert outcome.error_code == "provider_down"
    assert orchestrator.is_waiting_for_batch("project-1") is False
    errors = [n for n in notifications.active() if n.level == "error"]
    assert errors[0].message == "LM Studio offline"


def test_submission_without_baseline_is_rejected(orchestrator, backend, notifications):
    backend.fail("GET", "/ideas", 503, {"message": "Ideas store unavailable"})

    outcome = asyncio.run(orchestrator.submit_idea_generation("project-1", "persona-1", "Sleep hygiene", 2))

    assert outcome.status == "rejected"
    assert outcome.http_status == 503
    assert backend.calls_to("POST", "/ideas/generate") == []
    assert orchestrator.is_waiting_for_batch("project-1") is False
    assert notifications.active()[0].message == "Ideas store unavailable"


# ── Stage commands ───────────────────────────────────────────


def _load(orchestrator, backend, idea):
    backend.set_ideas("project-1", [idea])
    asyncio.run(orchestrator.refresh_ideas("project-1"))


def test_stage_command_accepted_and_pending_cleared(orchestrator, backend):
    _load(orchestrator, backend, make_idea(script="succeeded"))

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", Stage.caption))

    assert outcome.status == "accepted"
    assert outcome.artifact_id == "caption-new"
    assert len(orchestrator.tracker) == 0
    assert backend.calls_to("POST", "/ideas/idea-1/caption/generate") == [{"regenerate": False}]
    # refetch after the command
    assert len(backend.calls_to("GET", "/ideas")) == 2


def test_prompt_stage_returns_generated_prompt(orchestrator, backend):
    _load(orchestrator, backend, make_idea(script="succeeded"))

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", "image_prompt", regenerate=True))

    assert outcome.status == "accepted"
    assert outcome.data == {"prompt": "image-prompt for idea-1"}
    assert backend.calls_to("POST", "/ideas/idea-1/image-prompt/generate") == [None]


def test_pending_stage_is_not_sent_twice(orchestrator, backend):
    _load(orchestrator, backend, make_idea(script="succeeded"))
    orchestrator.tracker.mark_pending(PendingKey("idea-1", Stage.caption))

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", Stage.caption, regenerate=True))

    assert outcome.status == "duplicate"
    assert backend.calls_to("POST", "/ideas/idea-1/caption/generate") == []


def test_stage_waiting_on_prerequisite_is_rejected(orchestrator, backend, notifications):
    _load(orchestrator, backend, make_idea())

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", Stage.caption))

    assert outcome.status == "rejected"
    assert outcome.http_status == 409
    assert backend.calls_to("POST", "/ideas/idea-1/caption/generate") == []
    assert notifications.active()[0].title == "Stage is not ready"


def test_conflict_is_reported_as_duplicate(orchestrator, backend, notifications):
    _load(orchestrator, backend, make_idea(script="succeeded"))
    backend.fail("POST", "/ideas/idea-1/caption/generate", 409, {"message": "Caption is already generating"})

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", Stage.caption))

    assert outcome.status == "duplicate"
    assert outcome.http_status == 409
    assert len(orchestrator.tracker) == 0
    assert notifications.active() == []


def test_failed_stage_clears_pending_and_notifies(orchestrator, backend, notifications):
    _load(orchestrator, backend, make_idea())
    backend.fail("POST", "/ideas/idea-1/script/generate", 502, {"error": "Bad Gateway"})

    outcome = asyncio.run(orchestrator.invoke_stage("idea-1", Stage.script))

    assert outcome.status == "rejected"
    assert outcome.http_status == 502
    assert len(orchestrator.tracker) == 0
    note = notifications.active()[0]
    assert note.title == "Could not queue script generation"
    assert note.message == "Bad Gateway"


def test_unreadable_acknowledgement_clears_pending(orchestrator, backend, notifications):
    _load(orchestrator, backend, make_idea())
    backend.respond_raw("POST", "/ideas/idea-1/script/generate", 200, "<html>OK</html>")

    async def scenario():
        first = await orchestrator.invoke_stage("idea-1", Stage.script)
        pending_after_failure = len(orchestrator.tracker)
        backend.raw.clear()
        second = await orchestrator.invoke_stage("idea-1", Stage.script)
        return first, pending_after_failure, second

    first, pending_after_failure, second = asyncio.run(scenario())

    assert first.status == "rejected"
    assert first.error_code == "malformed_response"
    assert pending_after_failure == 0
    assert notifications.active()[0].title == "Could not queue script generation"
    assert second.status == "accepted"
    assert second.artifact_id == "script-new"


def test_pipelines_are_resolved_for_cached_ideas(orchestrator, backend):
    _load(orchestrator, backend, make_idea(script="succeeded", caption="succeeded"))

    pipeline = orchestrator.pipelines("project-1")[0]

    assert pipeline.completed_step_count == 2
    assert pipeline.action(Stage.script).handler is not None


# ── Selection ────────────────────────────────────────────────


def test_selection_restores_bookmark(orchestrator, backend, preferences):
    SelectedIdeaBookmarks(preferences).set("project-1", "idea-b")
    backend.set_ideas("project-1", [make_idea("idea-a"), make_idea("idea-b")])

    asyncio.run(orchestrator.refresh_ideas("project-1"))

    assert orchestrator.selected_idea_id("project-1") == "idea-b"


def test_stale_bookmark_falls_back_to_first_idea(orchestrator, backend, preferences):
    SelectedIdeaBookmarks(preferences).set("project-1", "idea-gone")
    backend.set_ideas("project-1", [make_idea("idea-a"), make_idea("idea-b")])

    asyncio.run(orchestrator.refresh_ideas("project-1"))

    assert orchestrator.selected_idea_id("project-1") == "idea-a"
    assert SelectedIdeaBookmarks(preferences).get("project-1") == "idea-a"


def test_select_idea_loads_details_and_bookmarks(orchestrator, backend, preferences):
    backend.set_ideas("project-1", [make_idea("idea-a"), make_idea("idea-b")])
    backend.set_details(make_details("idea-b"))

    async def scenario():
        await orchestrator.refresh_ideas("project-1")
        return await orchestrator.select_idea("project-1", "idea-b")

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert orchestrator.details("idea-b").id == "idea-b"
    assert SelectedIdeaBookmarks(preferences).get("project-1") == "idea-b"


def test_select_unknown_idea_is_not_found(orchestrator):
    outcome = asyncio.run(orchestrator.select_idea("project-1", "idea-x"))

    assert outcome.status == "rejected"
    assert outcome.http_status == 404


def test_clear_ideas_forgets_bookmark(orchestrator, backend, preferences):
    backend.set_ideas("project-1", [make_idea("idea-a")])

    async def scenario():
        await orchestrator.refresh_ideas("project-1")
        return await orchestrator.clear_ideas("project-1")

    outcome = asyncio.run(scenario())

    assert outcome.data == {"deleted": 1}
    assert SelectedIdeaBookmarks(preferences).get("project-1") is None
    assert orchestrator.selected_idea_id("project-1") is None
    assert orchestrator.ideas("project-1") == []


def test_failed_removal_keeps_snapshot(orchestrator, backend, notifications):
    backend.set_ideas("project-1", [make_idea("idea-a")])
    backend.fail("DELETE", "/ideas/idea-a", 500, {"message": "Storage unavailable"})

    async def scenario():
        await orchestrator.refresh_ideas("project-1")
        return await orchestrator.remove_idea("idea-a")

    outcome = asyncio.run(scenario())

    assert outcome.status == "rejected"
    assert [i.id for i in orchestrator.ideas("project-1")] == ["idea-a"]
    assert notifications.active()[0].title == "Could not remove idea"


# ── Refetch ──────────────────────────────────────────────────


def test_failed_refetch_keeps_last_snapshot(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a")])
    backend.set_logs("project-1", [make_log("log-1", latency_ms=300)])

    async def scenario():
        await orchestrator.invalidate_all("project-1")
        backend.fail("GET", "/ideas", 503, {"message": "down"})
        await orchestrator.invalidate_all("project-1")

    asyncio.run(scenario())

    assert [i.id for i in orchestrator.ideas("project-1")] == ["idea-a"]
    assert orchestrator.logs_stats("project-1").avg_latency_ms == 300


def test_changes_channel_publishes_refreshes(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a")])

    asyncio.run(orchestrator.refresh_ideas("project-1"))

    assert orchestrator.changes.version == 1
    assert orchestrator.changes.value == {"projectId": "project-1", "ideas": 1}


# ── Polling ──────────────────────────────────────────────────


async def _until(predicate, attempts: int = 100) -> bool:
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def _running(orchestrator, name: str) -> bool:
    state = orchestrator.polling_state().get(name)
    return bool(state and state["running"])


def test_ideas_poller_runs_while_batch_is_awaited(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a")])

    async def scenario():
        await orchestrator.submit_idea_generation("project-1", "persona-1", "Sleep hygiene", 2)
        orchestrator.watch_project("project-1")
        await asyncio.sleep(0.05)
        alive_while_waiting = _running(orchestrator, "ideas:project-1")
        backend.set_ideas("project-1", [make_idea("idea-b"), make_idea("idea-a")])
        stopped = await _until(lambda: not _running(orchestrator, "ideas:project-1"))
        await orchestrator.stop_watching("project-1")
        return alive_while_waiting, stopped

    alive_while_waiting, stopped = asyncio.run(scenario())

    assert alive_while_waiting is True
    assert stopped is True
    assert orchestrator.is_waiting_for_batch("project-1") is False
    assert orchestrator.polling_state() == {}


def test_stage_command_restarts_stopped_pollers(orchestrator, backend):
    _load(orchestrator, backend, make_idea(script="succeeded"))

    async def scenario():
        orchestrator.watch_project("project-1")
        idle = await _until(
            lambda: not _running(orchestrator, "ideas:project-1") and not _running(orchestrator, "logs:project-1")
        )
        backend.set_ideas("project-1", [make_idea(script="succeeded", caption="queued")])
        outcome = await orchestrator.invoke_stage("idea-1", Stage.caption)
        restarted = _running(orchestrator, "ideas:project-1") and _running(orchestrator, "logs:project-1")
        await asyncio.sleep(0.05)
        alive_while_queued = _running(orchestrator, "ideas:project-1")
        backend.set_ideas("project-1", [make_idea(script="succeeded", caption="succeeded")])
        settled = await _until(lambda: not _running(orchestrator, "ideas:project-1"))
        await orchestrator.stop_watching()
        return idle, outcome, restarted, alive_while_queued, settled

    idle, outcome, restarted, alive_while_queued, settled = asyncio.run(scenario())

    assert idle is True
    assert outcome.status == "accepted"
    assert restarted is True
    assert alive_while_queued is True
    assert settled is True


def test_watching_another_idea_stops_previous_detail_poller(orchestrator, backend):
    backend.set_ideas("project-1", [make_idea("idea-a"), make_idea("idea-b")])
    for idea_id in ("idea-a", "idea-b"):
        backend.set_details(make_details(idea_id, assets=[make_asset("video", "running")]))

    async def scenario():
        await orchestrator.refresh_ideas("project-1")
        await orchestrator.watch_idea("idea-a")
        await asyncio.sleep(0.03)
        first = orchestrator.polling_state()
        await orchestrator.watch_idea("idea-b")
        second = orchestrator.polling_state()
        await orchestrator.stop_watching("project-1")
        return first, second

    first, second = asyncio.run(scenario())

    assert first["details:idea-a"]["running"] is True
    assert "details:idea-a" not in second
    assert second["details:idea-b"]["running"] is True
    assert orchestrator.polling_state() == {}
